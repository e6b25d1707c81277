"""SQLAlchemy models package."""

from metafetch.models.base import CacheOutcome
from metafetch.models.google_play import GooglePlayApp
from metafetch.models.fdroid import FDroidApp
from metafetch.models.apkmirror import ApkMirrorApp
from metafetch.models.virustotal import VirusTotalResult
from metafetch.models.hybridanalysis import HybridAnalysisResult

__all__ = [
    "CacheOutcome",
    "GooglePlayApp",
    "FDroidApp",
    "ApkMirrorApp",
    "VirusTotalResult",
    "HybridAnalysisResult",
]
