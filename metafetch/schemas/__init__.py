"""Pydantic schemas for provider records and scan reports."""

from metafetch.schemas.apkmirror import ApkMirrorUploadResult
from metafetch.schemas.app_details import AppDetails
from metafetch.schemas.hybridanalysis import HybridAnalysisReport, HybridAnalysisSubmission
from metafetch.schemas.virustotal import AnalysisStats, VirusTotalReport

__all__ = [
    "AppDetails",
    "ApkMirrorUploadResult",
    "AnalysisStats",
    "VirusTotalReport",
    "HybridAnalysisReport",
    "HybridAnalysisSubmission",
]
