"""metafetch — rate-limited metadata fetching and scan-result caching for Android packages."""

__version__ = "0.1.0"
