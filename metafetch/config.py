"""Application configuration using pydantic-settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite:///metafetch.db"
    db_busy_timeout_ms: int = 30_000

    # App
    debug: bool = False
    log_level: str = "INFO"

    # Cache
    cache_ttl_days: int = 7

    # HTTP
    http_timeout_seconds: float = 60.0
    upload_timeout_cap_seconds: float = 600.0
    user_agent: str = (
        "Mozilla/5.0 (Linux; Android 14) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Mobile Safari/537.36"
    )

    # --- Worker pacing (seconds) ---
    worker_startup_delay: float = 0.5
    worker_idle_interval: float = 0.5
    worker_cache_hit_delay: float = 0.05
    worker_crash_sleep: float = 30.0

    # --- Google Play ---
    google_play_request_interval: float = 2.0
    google_play_rate_limit_backoff: float = 60.0

    # --- F-Droid ---
    fdroid_request_interval: float = 2.0
    fdroid_rate_limit_backoff: float = 60.0

    # --- APKMirror ---
    apkmirror_request_interval: float = 30.0
    apkmirror_rate_limit_backoff: float = 120.0
    apkmirror_prefer_cached: bool = True
    apkmirror_email: str = ""
    apkmirror_uploader_name: str = ""  # "Anonymous" when empty
    apkmirror_upload_interval: float = 10.0
    apkmirror_upload_recheck_interval: float = 60.0
    apkmirror_upload_cooldown: float = 86_400.0  # "Too many APKs" lasts 24h

    # --- VirusTotal ---
    virustotal_api_key: str = ""
    virustotal_max_requests_per_minute: int = 4
    virustotal_min_interval: float = 5.0
    virustotal_rate_limit_backoff: float = 60.0

    # --- Hybrid Analysis ---
    hybridanalysis_api_key: str = ""
    hybridanalysis_min_interval: float = 3.0
    hybridanalysis_max_per_minute: int = 100
    hybridanalysis_max_per_hour: int = 1500
    hybridanalysis_rate_limit_backoff: float = 3.0
    hybridanalysis_upload_cooldown: float = 86_400.0  # 24h after an upload 429

    # --- Scanning ---
    scan_file_timeout_seconds: float = 60.0
    scan_poll_interval_seconds: float = 10.0

    @property
    def cache_ttl_seconds(self) -> int:
        return self.cache_ttl_days * 24 * 3600


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
