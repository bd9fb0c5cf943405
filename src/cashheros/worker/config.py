"""Configuration settings for the background worker."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from cashheros.config import split_csv


class WorkerSettings(BaseSettings):
    """Worker settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_prefix="CASHHEROS_WORKER_", env_file=".env", extra="ignore")

    # Bumped whenever a cached representation changes
    version: str = "v1"
    origin: str = "https://cashheros.com"

    # App shell
    shell_url: str = "/index.html"
    offline_url: str = "/offline.html"
    placeholder_image: str = "/logo192.png"
    precache_urls: str = "/index.html,/offline.html,/logo192.png,/manifest.json"
    skip_waiting_on_install: bool = True

    # Cache expiration: name -> (max entries, max age seconds)
    cache_limits: dict[str, tuple[int, int]] = {
        "static": (60, 30 * 24 * 3600),
        "images": (100, 30 * 24 * 3600),
        "api": (50, 5 * 60),
        "pages": (25, 24 * 3600),
        "dynamic": (50, 7 * 24 * 3600),
    }
    storage_quota_bytes: int = 50 * 1024 * 1024

    # Offline queue
    redis_url: str = "redis://localhost:6379/1"
    queue_key: str = "cashheros:offline-queue"
    queue_retention_seconds: int = 24 * 3600
    sync_tag: str = "cashheros-offline-queue"
    cleanup_tag: str = "cache-cleanup"

    # Network
    network_timeout_seconds: float = 10.0

    @property
    def version_label(self) -> str:
        return self.version if self.version.startswith("v") else f"v{self.version}"

    @property
    def precache_list(self) -> list[str]:
        return split_csv(self.precache_urls)


@lru_cache
def get_worker_settings() -> WorkerSettings:
    """Get cached worker settings instance."""
    return WorkerSettings()
