"""Configuration settings for the CashHeros edge service."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


def split_csv(value: str) -> list[str]:
    """Split a comma separated setting into trimmed, non-empty items."""
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_prefix="CASHHEROS_", env_file=".env", extra="ignore")

    # Server
    host: str = "127.0.0.1"  # Use CASHHEROS_HOST=0.0.0.0 for Docker
    port: int = 5000
    debug: bool = False
    environment: str = "development"

    # Redis (shared rate store)
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str = ""
    redis_db: int = 0
    redis_pool_size: int = 50

    # Cross-origin admission
    cors_origins: str = "https://cashheros.com,https://www.cashheros.com"
    cors_max_age: int = 86400

    # Payload parsing
    max_body_bytes: int = 1_048_576

    # Compression
    compression_min_bytes: int = 1024
    compression_level: int = 6

    # Rate limiting
    rate_store: str = "memory"
    default_window_seconds: int = 900
    default_limit: int = 100
    route_limits: dict[str, tuple[int, int]] = {
        "/api/auth/login": (900, 20),
        "/api/auth/register": (3600, 20),
        "/api/auth/refresh": (900, 30),
    }
    login_paths: str = "/api/auth/login"
    login_max_attempts: int = 5
    login_window_seconds: int = 900
    login_lockout_seconds: int = 1800
    trusted_proxies: str = "127.0.0.1,::1"

    # CSRF
    csrf_cookie_name: str = "csrf_token"
    csrf_header_name: str = "X-CSRF-Token"
    session_cookie_name: str = "sid"
    csrf_exempt_paths: str = ""
    session_idle_seconds: int = 7 * 24 * 3600
    anonymous_session_idle_seconds: int = 3600

    # Security headers
    security_headers_enabled: bool = True
    hsts_max_age: int = 31_536_000

    # API keys: key -> service, and guarded prefix -> admitted services (empty admits any key)
    api_keys: dict[str, str] = {}
    api_key_routes: dict[str, list[str]] = {
        "/api/analytics": ["analytics", "admin"],
        "/api/monitoring": ["admin"],
        "/api/cache": ["admin"],
        "/api/external": [],
    }

    # Tokens
    jwt_secret: str = "change-me-access-secret"
    jwt_refresh_secret: str = "change-me-refresh-secret"
    jwt_algorithm: str = "HS256"
    access_token_ttl_seconds: int = 900
    refresh_token_ttl_seconds: int = 7 * 24 * 3600
    refresh_cookie_name: str = "refresh_token"
    cookie_secure: bool = True

    # OAuth providers
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = ""
    facebook_app_id: str = ""
    facebook_app_secret: str = ""
    oauth_timeout_seconds: float = 10.0

    # Handlers
    handler_timeout_seconds: float = 30.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # Metrics
    metrics_enabled: bool = True

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def allowed_origins(self) -> list[str]:
        return split_csv(self.cors_origins)

    @property
    def login_path_set(self) -> frozenset[str]:
        return frozenset(split_csv(self.login_paths))

    @property
    def trusted_proxy_set(self) -> frozenset[str]:
        return frozenset(split_csv(self.trusted_proxies))

    @property
    def csrf_exempt_prefixes(self) -> tuple[str, ...]:
        return tuple(split_csv(self.csrf_exempt_paths))


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
