"""
Application configuration
"""

from typing import Optional, Tuple

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from smart_launch.core.errors import ConfigurationError

# Development-only credentials. These are never accepted outside of
# ENVIRONMENT=development/test and are reported as such in the startup log.
DEV_CLIENT_ID = "dev-smart-client"
DEV_CLIENT_SECRET = "dev-only-insecure-secret"

DEFAULT_SCOPE = "patient/Patient.read patient/Observation.read launch launch/patient online_access openid profile"

CREDENTIAL_SOURCE_ENVIRONMENT = "environment"
CREDENTIAL_SOURCE_DEV_DEFAULT = "development-default"


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = "SMART Launch Gateway"
    APP_VERSION: str = "0.1.0"
    # Debug switches structlog to the console renderer; keep it off in production
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # Bind address
    HOST: str = "localhost"
    PORT: int = 8080

    # Public base URL of this app, used to derive the redirect URL
    APP_BASE_URL: str = "http://localhost:8080"

    # SMART client registration
    # IMPORTANT: the client secret is sensitive and must never be logged
    SMART_CLIENT_ID: Optional[str] = None
    SMART_CLIENT_SECRET: Optional[SecretStr] = None
    SMART_REDIRECT_URI: Optional[str] = None  # Defaults to APP_BASE_URL + "/callback"
    SMART_SCOPE: str = DEFAULT_SCOPE
    SMART_USE_PKCE: bool = True
    ALLOW_INSECURE_ISSUERS: bool = False  # Honored in development/test only

    # State tokens
    STATE_BACKEND: str = "memory"  # "memory" or "redis"
    STATE_TTL_SECONDS: int = 600  # 10 minutes
    STATE_MAX_PENDING: int = 10000
    # Consumed and expired state tokens are remembered this long past expiry
    STATE_RETENTION_SECONDS: int = 300
    STATE_SWEEP_INTERVAL_SECONDS: int = 60
    REDIS_URL: Optional[str] = None

    # Discovery cache
    DISCOVERY_CACHE_TTL_SECONDS: int = 3600
    DISCOVERY_STALE_GRACE_SECONDS: Optional[int] = None  # None = hard expiry
    DISCOVERY_CACHE_MAX_ENTRIES: int = 256

    # Outbound HTTP
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # Browser sessions
    SESSION_TTL_SECONDS: int = 8 * 60 * 60
    SESSION_MAX_ENTRIES: int = 10000
    SESSION_COOKIE_NAME: str = "smart_session"

    # Rate limiting (slowapi syntax)
    RATE_LIMIT_ENABLED: bool = True
    LAUNCH_RATE_LIMIT: str = "60/minute"
    CALLBACK_RATE_LIMIT: str = "30/minute"

    # Static assets
    STATIC_LIB_DIR: str = "./lib"
    STATIC_RESOURCES_DIR: str = "./resources"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() in ("development", "dev", "local", "test")

    @property
    def redirect_uri(self) -> str:
        """Registered redirect URL, used verbatim in authorize and token requests."""
        if self.SMART_REDIRECT_URI:
            return self.SMART_REDIRECT_URI
        return f"{self.APP_BASE_URL.rstrip('/')}/callback"

    @property
    def allow_insecure_issuers(self) -> bool:
        return self.ALLOW_INSECURE_ISSUERS and self.is_development

    def resolve_client_credentials(self) -> Tuple[str, str, str]:
        """
        Return (client_id, client_secret, source).

        Missing credentials are fatal outside development. In development the
        marked DEV_* defaults are substituted and source is reported as
        "development-default" so they can be told apart in logs.
        """
        client_id = self.SMART_CLIENT_ID
        secret = self.SMART_CLIENT_SECRET.get_secret_value() if self.SMART_CLIENT_SECRET else None

        if client_id and secret:
            return client_id, secret, CREDENTIAL_SOURCE_ENVIRONMENT

        if not self.is_development:
            missing = [
                name
                for name, value in (("SMART_CLIENT_ID", client_id), ("SMART_CLIENT_SECRET", secret))
                if not value
            ]
            raise ConfigurationError(f"Missing required SMART client credentials: {', '.join(missing)}")

        return client_id or DEV_CLIENT_ID, secret or DEV_CLIENT_SECRET, CREDENTIAL_SOURCE_DEV_DEFAULT

    @property
    def scopes(self) -> list:
        return self.SMART_SCOPE.split()


# Global settings instance
settings = Settings()
