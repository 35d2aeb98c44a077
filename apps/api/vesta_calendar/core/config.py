"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.01.00"

    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str

    # Session Token (issued by the auth service, verified here; supports key rotation)
    JWT_SECRET: str = "change-this-in-production"
    JWT_SECRET_PREVIOUS: str = ""  # Set during rotation, clear after
    JWT_EXPIRES_HOURS: int = 4

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Frontend (for OAuth callback redirects)
    FRONTEND_URL: str = "http://localhost:3000"

    # Google OAuth (per-user calendar integration)
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_CALENDAR_REDIRECT_URI: str = "http://localhost:8000/api/google/calendar/callback"
    OAUTH_STATE_MAX_AGE_SECONDS: int = 600

    # Google Calendar push notifications (must be public HTTPS, empty disables push)
    GOOGLE_CALENDAR_WEBHOOK_URL: str = ""
    GOOGLE_CALENDAR_WATCH_TTL_DAYS: int = 7
    GOOGLE_CALENDAR_WATCH_RENEW_BEFORE_HOURS: int = 24

    # Google Calendar sync
    GOOGLE_TOKEN_REFRESH_MARGIN_SECONDS: int = 300
    GOOGLE_API_TIMEOUT_SECONDS: float = 30.0
    GOOGLE_CALENDAR_FULL_SYNC_PAST_DAYS: int = 30
    GOOGLE_CALENDAR_FULL_SYNC_FUTURE_DAYS: int = 90
    GOOGLE_CALENDAR_SYNC_LOCK_TTL_SECONDS: int = 300
    GOOGLE_CALENDAR_DEFAULT_TIMEZONE: str = "Europe/Madrid"

    # Token Encryption (for storing OAuth tokens and channel tokens)
    FERNET_KEY: str = ""  # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"

    # Internal scheduled endpoints (cron jobs)
    INTERNAL_SECRET: str = ""  # Secret for /internal/scheduled/* endpoints

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Rate Limiting (requests per minute)
    RATE_LIMIT_WEBHOOK: int = 100  # Google push notifications
    RATE_LIMIT_API: int = 60  # General API

    # Per-user status cache
    STATUS_CACHE_TTL_SECONDS: int = 30

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def jwt_secrets(self) -> list[str]:
        """Returns list of valid secrets (current first, then previous if set)."""
        secrets = [self.JWT_SECRET]
        if self.JWT_SECRET_PREVIOUS:
            secrets.append(self.JWT_SECRET_PREVIOUS)
        return secrets

    @property
    def cookie_secure(self) -> bool:
        """Secure cookies only in production."""
        return self.ENV != "dev"

    @property
    def google_calendar_push_enabled(self) -> bool:
        """Google only delivers push notifications to HTTPS addresses."""
        return self.GOOGLE_CALENDAR_WEBHOOK_URL.startswith("https://")


settings = Settings()
