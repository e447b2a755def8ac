"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version
    VERSION: str = "0.1.0"

    # Database
    DATABASE_URL: str

    # Display zone used for open hours and the Graph Prefer header
    DISPLAY_TIMEZONE: str = "America/Edmonton"

    # Microsoft Graph OAuth (single leasing agent calendar)
    MS_GRAPH_CLIENT_ID: str = ""
    MS_GRAPH_CLIENT_SECRET: str = ""
    MS_GRAPH_TENANT_ID: str = "common"
    MS_GRAPH_REDIRECT_URI: str = "http://localhost:8000/api/outlook/callback"
    GRAPH_BASE_URL: str = "https://graph.microsoft.com/v1.0"
    LOGIN_BASE_URL: str = "https://login.microsoftonline.com"

    # Token lifecycle and outbound call timeouts
    TOKEN_REFRESH_MARGIN_SECONDS: int = 300
    GRAPH_LIST_TIMEOUT_SECONDS: float = 10.0
    GRAPH_CREATE_TIMEOUT_SECONDS: float = 15.0
    TOKEN_REFRESH_TIMEOUT_SECONDS: float = 5.0
    GRAPH_RATE_LIMIT_PAUSE_SECONDS: float = 1.0

    # Reconciliation
    RECONCILE_INTERVAL_SECONDS: int = 300
    RUN_RECONCILER_IN_APP: bool = False
    FALLBACK_PROPERTY_ID: int = 1
    SENTINEL_LEAD_PHONE: str = "+10000000000"
    SENTINEL_LEAD_NAME: str = "External Calendar"

    # Token Encryption (for storing OAuth tokens)
    TOKEN_ENCRYPTION_KEY: str = ""  # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"

    # Internal scheduled endpoints (cron jobs)
    INTERNAL_SECRET: str = ""
    GRAPH_WEBHOOK_CLIENT_STATE: str = ""

    # Dashboard fan-out
    SSE_QUEUE_SIZE: int = 100
    SSE_HEARTBEAT_SECONDS: float = 25.0

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def token_endpoint(self) -> str:
        return f"{self.LOGIN_BASE_URL}/{self.MS_GRAPH_TENANT_ID}/oauth2/v2.0/token"

    @property
    def authorize_endpoint(self) -> str:
        return f"{self.LOGIN_BASE_URL}/{self.MS_GRAPH_TENANT_ID}/oauth2/v2.0/authorize"


settings = Settings()
