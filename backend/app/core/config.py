"""Application configuration using Pydantic settings."""

from typing import Any, Self

from pydantic import PostgresDsn, RedisDsn, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SECRET_KEY = "change-this-to-a-random-secret-key-in-production"
DEFAULT_TOKEN_ENCRYPTION_KEY = "change-this-token-encryption-key-in-production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "MockupSuite API"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    API_V1_PREFIX: str = "/api/v1"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    RELOAD: bool = False
    PUBLIC_URL: str = "http://localhost:8000"  # Base URL providers redirect back to
    APP_ORIGIN: str = "http://localhost:3000"  # Frontend origin, also the postMessage target

    # Database
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "mockupsuite"
    DATABASE_URL: PostgresDsn | None = None
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def assemble_db_connection(cls, v: str | None, info: Any) -> str:
        """Build database URL from components if not provided."""
        if isinstance(v, str):
            return v

        data = info.data
        return str(
            PostgresDsn.build(
                scheme="postgresql+asyncpg",
                username=data.get("POSTGRES_USER"),
                password=data.get("POSTGRES_PASSWORD"),
                host=data.get("POSTGRES_SERVER"),
                port=data.get("POSTGRES_PORT"),
                path=f"{data.get('POSTGRES_DB') or ''}",
            ),
        )

    # Redis
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str | None = None
    REDIS_URL: RedisDsn | None = None

    @field_validator("REDIS_URL", mode="before")
    @classmethod
    def assemble_redis_connection(cls, v: str | None, info: Any) -> str:
        """Build Redis URL from components if not provided."""
        if isinstance(v, str):
            return v

        data = info.data
        password_part = f":{data.get('REDIS_PASSWORD')}@" if data.get("REDIS_PASSWORD") else ""
        return f"redis://{password_part}{data.get('REDIS_HOST')}:{data.get('REDIS_PORT')}/{data.get('REDIS_DB')}"

    # Security
    SECRET_KEY: str = DEFAULT_SECRET_KEY
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Secret the OAuth token vault key is derived from (never shipped to clients)
    TOKEN_ENCRYPTION_KEY: str = DEFAULT_TOKEN_ENCRYPTION_KEY

    # CORS
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_ALLOW_METHODS: list[str] = ["*"]
    CORS_ALLOW_HEADERS: list[str] = ["*"]

    # OAuth
    OAUTH_STATE_TTL_SECONDS: int = 300

    SHOPIFY_CLIENT_ID: str | None = None
    SHOPIFY_CLIENT_SECRET: str | None = None
    SHOPIFY_API_VERSION: str = "2024-01"

    GOOGLE_CLIENT_ID: str | None = None
    GOOGLE_CLIENT_SECRET: str | None = None

    DROPBOX_CLIENT_ID: str | None = None
    DROPBOX_CLIENT_SECRET: str | None = None

    FIGMA_CLIENT_ID: str | None = None
    FIGMA_CLIENT_SECRET: str | None = None

    # Object storage (Supabase Storage REST API)
    STORAGE_URL: str = "http://localhost:54321"
    STORAGE_SERVICE_KEY: str | None = None
    STORAGE_BUCKET: str = "mockups"
    SIGNED_URL_EXPIRES_SECONDS: int = 3600
    SIGNED_URL_CACHE_MARGIN_SECONDS: int = 300
    THUMBNAIL_MAX_SIZE: int = 300

    # Generative AI (Gemini / Veo)
    GEMINI_API_KEY: str | None = None
    GEMINI_IMAGE_MODEL: str = "gemini-2.5-flash-image"
    GEMINI_VIDEO_MODEL: str = "veo-3.0-generate-001"
    VIDEO_GENERATION_TIMEOUT: float = 90.0
    VIDEO_POLL_INTERVAL: float = 5.0

    # Free-tier post-processing
    WATERMARK_TEXT: str = "MockupSuite AI generated"
    FREE_TIER_MAX_DIMENSION: int = 512

    # Payments
    PAYMENT_CHECKOUT_URL: str = "https://checkout.example.com/pay"
    PAYMENT_VERIFY_URL: str = "https://checkout.example.com/api/verify"
    PAYMENT_API_KEY: str | None = None
    PENDING_PAYMENT_MAX_AGE_SECONDS: int = 3600

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True

    # Handoff keys
    HANDOFF_TTL_SECONDS: int = 86400

    # External Service Timeouts (seconds)
    PROVIDER_TIMEOUT: float = 15.0  # OAuth token exchange and platform APIs
    STORAGE_TIMEOUT: float = 30.0
    PAYMENT_TIMEOUT: float = 10.0

    # Monitoring
    SENTRY_DSN: str | None = None
    SENTRY_ENVIRONMENT: str = "development"
    SENTRY_TRACES_SAMPLE_RATE: float = 1.0

    @model_validator(mode="after")
    def validate_production_security(self) -> Self:
        """Validate that production-critical secrets are not using defaults.

        Only enforced when DEBUG=False (production mode).
        """
        if not self.DEBUG:
            if self.SECRET_KEY == DEFAULT_SECRET_KEY:
                raise ValueError(
                    "SECRET_KEY must be changed from default value in production! "
                    'Generate a secure key with: python -c "import secrets; print(secrets.token_hex(32))"'
                )

            if self.TOKEN_ENCRYPTION_KEY == DEFAULT_TOKEN_ENCRYPTION_KEY:
                raise ValueError(
                    "TOKEN_ENCRYPTION_KEY must be changed from default value in production! "
                    "OAuth tokens at rest are encrypted with a key derived from it."
                )

        return self

    @property
    def oauth_redirect_uri(self) -> str:
        """Callback URL registered with every OAuth provider."""
        return f"{self.PUBLIC_URL}{self.API_V1_PREFIX}/integrations/oauth/callback"


settings = Settings()
