"""Application settings loaded from environment variables.

Environment Configuration:
    FORKCHAT_ENV: Deployment environment (local | test | staging | prod)
    DATABASE_URL: SQLAlchemy connection string (required)

Redis / Celery Configuration:
    REDIS_URL: Redis connection string (resumable streams, liveness markers)
    CELERY_BROKER_URL: Celery broker URL (defaults to REDIS_URL)
    CELERY_RESULT_BACKEND: Celery result backend URL (defaults to REDIS_URL)

Auth Configuration (required in all environments):
    AUTH_JWKS_URL: Full URL to the identity provider's JWKS endpoint
    AUTH_ISSUER: Expected JWT issuer (trailing slash stripped)
    AUTH_AUDIENCES: Comma-separated list of allowed audiences

Provider keys are optional. A provider without a key stays bound in the
router but every call fails with E_LLM_INVALID_KEY.
"""

from enum import Enum
from functools import lru_cache
from typing import Annotated

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Application configuration.

    Validation rules:
    - DATABASE_URL is always required
    - AUTH_JWKS_URL, AUTH_ISSUER, AUTH_AUDIENCES are required in all environments
    """

    forkchat_env: Environment = Field(default=Environment.LOCAL, alias="FORKCHAT_ENV")
    database_url: Annotated[str, Field(alias="DATABASE_URL")]

    # Redis / Celery settings
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    celery_broker_url: str | None = Field(default=None, alias="CELERY_BROKER_URL")
    celery_result_backend: str | None = Field(default=None, alias="CELERY_RESULT_BACKEND")

    # Auth settings (required in all environments)
    auth_jwks_url: str | None = Field(default=None, alias="AUTH_JWKS_URL")
    auth_issuer: str | None = Field(default=None, alias="AUTH_ISSUER")
    auth_audiences: str | None = Field(default=None, alias="AUTH_AUDIENCES")

    # Provider API keys
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    anthropic_api_key: str | None = Field(default=None, alias="ANTHROPIC_API_KEY")
    gemini_api_key: str | None = Field(default=None, alias="GEMINI_API_KEY")
    openrouter_api_key: str | None = Field(default=None, alias="OPENROUTER_API_KEY")

    # Provider feature flags
    enable_openai: bool = Field(default=True, alias="ENABLE_OPENAI")
    enable_openrouter: bool = Field(default=True, alias="ENABLE_OPENROUTER")
    enable_anthropic: bool = Field(default=True, alias="ENABLE_ANTHROPIC")
    enable_gemini: bool = Field(default=True, alias="ENABLE_GEMINI")

    # Generation tuning
    title_model_id: str = Field(default="gemini-2.0-flash", alias="TITLE_MODEL_ID")
    stream_active_ttl_s: int = Field(default=3600, alias="STREAM_ACTIVE_TTL_S")
    stream_grace_ttl_s: int = Field(default=300, alias="STREAM_GRACE_TTL_S")
    flush_chunk_modulus: int = Field(default=50, alias="FLUSH_CHUNK_MODULUS")
    cancel_poll_interval_s: float = Field(default=1.0, alias="CANCEL_POLL_INTERVAL_S")
    stale_generation_minutes: int = Field(default=10, alias="STALE_GENERATION_MINUTES")
    llm_timeout_s: int = Field(default=60, alias="LLM_TIMEOUT_S")
    chat_cors_origins: str = Field(default="*", alias="CHAT_CORS_ORIGINS")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def validate_required_settings(self) -> "Settings":
        """Ensure auth settings are present and tuning values are sane."""
        missing_auth = []
        if not self.auth_jwks_url:
            missing_auth.append("AUTH_JWKS_URL")
        if not self.auth_issuer:
            missing_auth.append("AUTH_ISSUER")
        if not self.auth_audiences:
            missing_auth.append("AUTH_AUDIENCES")

        if missing_auth:
            raise ValueError(f"Missing required auth settings: {', '.join(missing_auth)}")

        if self.flush_chunk_modulus < 1:
            raise ValueError("FLUSH_CHUNK_MODULUS must be at least 1")

        if self.stream_grace_ttl_s > self.stream_active_ttl_s:
            raise ValueError("STREAM_GRACE_TTL_S must not exceed STREAM_ACTIVE_TTL_S")

        return self

    @property
    def audience_list(self) -> list[str]:
        """Parse comma-separated audiences into a list."""
        if self.auth_audiences:
            return [a.strip() for a in self.auth_audiences.split(",") if a.strip()]
        return []

    @property
    def normalized_issuer(self) -> str | None:
        """Return issuer with trailing slash stripped."""
        if self.auth_issuer:
            return self.auth_issuer.rstrip("/")
        return None

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.chat_cors_origins.split(",") if o.strip()] or ["*"]

    @property
    def effective_celery_broker_url(self) -> str | None:
        """Return Celery broker URL, falling back to REDIS_URL if not set."""
        return self.celery_broker_url or self.redis_url

    @property
    def effective_celery_result_backend(self) -> str | None:
        """Return Celery result backend URL, falling back to REDIS_URL if not set."""
        return self.celery_result_backend or self.redis_url


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Raises:
        ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
