from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from activity_sync.core.errors import ConfigurationError


class Settings(BaseSettings):
    database_url: str = Field(default="", validation_alias="DATABASE_URL")
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file: str | None = Field(default=None, validation_alias="LOG_FILE")
    encryption_key: str = Field(default="", validation_alias="ENCRYPTION_KEY")
    allow_ephemeral_encryption_key: bool = Field(
        default=False,
        validation_alias="ALLOW_EPHEMERAL_ENCRYPTION_KEY",
        description="Development only: generate a per-process Fernet key when ENCRYPTION_KEY is unset",
    )

    strava_client_id: str = Field(default="", validation_alias="STRAVA_CLIENT_ID")
    strava_client_secret: str = Field(default="", validation_alias="STRAVA_CLIENT_SECRET")
    strava_redirect_uri: str = Field(
        default="http://localhost:8000/auth/strava/callback",
        validation_alias="STRAVA_REDIRECT_URI",
    )
    strava_webhook_verify_token: str = Field(default="", validation_alias="STRAVA_WEBHOOK_VERIFY_TOKEN")

    garmin_enabled: bool = Field(default=False, validation_alias="GARMIN_ENABLED")
    garmin_client_id: str = Field(default="", validation_alias="GARMIN_CLIENT_ID")
    garmin_client_secret: str = Field(default="", validation_alias="GARMIN_CLIENT_SECRET")
    garmin_redirect_uri: str = Field(
        default="http://localhost:8000/auth/garmin/callback",
        validation_alias="GARMIN_REDIRECT_URI",
    )

    fcm_server_key: str = Field(default="", validation_alias="FCM_SERVER_KEY")

    default_discipline: str = Field(
        default="Run",
        validation_alias="DEFAULT_DISCIPLINE",
        description="Discipline used when a provider activity type cannot be resolved",
    )
    sync_batch_size: int = Field(default=5, validation_alias="SYNC_BATCH_SIZE")
    sync_stale_after_minutes: int = Field(default=30, validation_alias="SYNC_STALE_AFTER_MINUTES")
    sync_max_retries: int = Field(default=3, validation_alias="SYNC_MAX_RETRIES")
    sync_retention_days: int = Field(default=30, validation_alias="SYNC_RETENTION_DAYS")
    incremental_overlap_hours: int = Field(default=24, validation_alias="INCREMENTAL_OVERLAP_HOURS")
    token_refresh_buffer_seconds: int = Field(default=300, validation_alias="TOKEN_REFRESH_BUFFER_SECONDS")
    oauth_state_ttl_minutes: int = Field(default=10, validation_alias="OAUTH_STATE_TTL_MINUTES")

    provider_page_delay_seconds: float = Field(default=1.0, validation_alias="PROVIDER_PAGE_DELAY_SECONDS")
    provider_max_pages: int = Field(default=100, validation_alias="PROVIDER_MAX_PAGES")
    provider_http_timeout_seconds: float = Field(default=30.0, validation_alias="PROVIDER_HTTP_TIMEOUT_SECONDS")
    webhook_http_timeout_seconds: float = Field(
        default=1.5,
        validation_alias="WEBHOOK_HTTP_TIMEOUT_SECONDS",
        description="Per-request timeout on the webhook path, token refresh included",
    )
    webhook_response_budget_seconds: float = Field(
        default=1.8,
        validation_alias="WEBHOOK_RESPONSE_BUDGET_SECONDS",
        description="Total time a webhook delivery may spend on provider calls; Strava expects a response within 2 seconds",
    )
    webhook_refetch_on_update: bool = Field(default=True, validation_alias="WEBHOOK_REFETCH_ON_UPDATE")
    scheduler_enabled: bool = Field(default=True, validation_alias="SCHEDULER_ENABLED")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate that log level is one of the standard logging levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_value = value.upper()
        if upper_value not in valid_levels:
            logger.warning(f"Invalid LOG_LEVEL '{value}'. Valid levels are: {', '.join(sorted(valid_levels))}. Defaulting to INFO.")
            return "INFO"
        return upper_value

    @field_validator("strava_redirect_uri")
    @classmethod
    def validate_redirect_uri(cls, value: str) -> str:
        """Validate that redirect URI points to /auth/strava/callback."""
        if value and "/auth/strava/callback" not in value:
            logger.warning(f"STRAVA_REDIRECT_URI should point to /auth/strava/callback, but got: {value}. This may cause OAuth failures.")
        return value

    @field_validator("default_discipline")
    @classmethod
    def validate_default_discipline(cls, value: str) -> str:
        """Strip whitespace; an empty default falls back to Run."""
        stripped = value.strip()
        if not stripped:
            logger.warning("DEFAULT_DISCIPLINE is empty. Defaulting to Run.")
            return "Run"
        return stripped

    @field_validator("sync_batch_size", "sync_max_retries", "provider_max_pages")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError(f"must be at least 1, got {value}")
        return value


def validate_required_settings(config: Settings) -> None:
    """Fail fast when a required secret is missing.

    Args:
        config: Settings instance to check

    Raises:
        ConfigurationError: Listing every missing environment variable
    """
    required = {
        "DATABASE_URL": config.database_url,
        "ENCRYPTION_KEY": config.encryption_key or config.allow_ephemeral_encryption_key,
        "STRAVA_CLIENT_ID": config.strava_client_id,
        "STRAVA_CLIENT_SECRET": config.strava_client_secret,
        "STRAVA_WEBHOOK_VERIFY_TOKEN": config.strava_webhook_verify_token,
    }
    if config.garmin_enabled:
        required["GARMIN_CLIENT_ID"] = config.garmin_client_id
        required["GARMIN_CLIENT_SECRET"] = config.garmin_client_secret

    missing = [name for name, value in required.items() if not value]
    if missing:
        logger.error(f"Missing required configuration: {', '.join(missing)}")
        raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")


settings = Settings()
