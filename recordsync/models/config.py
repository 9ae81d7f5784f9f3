"""Configuration models for the sync service."""

from typing import Any, Literal

from pydantic import BaseModel, Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SourceConfig(BaseModel):
    """Configuration for the remote data source."""

    contracts_url: HttpUrl = Field(
        default="https://eaist.mos.ru/eaist2rc/api/contracts/contract/list",
        description="Paginated endpoint of the primary collection",
    )
    states_url: HttpUrl = Field(
        default="https://eaist.mos.ru/eaist2rc/api/core/states/state/list",
        description="Unpaged endpoint of the auxiliary reference collection",
    )
    login_url: HttpUrl = Field(
        default="https://eaist.mos.ru/module/protected-admin/api/login",
        description="Endpoint establishing the authenticated session",
    )
    username: str = Field(default=..., min_length=1, description="Source account username")
    password: str = Field(default=..., min_length=1, description="Source account password")
    page_size: int = Field(default=500, ge=1, le=5000, description="Records per page request")
    max_concurrency: int = Field(
        default=5, ge=1, le=64, description="Maximum page requests in flight"
    )
    request_timeout: float = Field(
        default=30.0, gt=0, description="HTTP timeout per request in seconds"
    )
    contracts_filter: dict[str, Any] = Field(
        default_factory=dict, description="Static filter sent with every contracts page request"
    )
    states_filter: dict[str, Any] = Field(
        default_factory=lambda: {"categoryCode": "contractstagesupplier"},
        description="Filter sent with the states request",
    )


class StorageConfig(BaseModel):
    """Configuration for the keyed record store."""

    backend: Literal["postgres", "sqlite"] = Field(
        default="postgres", description="Persistence backend type"
    )
    dsn: str = Field(default=..., min_length=1, description="Database DSN or sqlite file path")
    allowed_collections: list[str] = Field(
        default_factory=lambda: ["contracts", "states", "lots"],
        description="Collection names the upserter may write to",
    )
    transaction_timeout: float = Field(
        default=30.0, gt=0, description="Overall budget for one upsert transaction in seconds"
    )
    statement_timeout: float = Field(
        default=5.0, gt=0, description="Budget for a single record upsert in seconds"
    )

    @field_validator("allowed_collections")
    @classmethod
    def normalize_collections(cls, v: list[str]) -> list[str]:
        """Store collection names lowercased, as they are matched case-insensitively."""
        return [name.strip().lower() for name in v if name.strip()]


class NotifierConfig(BaseModel):
    """Configuration for the Telegram notifier."""

    telegram_bot_token: str = Field(default="", description="Bot API token, empty disables")
    telegram_chat_id: int = Field(default=0, description="Target chat id, 0 disables")
    max_retries: int = Field(default=3, ge=0, le=10, description="Retries per Bot API call")
    retry_delay: float = Field(default=2.0, ge=0, description="Base retry delay in seconds")

    @property
    def enabled(self) -> bool:
        """Telegram is only used when both the token and the chat id are set."""
        return bool(self.telegram_bot_token) and self.telegram_chat_id != 0


class SyncConfig(BaseModel):
    """Configuration for the sync cycle scheduling."""

    interval_seconds: int = Field(
        default=86400, ge=60, description="Delay between scheduled cycles in seconds"
    )
    defer_seen_update: bool = Field(
        default=False,
        description="Only remember identifiers as seen after every upsert committed",
    )


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=True,
        description="If True, output JSON logs. If False, use console format.",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional path to log file. If None, logs only to stdout.",
    )


class AppConfig(BaseSettings):
    """Main application configuration.

    This class uses pydantic-settings to load configuration from environment
    variables with the APP_ prefix (e.g. APP_SOURCE__PAGE_SIZE=200).
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    source: SourceConfig
    storage: StorageConfig
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
