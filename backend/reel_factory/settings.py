from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    app_name: str = "reel-factory"
    environment: str = Field(default="local", validation_alias=AliasChoices("ENVIRONMENT", "REEL_FACTORY_ENVIRONMENT"))
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/reel_factory",
        validation_alias=AliasChoices("DATABASE_URL", "REEL_FACTORY_DATABASE_URL"),
    )
    redis_url: str = Field(default="redis://redis:6379/0", validation_alias=AliasChoices("REDIS_URL", "REEL_FACTORY_REDIS_URL"))

    # Graph API (Instagram container publishing)
    graph_api_base_url: str = Field(default="https://graph.facebook.com", validation_alias=AliasChoices("GRAPH_API_BASE_URL", "REEL_FACTORY_GRAPH_API_BASE_URL"))
    graph_api_version: str = Field(default="v18.0", validation_alias=AliasChoices("GRAPH_API_VERSION", "REEL_FACTORY_GRAPH_API_VERSION"))
    facebook_app_id: str | None = Field(default=None, validation_alias=AliasChoices("FACEBOOK_APP_ID", "REEL_FACTORY_FACEBOOK_APP_ID"))
    facebook_app_secret: str | None = Field(default=None, validation_alias=AliasChoices("FACEBOOK_APP_SECRET", "REEL_FACTORY_FACEBOOK_APP_SECRET"))
    token_refresh_margin_days: int = Field(default=7, validation_alias=AliasChoices("TOKEN_REFRESH_MARGIN_DAYS", "REEL_FACTORY_TOKEN_REFRESH_MARGIN_DAYS"))
    token_exchange_timeout_sec: float = Field(default=15.0, validation_alias=AliasChoices("TOKEN_EXCHANGE_TIMEOUT_SEC", "REEL_FACTORY_TOKEN_EXCHANGE_TIMEOUT_SEC"))
    graph_api_timeout_sec: float = Field(default=60.0, validation_alias=AliasChoices("GRAPH_API_TIMEOUT_SEC", "REEL_FACTORY_GRAPH_API_TIMEOUT_SEC"))

    # Container polling budget
    publish_poll_max_attempts: int = Field(default=30, validation_alias=AliasChoices("PUBLISH_POLL_MAX_ATTEMPTS", "REEL_FACTORY_PUBLISH_POLL_MAX_ATTEMPTS"))
    publish_poll_interval_sec: float = Field(default=2.0, validation_alias=AliasChoices("PUBLISH_POLL_INTERVAL_SEC", "REEL_FACTORY_PUBLISH_POLL_INTERVAL_SEC"))
    publish_poll_timeout_sec: float = Field(default=300.0, validation_alias=AliasChoices("PUBLISH_POLL_TIMEOUT_SEC", "REEL_FACTORY_PUBLISH_POLL_TIMEOUT_SEC"))
    distribution_enabled: bool = Field(default=True, validation_alias=AliasChoices("DISTRIBUTION_ENABLED", "REEL_FACTORY_DISTRIBUTION_ENABLED"))
    max_consecutive_failures: int = Field(default=5, validation_alias=AliasChoices("MAX_CONSECUTIVE_FAILURES", "REEL_FACTORY_MAX_CONSECUTIVE_FAILURES"))

    # Review channel
    telegram_bot_token: str | None = Field(default=None, validation_alias=AliasChoices("TELEGRAM_BOT_TOKEN", "REEL_FACTORY_TELEGRAM_BOT_TOKEN"))
    telegram_chat_id: str | None = Field(default=None, validation_alias=AliasChoices("TELEGRAM_CHAT_ID", "REEL_FACTORY_TELEGRAM_CHAT_ID"))
    telegram_authorized_user_ids: list[int] = Field(
        default_factory=list,
        validation_alias=AliasChoices("TELEGRAM_AUTHORIZED_USER_IDS", "REEL_FACTORY_TELEGRAM_AUTHORIZED_USER_IDS"),
    )

    # Background execution
    scheduler_enabled: bool = Field(default=True, validation_alias=AliasChoices("SCHEDULER_ENABLED", "REEL_FACTORY_SCHEDULER_ENABLED"))
    celery_enabled: bool = Field(default=True, validation_alias=AliasChoices("CELERY_ENABLED", "REEL_FACTORY_CELERY_ENABLED"))
    watchdog_enabled: bool = Field(default=True, validation_alias=AliasChoices("WATCHDOG_ENABLED", "REEL_FACTORY_WATCHDOG_ENABLED"))
    watchdog_interval_minutes: int = Field(default=5, validation_alias=AliasChoices("WATCHDOG_INTERVAL_MINUTES", "REEL_FACTORY_WATCHDOG_INTERVAL_MINUTES"))
    stuck_layer_minutes: int = Field(default=90, validation_alias=AliasChoices("STUCK_LAYER_MINUTES", "REEL_FACTORY_STUCK_LAYER_MINUTES"))
    token_refresh_interval_hours: int = Field(default=12, validation_alias=AliasChoices("TOKEN_REFRESH_INTERVAL_HOURS", "REEL_FACTORY_TOKEN_REFRESH_INTERVAL_HOURS"))
    auto_distribute_interval_minutes: int = Field(default=15, validation_alias=AliasChoices("AUTO_DISTRIBUTE_INTERVAL_MINUTES", "REEL_FACTORY_AUTO_DISTRIBUTE_INTERVAL_MINUTES"))
    content_lock_ttl_sec: int = Field(default=7200, validation_alias=AliasChoices("CONTENT_LOCK_TTL_SEC", "REEL_FACTORY_CONTENT_LOCK_TTL_SEC"))

    # Generation layers (idea, prompts, video, composition+upload), "module:attribute"
    stage_handlers: str | None = Field(default=None, validation_alias=AliasChoices("STAGE_HANDLERS", "REEL_FACTORY_STAGE_HANDLERS"))

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("postgresql+"):
            return self.database_url
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url

    @property
    def graph_api_url(self) -> str:
        return f"{self.graph_api_base_url.rstrip('/')}/{self.graph_api_version}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
