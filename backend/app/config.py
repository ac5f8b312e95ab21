from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="SafeYou Chat API", description="Human readable service name")
    environment: str = Field(default="development", description="Deployment environment name")
    debug: bool = Field(default=True, description="Enable debug mode")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1",
            "http://127.0.0.1:5173",
        ],
        description="List of allowed CORS origins",
    )
    cors_allow_origin_regex: str | None = Field(
        default=r"^https?://(localhost|127\.0\.0\.1|\[::1\])(:\d+)?$",
        description="Optional regular expression that matches allowed CORS origins",
    )

    database_url_override: str | None = Field(
        default=None,
        validation_alias="DATABASE_URL",
        description="Full SQLAlchemy URL; takes precedence over the individual database fields",
    )
    database_user: str = Field(default="safeyou")
    database_password: str = Field(default="safeyou")
    database_host: str = Field(default="db")
    database_port: int = Field(default=3306)
    database_name: str = Field(default="safeyou")

    jwt_secret_key: str = Field(default="changeme")
    jwt_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=60)

    chat_history_default_limit: int = Field(default=50)
    chat_history_max_limit: int = Field(default=200)
    chat_message_max_length: int = Field(default=1000)
    change_history_page_limit: int = Field(
        default=500, description="Maximum number of change events returned per catch-up page"
    )

    moderation_suspension_minutes: int = Field(
        default=40, description="How long a reported author is prevented from sending messages"
    )
    command_timeout_seconds: float = Field(
        default=5.0, description="Upper bound for a single chat command before it fails as transient"
    )

    presence_heartbeat_interval_seconds: float = Field(
        default=15.0, description="Interval at which clients are expected to send heartbeats"
    )
    presence_stale_multiplier: float = Field(
        default=3.0, description="Missed heartbeat intervals before an online user counts as stale"
    )
    presence_sweep_interval_seconds: float = Field(
        default=15.0, description="How often the presence watchdog looks for stale users"
    )

    websocket_keepalive_timeout_seconds: float = Field(default=30.0)
    websocket_keepalive_ping_interval_seconds: float = Field(default=20.0)

    realtime_redis_url: str | None = Field(
        default=None, description="Redis URL used to relay change events between nodes"
    )
    realtime_namespace: str = Field(default="safeyou.changes")
    realtime_node_id: str | None = Field(default=None)
    realtime_log_retention: int = Field(
        default=1000, description="Change events kept in memory per entity for fast replay"
    )
    realtime_subscriber_queue_size: int = Field(
        default=256, description="Buffered events per subscriber before it is disconnected"
    )

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"mysql+pymysql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @property
    def presence_grace_seconds(self) -> float:
        return self.presence_heartbeat_interval_seconds * self.presence_stale_multiplier

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v):  # type: ignore[override]
        if v in (None, "", Ellipsis):
            return v
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
