from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from zemicall.calls.machine import CallPolicy


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="Zemicall API", env="APP_NAME", description="Human readable service name")
    environment: str = Field(default="development", env="ENVIRONMENT", description="Deployment environment name")
    debug: bool = Field(default=False, env="DEBUG", description="Enable debug mode")
    log_level: str = Field(default="INFO", env="LOG_LEVEL", description="Root log level")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:8100",
            "http://127.0.0.1",
        ],
        env="CORS_ORIGINS",
        description="List of allowed CORS origins",
    )
    cors_allow_origin_regex: str | None = Field(
        default=r"^(capacitor|ionic)://localhost$",
        env="CORS_ALLOW_ORIGIN_REGEX",
        description="Optional regular expression that matches allowed CORS origins",
    )

    database_user: str = Field(default="zemicall", env="DB_USER")
    database_password: str = Field(default="zemicall", env="DB_PASSWORD")
    database_host: str = Field(default="db", env="DB_HOST")
    database_port: int = Field(default=3306, env="DB_PORT")
    database_name: str = Field(default="zemicall", env="DB_NAME")
    database_dsn: str | None = Field(
        default=None,
        env="DATABASE_DSN",
        description="Full SQLAlchemy URL; overrides the DB_* parts when set.",
    )

    jwt_secret_key: str = Field(default="changeme", env="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", env="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, env="ACCESS_TOKEN_EXPIRE_MINUTES")

    media_app_id: str | None = Field(
        default=None,
        env="MEDIA_APP_ID",
        description="Application identifier of the media SDK project.",
    )
    media_app_certificate: str | None = Field(
        default=None,
        env="MEDIA_APP_CERTIFICATE",
        description="Secret used to sign media join tokens.",
    )
    media_token_ttl_seconds: int = Field(
        default=3600,
        env="MEDIA_TOKEN_TTL_SECONDS",
        description="Lifetime of issued media join tokens.",
    )
    max_call_participants: int = Field(
        default=4,
        env="MAX_CALL_PARTICIPANTS",
        description="Maximum number of simultaneous participants in one call.",
    )

    call_signal_ttl_seconds: int = Field(
        default=60,
        env="CALL_SIGNAL_TTL_SECONDS",
        description="Seconds before an inserted call signal expires.",
    )
    call_signal_purge_interval_seconds: int = Field(
        default=30,
        env="CALL_SIGNAL_PURGE_INTERVAL_SECONDS",
        description="How often expired call signals are deleted.",
    )
    call_ring_timeout_seconds: float = Field(default=45.0, env="CALL_RING_TIMEOUT_SECONDS")
    call_reset_delay_seconds: float = Field(default=2.5, env="CALL_RESET_DELAY_SECONDS")
    call_video_warning_minutes: int = Field(default=55, env="CALL_VIDEO_WARNING_MINUTES")
    call_video_limit_minutes: int = Field(default=60, env="CALL_VIDEO_LIMIT_MINUTES")
    call_history_default_limit: int = Field(default=50, env="CALL_HISTORY_DEFAULT_LIMIT")
    call_history_max_limit: int = Field(default=100, env="CALL_HISTORY_MAX_LIMIT")
    websocket_keepalive_timeout_seconds: float = Field(
        default=25.0,
        env="WEBSOCKET_KEEPALIVE_TIMEOUT_SECONDS",
        description="Idle receive timeout after which a keepalive ping may be sent.",
    )
    websocket_keepalive_ping_interval_seconds: float = Field(
        default=25.0, env="WEBSOCKET_KEEPALIVE_PING_INTERVAL_SECONDS"
    )

    push_notifications_enabled: bool = Field(
        default=False,
        env="PUSH_NOTIFICATIONS_ENABLED",
        description="Toggle push notifications for incoming calls.",
    )
    fcm_project_id: str | None = Field(
        default=None,
        env="FCM_PROJECT_ID",
        description="Firebase project receiving call push messages.",
    )
    fcm_access_token: str | None = Field(
        default=None,
        env="FCM_ACCESS_TOKEN",
        description="OAuth access token for the FCM HTTP v1 API.",
    )
    fcm_endpoint: str = Field(
        default="https://fcm.googleapis.com/v1/projects/{project_id}/messages:send",
        env="FCM_ENDPOINT",
    )
    push_timeout_seconds: float = Field(default=10.0, env="PUSH_TIMEOUT_SECONDS")

    realtime_redis_url: str | None = Field(
        default=None,
        env="REALTIME_REDIS_URL",
        description="Redis URL used to fan call signals out across nodes.",
    )
    realtime_namespace: str = Field(default="zemicall.realtime", env="REALTIME_NAMESPACE")
    realtime_node_id: str | None = Field(default=None, env="REALTIME_NODE_ID")

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def database_url(self) -> str:
        if self.database_dsn:
            return self.database_dsn
        return (
            f"mysql+pymysql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @property
    def media_configured(self) -> bool:
        return bool(self.media_app_id and self.media_app_certificate)

    @property
    def call_policy(self) -> CallPolicy:
        """Client-side call timing derived from the server configuration."""

        return CallPolicy(
            ring_timeout=self.call_ring_timeout_seconds,
            reset_delay=self.call_reset_delay_seconds,
            video_warning_after=self.call_video_warning_minutes * 60.0,
            video_limit=self.call_video_limit_minutes * 60.0,
        )

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

    @field_validator("media_app_id", "media_app_certificate", "fcm_project_id", "realtime_redis_url", "database_dsn", mode="before")
    @classmethod
    def blank_to_none(cls, value: str | None) -> str | None:
        if value in (None, "", Ellipsis):
            return None
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
