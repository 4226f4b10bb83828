from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _split_csv(value: Any) -> Any:
    if value in (None, Ellipsis):
        return value
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return value


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="ConnectHub API", env="APP_NAME", description="Human readable service name")
    environment: str = Field(default="development", env="ENVIRONMENT", description="Deployment environment name")
    debug: bool = Field(default=False, env="DEBUG", description="Enable debug mode")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://127.0.0.1",
            "http://127.0.0.1:3000",
        ],
        env="CORS_ORIGINS",
        description="List of allowed CORS origins",
    )
    cors_allow_origin_regex: str | None = Field(
        default=r"^https?://(localhost|127\.0\.0\.1|\[::1\])(:\d+)?$",
        env="CORS_ALLOW_ORIGIN_REGEX",
        description="Optional regular expression that matches allowed CORS origins",
    )

    supabase_url: str | None = Field(
        default=None,
        env="SUPABASE_URL",
        description="Hosted backend base URL; the local SQL backend is used when unset.",
    )
    supabase_anon_key: str | None = Field(default=None, env="SUPABASE_ANON_KEY")
    supabase_service_role_key: str | None = Field(
        default=None,
        env="SUPABASE_SERVICE_ROLE_KEY",
        description="Server-side key used for storage writes and privileged queries.",
    )
    backend_timeout_seconds: float = Field(default=10.0, env="BACKEND_TIMEOUT_SECONDS")

    database_url: str = Field(default="sqlite:///./connecthub.db", env="DATABASE_URL")

    jwt_secret_key: str = Field(default="changeme", env="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", env="JWT_ALGORITHM")
    jwt_audience: str | None = Field(default=None, env="JWT_AUDIENCE")
    access_token_expire_minutes: int = Field(default=60, env="ACCESS_TOKEN_EXPIRE_MINUTES")

    storage_root: Path = Field(default=Path("storage"), env="STORAGE_ROOT")
    storage_base_url: str = Field(
        default="/api/storage",
        env="STORAGE_BASE_URL",
        description="URL prefix under which local storage objects are served",
    )
    default_bucket: str = Field(default="ft", env="DEFAULT_BUCKET")
    allowed_buckets: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["ft", "private", "public"], env="ALLOWED_BUCKETS"
    )
    public_buckets: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["ft", "public"],
        env="PUBLIC_BUCKETS",
        description="Buckets whose objects have public URLs; others get signed URLs",
    )
    allowed_folders: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["avatars", "uploads", "messages", "products", "profile"],
        env="ALLOWED_FOLDERS",
    )
    max_upload_size: int = Field(
        default=10 * 1024 * 1024, env="MAX_UPLOAD_SIZE", description="Maximum upload size in bytes"
    )
    signed_url_ttl_seconds: int = Field(default=3600, env="SIGNED_URL_TTL_SECONDS")

    presence_heartbeat_ms: int = Field(default=30_000, env="PRESENCE_HEARTBEAT_MS")

    realtime_redis_url: str | None = Field(
        default=None,
        env="REALTIME_REDIS_URL",
        description="Redis URL for cross-process change events; in-process delivery when unset",
    )
    realtime_namespace: str = Field(default="connecthub.realtime", env="REALTIME_NAMESPACE")
    websocket_keepalive_timeout_seconds: float = Field(
        default=30.0,
        env="WEBSOCKET_KEEPALIVE_TIMEOUT_SECONDS",
        description="Idle seconds before the server probes a websocket with a ping",
    )
    websocket_keepalive_ping_interval_seconds: float = Field(
        default=25.0, env="WEBSOCKET_KEEPALIVE_PING_INTERVAL_SECONDS"
    )

    feed_default_limit: int = Field(default=50, env="FEED_DEFAULT_LIMIT")
    feed_max_limit: int = Field(default=100, env="FEED_MAX_LIMIT")
    directory_limit: int = Field(default=100, env="DIRECTORY_LIMIT")

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def uses_hosted_backend(self) -> bool:
        return bool(self.supabase_url)

    @field_validator("cors_origins", "allowed_buckets", "public_buckets", "allowed_folders", mode="before")
    @classmethod
    def split_lists(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator("storage_root", mode="before")
    @classmethod
    def resolve_storage_root(cls, value: str | Path) -> Path:
        return Path(value).resolve()


@lru_cache
def get_settings() -> Settings:
    return Settings()
