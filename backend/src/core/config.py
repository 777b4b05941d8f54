"""Application configuration using pydantic-settings."""
from functools import lru_cache
from urllib.parse import urlencode, urlparse

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Supabase project - NEXT_PUBLIC_ names are accepted so a web frontend .env can be reused
    supabase_url: str = Field(
        default="",
        validation_alias=AliasChoices("SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL"),
    )
    supabase_anon_key: str = Field(
        default="",
        validation_alias=AliasChoices("SUPABASE_ANON_KEY", "NEXT_PUBLIC_SUPABASE_ANON_KEY"),
    )
    # Optional - when set, access tokens are verified locally instead of only decoded
    supabase_jwt_secret: str = Field(default="", validation_alias="SUPABASE_JWT_SECRET")

    bookmarks_table: str = Field(default="bookmarks", validation_alias="BOOKMARKS_TABLE")
    bookmarks_schema: str = Field(default="public", validation_alias="BOOKMARKS_SCHEMA")

    request_timeout: float = Field(default=10.0, validation_alias="REQUEST_TIMEOUT")

    # Realtime channel
    realtime_heartbeat_interval: float = Field(
        default=25.0, validation_alias="REALTIME_HEARTBEAT_INTERVAL",
    )
    realtime_join_timeout: float = Field(default=10.0, validation_alias="REALTIME_JOIN_TIMEOUT")
    realtime_reconnect_min_delay: float = Field(
        default=1.0, validation_alias="REALTIME_RECONNECT_MIN_DELAY",
    )
    realtime_reconnect_max_delay: float = Field(
        default=30.0, validation_alias="REALTIME_RECONNECT_MAX_DELAY",
    )

    # Development mode - traces every realtime event and subscription status at DEBUG
    dev_mode: bool = Field(default=False, validation_alias="DEV_MODE")

    # Field length limits
    max_title_length: int = Field(default=500, validation_alias="MAX_TITLE_LENGTH")
    max_url_length: int = Field(default=2048, validation_alias="MAX_URL_LENGTH")

    @field_validator("supabase_url")
    @classmethod
    def validate_supabase_url(cls, v: str) -> str:
        """Require an http(s) URL and strip any trailing slash."""
        if not v:
            return v
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(
                f"SUPABASE_URL must be an http(s) URL (got '{v}'). "
                "Example: https://your-project.supabase.co",
            )
        return v.rstrip("/")

    @property
    def is_configured(self) -> bool:
        """Whether both the project URL and the anon key are present."""
        return bool(self.supabase_url and self.supabase_anon_key)

    @property
    def rest_url(self) -> str:
        """Get the PostgREST base URL."""
        return f"{self.supabase_url}/rest/v1"

    @property
    def auth_url(self) -> str:
        """Get the GoTrue auth base URL."""
        return f"{self.supabase_url}/auth/v1"

    @property
    def realtime_url(self) -> str:
        """Get the Realtime websocket URL, including the api key."""
        parsed = urlparse(self.supabase_url)
        scheme = "wss" if parsed.scheme == "https" else "ws"
        query = urlencode({"apikey": self.supabase_anon_key, "vsn": "1.0.0"})
        return f"{scheme}://{parsed.netloc}/realtime/v1/websocket?{query}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
