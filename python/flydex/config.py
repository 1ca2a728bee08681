"""Chat core settings loaded from environment variables.

Environment Configuration:
    FLYDEX_ENV: Deployment environment (local | test | staging | prod)

Supabase Configuration (required in staging/prod):
    SUPABASE_URL: Supabase project URL (e.g. https://xxx.supabase.co)
    SUPABASE_ANON_KEY: Public anon key sent as the `apikey` header
    SUPABASE_REALTIME_URL: Realtime websocket URL (derived from SUPABASE_URL when unset)

Notification / Chat Tuning:
    NOTIFICATION_MAX_ITEMS: Cap on the notification list (default 50)
    NOTIFICATION_PREVIEW_CHARS: Length of message previews in notifications
    SEND_ACK_TIMEOUT_S: Seconds before an unacknowledged send is marked failed
    READ_RECEIPT_DEBOUNCE_MS: Debounce window for batched read-state writes

Realtime Connection:
    REALTIME_HEARTBEAT_S: Heartbeat interval for the realtime socket
    REALTIME_RECONNECT_DELAY_S / REALTIME_RECONNECT_ATTEMPTS: Reconnect policy
    RESYNC_MAX_ATTEMPTS / RESYNC_BACKOFF_S: Pull-resync retry policy after reconnect
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Chat core configuration.

    Settings are loaded from environment variables.
    Validation rules:
    - SUPABASE_URL and SUPABASE_ANON_KEY are required in staging and prod
    - Count and duration settings must be positive
    """

    flydex_env: Environment = Field(default=Environment.LOCAL, alias="FLYDEX_ENV")

    # Supabase settings
    supabase_url: str | None = Field(default=None, alias="SUPABASE_URL")
    supabase_anon_key: str | None = Field(default=None, alias="SUPABASE_ANON_KEY")
    supabase_realtime_url: str | None = Field(default=None, alias="SUPABASE_REALTIME_URL")
    http_timeout_s: float = Field(default=10.0, alias="HTTP_TIMEOUT_S")

    # Notification aggregation
    notification_max_items: int = Field(default=50, alias="NOTIFICATION_MAX_ITEMS")
    notification_preview_chars: int = Field(default=80, alias="NOTIFICATION_PREVIEW_CHARS")

    # Private messaging
    send_ack_timeout_s: float = Field(default=15.0, alias="SEND_ACK_TIMEOUT_S")
    read_receipt_debounce_ms: int = Field(default=250, alias="READ_RECEIPT_DEBOUNCE_MS")

    # Realtime connection lifecycle
    realtime_heartbeat_s: float = Field(default=25.0, alias="REALTIME_HEARTBEAT_S")
    realtime_reconnect_delay_s: float = Field(default=1.0, alias="REALTIME_RECONNECT_DELAY_S")
    realtime_reconnect_attempts: int = Field(default=5, alias="REALTIME_RECONNECT_ATTEMPTS")
    resync_max_attempts: int = Field(default=3, alias="RESYNC_MAX_ATTEMPTS")
    resync_backoff_s: float = Field(default=1.0, alias="RESYNC_BACKOFF_S")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }

    @field_validator(
        "notification_max_items",
        "notification_preview_chars",
        "realtime_reconnect_attempts",
        "resync_max_attempts",
    )
    @classmethod
    def validate_positive_count(cls, value: int, info) -> int:
        """Counts must be at least one."""
        if value < 1:
            raise ValueError(f"{info.field_name.upper()} must be >= 1")
        return value

    @field_validator(
        "http_timeout_s",
        "send_ack_timeout_s",
        "realtime_heartbeat_s",
        "realtime_reconnect_delay_s",
        "resync_backoff_s",
    )
    @classmethod
    def validate_positive_duration(cls, value: float, info) -> float:
        """Durations must be strictly positive."""
        if value <= 0:
            raise ValueError(f"{info.field_name.upper()} must be > 0")
        return value

    @field_validator("read_receipt_debounce_ms")
    @classmethod
    def validate_debounce(cls, value: int) -> int:
        """Zero disables debouncing; negative values are rejected."""
        if value < 0:
            raise ValueError("READ_RECEIPT_DEBOUNCE_MS must be >= 0")
        return value

    @model_validator(mode="after")
    def validate_required_settings(self) -> "Settings":
        """Ensure Supabase settings are present for deployed environments."""
        if self.flydex_env in (Environment.STAGING, Environment.PROD):
            missing = []
            if not self.supabase_url:
                missing.append("SUPABASE_URL")
            if not self.supabase_anon_key:
                missing.append("SUPABASE_ANON_KEY")
            if missing:
                raise ValueError(
                    f"Missing required Supabase settings for FLYDEX_ENV={self.flydex_env.value}: "
                    f"{', '.join(missing)}"
                )

        return self

    @property
    def normalized_supabase_url(self) -> str | None:
        """Return the project URL with trailing slash stripped."""
        if self.supabase_url:
            return self.supabase_url.rstrip("/")
        return None

    @property
    def effective_realtime_url(self) -> str | None:
        """Return the realtime websocket URL, deriving it from SUPABASE_URL if not set."""
        if self.supabase_realtime_url:
            return self.supabase_realtime_url
        base = self.normalized_supabase_url
        if base is None:
            return None
        if base.startswith("https://"):
            base = "wss://" + base[len("https://") :]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://") :]
        return f"{base}/realtime/v1/websocket"

    @property
    def read_receipt_debounce_s(self) -> float:
        """Debounce window in seconds."""
        return self.read_receipt_debounce_ms / 1000.0


@lru_cache
def get_settings() -> Settings:
    """Get cached chat core settings.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
