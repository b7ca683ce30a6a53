"""Configuration management using Pydantic settings."""

from __future__ import annotations

import os
import re
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

TOPIC_NAME_PATTERN = re.compile(r"^projects/[^/]+/topics/[^/]+$")


class LogLevel(str, Enum):
    """Log level options."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DeliveryMode(str, Enum):
    """How new mail is discovered."""

    POLL = "poll"
    PULL = "pull"
    PUSH = "push"


class AckPolicy(str, Enum):
    """When a delivered notification is acknowledged."""

    ALWAYS = "always"  # ack after forwarding, even if processing failed
    AFTER_SUCCESS = "after_success"  # nack failed envelopes for redelivery


def _default_state_directory() -> Path:
    base = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(base) / "mailflow" / "watches"


class GmailSettings(BaseSettings):
    """Gmail API client settings."""

    model_config = SettingsConfigDict(env_prefix="GMAIL_")

    user_id: str = Field(default="me", description="Mailbox user id")
    api_base_url: str = Field(
        default="https://gmail.googleapis.com/gmail/v1",
        description="Gmail REST API base URL",
    )
    request_timeout: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=0.5, gt=0)
    retry_max_delay: float = Field(default=10.0, gt=0)
    credentials_path: Path | None = Field(
        default=None,
        description="Authorized-user token file (falls back to GCP_CREDENTIALS_PATH)",
    )
    scopes: list[str] = Field(
        default_factory=lambda: ["https://www.googleapis.com/auth/gmail.readonly"],
    )

    def resolve_credentials_path(self) -> Path | None:
        """Return the configured token path, honouring GCP_CREDENTIALS_PATH."""
        if self.credentials_path is not None:
            return self.credentials_path
        env_path = os.environ.get("GCP_CREDENTIALS_PATH")
        return Path(env_path) if env_path else None


class PubSubSettings(BaseSettings):
    """Cloud Pub/Sub settings for pull and push delivery."""

    model_config = SettingsConfigDict(env_prefix="PUBSUB_")

    project_id: str | None = Field(default=None)
    topic_id: str | None = Field(default=None)
    subscription_id: str | None = Field(default=None)
    api_base_url: str = Field(default="https://pubsub.googleapis.com/v1")
    max_messages: int = Field(default=10, ge=1, le=1000)
    return_immediately: bool = Field(default=False)
    pull_timeout: float = Field(default=30.0, gt=0)
    push_host: str = Field(default="0.0.0.0")
    push_port: int = Field(default=8080, ge=1, le=65535)
    push_path: str = Field(default="/pubsub/push")
    max_concurrent_notifications: int = Field(default=4, ge=1)

    def topic_name(self) -> str | None:
        """Fully qualified topic name, if both parts are configured."""
        if self.project_id and self.topic_id:
            return f"projects/{self.project_id}/topics/{self.topic_id}"
        return None

    def subscription_path(self) -> str | None:
        """Fully qualified subscription path, if both parts are configured."""
        if self.project_id and self.subscription_id:
            return f"projects/{self.project_id}/subscriptions/{self.subscription_id}"
        return None


class SyncSettings(BaseSettings):
    """Incremental sync settings."""

    model_config = SettingsConfigDict(env_prefix="SYNC_")

    mode: DeliveryMode = Field(default=DeliveryMode.POLL)
    poll_interval_seconds: float = Field(default=30.0, gt=0)
    max_results: int = Field(default=50, ge=1, le=500)
    ack_policy: AckPolicy = Field(default=AckPolicy.ALWAYS)
    drain_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Time allowed for in-flight notifications on shutdown",
    )


class WatchSettings(BaseSettings):
    """Watch registration lifecycle settings."""

    model_config = SettingsConfigDict(env_prefix="WATCH_")

    application_name: str = Field(default="mailflow")
    state_directory: Path = Field(default_factory=_default_state_directory)
    safety_margin_minutes: float = Field(default=15.0, gt=0)
    renewal_threshold_minutes: float = Field(default=20.0, gt=0)
    retry_backoff_minutes: float = Field(default=5.0, gt=0)
    min_schedule_minutes: float = Field(default=1.0, gt=0)
    default_expiration_days: int = Field(default=7, ge=1)
    expiration_buffer_minutes: float = Field(
        default=5.0,
        ge=0,
        description="Registrations closer than this to expiry count as inactive",
    )
    default_label_ids: list[str] = Field(default_factory=lambda: ["INBOX"])

    @field_validator("default_label_ids", mode="before")
    @classmethod
    def parse_label_ids(cls, v: str | list[str]) -> list[str]:
        """Parse label ids from a comma-separated string or list."""
        if isinstance(v, str):
            return [label.strip() for label in v.split(",") if label.strip()]
        return v


class ObservabilitySettings(BaseSettings):
    """Observability settings."""

    model_config = SettingsConfigDict(env_prefix="OBSERVABILITY_")

    log_level: LogLevel = Field(default=LogLevel.INFO)
    log_format: Literal["json", "console"] = Field(default="console")
    metrics_enabled: bool = Field(default=True)
    service_name: str = Field(default="mailflow")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="MAILFLOW_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    environment: Literal["development", "test", "production"] = Field(
        default="development"
    )
    debug: bool = Field(default=False)

    gmail: GmailSettings = Field(default_factory=GmailSettings)
    pubsub: PubSubSettings = Field(default_factory=PubSubSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    watch: WatchSettings = Field(default_factory=WatchSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    @classmethod
    def load(cls) -> Settings:
        """Load settings from environment."""
        return cls()


def is_valid_topic_name(topic_name: str) -> bool:
    """Check a topic against the projects/{project}/topics/{topic} form."""
    return bool(TOPIC_NAME_PATTERN.match(topic_name))


# Global settings instance (lazy loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def configure_settings(settings: Settings) -> None:
    """Configure the global settings instance (for testing)."""
    global _settings
    _settings = settings
