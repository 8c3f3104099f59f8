import os
import tempfile
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_runtime_dir() -> str:
    return os.environ.get("XDG_RUNTIME_DIR") or tempfile.gettempdir()


class Settings(BaseSettings):
    """
    Single-instance coordination settings using Pydantic Settings.
    Reads from environment variables and provides type safety and validation.
    """

    # ─────────────────────────────────────────────────────────────────────────────
    # Version
    # ─────────────────────────────────────────────────────────────────────────────
    VERSION: str = "1.0.0"
    # Also update:
    # - pyproject.toml (version)

    # ─────────────────────────────────────────────────────────────────────────────
    # Single Instance
    # ─────────────────────────────────────────────────────────────────────────────
    INSTANCE_ID: str = Field(default="", description="Application identity used by the CLI")
    ENABLE_SINGLE_INSTANCE: bool = True
    ENABLE_STALE_LOCK_CHECK: bool = True
    INSTANCE_RUNTIME_DIR: str = Field(
        default_factory=_default_runtime_dir,
        description="Directory holding the claim lock file and the channel socket (POSIX)",
    )
    RECLAIM_ON_NOTIFY_FAILURE: bool = True

    # ─────────────────────────────────────────────────────────────────────────────
    # Notification Channel
    # ─────────────────────────────────────────────────────────────────────────────
    NOTIFY_CONNECT_TIMEOUT_MS: int = Field(default=100, ge=1)
    NOTIFY_WRITE_TIMEOUT: float = Field(default=2.0, gt=0)
    CHANNEL_READ_TIMEOUT: float = Field(default=5.0, gt=0)
    LISTENER_POLL_INTERVAL: float = Field(default=0.2, gt=0)
    CHANNEL_BIND_RETRIES: int = Field(default=3, ge=1)
    CHANNEL_BIND_RETRY_DELAY: float = Field(default=0.05, ge=0)

    # ─────────────────────────────────────────────────────────────────────────────
    # Metrics
    # ─────────────────────────────────────────────────────────────────────────────
    ENABLE_METRICS: bool = False
    METRICS_ADDR: str = "127.0.0.1"
    METRICS_PORT: int = Field(default=8000, ge=1, le=65535)

    # ─────────────────────────────────────────────────────────────────────────────
    # Logging
    # ─────────────────────────────────────────────────────────────────────────────
    LOG_DIR: str = Field(default=os.path.expanduser("~/.instance_manager"))
    LOG_FILE: str = Field(default_factory=lambda: os.path.join(os.path.expanduser("~/.instance_manager"), "instance_manager.log"))
    LOG_LEVEL: str = "INFO"
    LOG_TRUNCATE_ON_START: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @property
    def notify_connect_timeout(self) -> float:
        """Client connect timeout in seconds."""
        return self.NOTIFY_CONNECT_TIMEOUT_MS / 1000.0
