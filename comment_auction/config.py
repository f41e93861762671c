import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from comment_auction.exceptions import ConfigError

INTEGRATION_MODES = ("auto", "manual")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Engine-wide settings"""

    # External platform
    external_platform_token: Optional[str] = None
    webhook_verify_token: Optional[str] = None
    integration_mode: str = "auto"
    graph_api_url: str = "https://graph.facebook.com/v18.0"
    reply_to_comments: bool = True

    # Scheduling
    poll_interval_seconds: int = 60
    backup_sweep_minutes: int = 5
    soft_close_default_minutes: int = 5
    monitor_enabled: bool = True

    # Timeouts
    fetch_timeout_seconds: int = 10
    webhook_entry_budget_seconds: int = 5

    # Storage / fan-out
    database_url: str = "sqlite+aiosqlite:///./auctions.db"
    redis_url: Optional[str] = None
    subscriber_queue_size: int = 100

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    def __post_init__(self):
        if self.integration_mode not in INTEGRATION_MODES:
            raise ConfigError(
                f"INTEGRATION_MODE must be one of {INTEGRATION_MODES}, "
                f"got {self.integration_mode!r}"
            )

    @property
    def polling_enabled(self) -> bool:
        """Automatic mode with credentials talks to the platform API."""
        return self.integration_mode == "auto" and bool(self.external_platform_token)

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            external_platform_token=os.getenv("EXTERNAL_PLATFORM_TOKEN") or None,
            webhook_verify_token=os.getenv("WEBHOOK_VERIFY_TOKEN") or None,
            integration_mode=(os.getenv("INTEGRATION_MODE") or "auto").strip().lower(),
            graph_api_url=os.getenv("GRAPH_API_URL") or cls.graph_api_url,
            reply_to_comments=_env_bool("REPLY_TO_COMMENTS", True),
            poll_interval_seconds=_env_int("POLL_INTERVAL_SECONDS", 60),
            backup_sweep_minutes=_env_int("BACKUP_SWEEP_MINUTES", 5),
            soft_close_default_minutes=_env_int("SOFT_CLOSE_DEFAULT_MINUTES", 5),
            monitor_enabled=_env_bool("MONITOR_ENABLED", True),
            fetch_timeout_seconds=_env_int("FETCH_TIMEOUT_SECONDS", 10),
            webhook_entry_budget_seconds=_env_int("WEBHOOK_ENTRY_BUDGET_SECONDS", 5),
            database_url=os.getenv("DATABASE_URL") or cls.database_url,
            redis_url=os.getenv("REDIS_URL") or None,
            subscriber_queue_size=_env_int("SUBSCRIBER_QUEUE_SIZE", 100),
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
            log_file=os.getenv("LOG_FILE") or None,
            host=os.getenv("HOST") or cls.host,
            port=_env_int("PORT", 8000),
        )
