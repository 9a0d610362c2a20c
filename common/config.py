"""
Environment-driven configuration for the calendar bridge.

Values are read from the process environment (a local `.env` file is loaded
first when present). Every option has a documented default except the
credentials and identifiers listed in REQUIRED_VARIABLES.
"""

import os
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from dotenv import load_dotenv

from common.errors import ConfigurationError

logger = logging.getLogger("Config")

REQUIRED_VARIABLES = (
    "DISCORD_TOKEN",
    "GUILD_ID",
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
    "GOOGLE_REFRESH_TOKEN",
)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}={raw!r}, using default {default}")
        return default


@dataclass
class BridgeConfig:
    # Discord
    discord_token: Optional[str] = None
    guild_id: Optional[str] = None
    discord_rate_limit_per_second: int = 50
    discord_queue_tick_ms: int = 20

    # Google Calendar
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    google_refresh_token: Optional[str] = None
    google_calendar_id: str = "primary"
    google_rate_limit_per_100_seconds: int = 100
    google_queue_tick_ms: int = 1000

    # Sync behaviour
    sync_interval_minutes: int = 5
    sync_guard_ttl_ms: int = 2000
    mappings_file: str = "event-mappings.json"

    # Retry
    max_retries: int = 3
    base_retry_delay_ms: int = 1000

    # Application
    environment: str = "development"
    log_level: str = "info"
    health_check_port: int = 3000

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "BridgeConfig":
        """Build a config from environment variables."""
        if dotenv:
            load_dotenv()

        return cls(
            discord_token=os.environ.get("DISCORD_TOKEN"),
            guild_id=os.environ.get("GUILD_ID"),
            discord_rate_limit_per_second=_env_int("DISCORD_RATE_LIMIT_PER_SECOND", 50),
            discord_queue_tick_ms=_env_int("DISCORD_QUEUE_TICK_MS", 20),
            google_client_id=os.environ.get("GOOGLE_CLIENT_ID"),
            google_client_secret=os.environ.get("GOOGLE_CLIENT_SECRET"),
            google_refresh_token=os.environ.get("GOOGLE_REFRESH_TOKEN"),
            google_calendar_id=os.environ.get("GOOGLE_CALENDAR_ID") or "primary",
            google_rate_limit_per_100_seconds=_env_int("GOOGLE_RATE_LIMIT_PER_100_SECONDS", 100),
            google_queue_tick_ms=_env_int("GOOGLE_QUEUE_TICK_MS", 1000),
            sync_interval_minutes=_env_int("SYNC_INTERVAL_MINUTES", 5),
            sync_guard_ttl_ms=_env_int("SYNC_GUARD_TTL_MS", 2000),
            mappings_file=os.environ.get("MAPPINGS_FILE") or "event-mappings.json",
            max_retries=_env_int("MAX_RETRIES", 3),
            base_retry_delay_ms=_env_int("BASE_RETRY_DELAY_MS", 1000),
            environment=os.environ.get("APP_ENV", "development"),
            log_level=os.environ.get("LOG_LEVEL", "info"),
            health_check_port=_env_int("HEALTH_CHECK_PORT", 3000),
        )

    def missing_variables(self) -> List[str]:
        values: Dict[str, Optional[str]] = {
            "DISCORD_TOKEN": self.discord_token,
            "GUILD_ID": self.guild_id,
            "GOOGLE_CLIENT_ID": self.google_client_id,
            "GOOGLE_CLIENT_SECRET": self.google_client_secret,
            "GOOGLE_REFRESH_TOKEN": self.google_refresh_token,
        }
        return [name for name in REQUIRED_VARIABLES if not values[name]]

    def validate(self) -> bool:
        """Raise ConfigurationError if any required variable is missing."""
        missing = self.missing_variables()
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}"
            )
        if self.max_retries < 1:
            raise ConfigurationError("MAX_RETRIES must be at least 1")
        if self.discord_rate_limit_per_second < 1 or self.google_rate_limit_per_100_seconds < 1:
            raise ConfigurationError("Rate limits must allow at least one request per window")
        return True

    # Derived values in seconds, the unit used by the engine

    @property
    def sync_interval_seconds(self) -> float:
        return self.sync_interval_minutes * 60.0

    @property
    def guard_ttl_seconds(self) -> float:
        return self.sync_guard_ttl_ms / 1000.0

    @property
    def base_retry_delay_seconds(self) -> float:
        return self.base_retry_delay_ms / 1000.0

    @property
    def discord_window_seconds(self) -> float:
        return 1.0

    @property
    def google_window_seconds(self) -> float:
        return 100.0
