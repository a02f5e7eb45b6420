import sys
import tomllib
from dataclasses import dataclass, field, is_dataclass
from pathlib import Path
from typing import Any, TypeVar

from loguru import logger

from tickerbar.models import ChangeMode

# --- Constants ---
APP_NAME = "tickerbar"
# Use a platform-agnostic user config directory
if sys.platform == "win32":
    CONFIG_DIR = Path.home() / "AppData" / "Roaming" / APP_NAME
else:
    CONFIG_DIR = Path.home() / ".config" / APP_NAME

CONFIG_FILE = CONFIG_DIR / "config.toml"

DEFAULT_CONFIG_TEXT = """\
# TickerBar Configuration File
# Uncomment and edit values to override the defaults.
#
# [general]
# log_level_console = "INFO"
#
# [polling]
# interval_s = 60.0
#
# [notifications]
# enabled = false
# threshold_percent = 5.0
# change_mode = "24h"   # "24h", "today_utc" or "today_cn"
"""

# --- Dataclass Models for Settings ---
T = TypeVar("T")


@dataclass
class GeneralSettings:
    """General application settings."""

    log_level_console: str = "INFO"
    log_level_file: str = "DEBUG"
    log_directory: str = str(CONFIG_DIR / "logs")


@dataclass
class StreamSettings:
    """Endpoints and lifecycle timings of the streaming connection."""

    ws_url: str = "wss://ws.okx.com:8443/ws/v5/public"
    rest_url: str = "https://www.okx.com/api/v5"
    channel: str = "tickers"
    connect_timeout_s: float = 30.0
    close_timeout_s: float = 5.0
    heartbeat_interval_s: float = 30.0
    pong_timeout_s: float = 10.0
    reconnect_base_delay_s: float = 5.0
    reconnect_backoff_factor: float = 1.5
    max_reconnect_attempts: int = 10
    # Pause between tearing down a live session and opening the next one.
    reconnect_grace_s: float = 0.5


@dataclass
class SubscriptionSettings:
    """Batching of subscribe requests."""

    batch_size: int = 5
    batch_delay_s: float = 2.0
    request_gap_s: float = 0.2


@dataclass
class ReconcilerSettings:
    """Throttling and signal coalescing of inbound ticker frames."""

    process_every: int = 3
    coalesce_window_s: float = 0.1
    fairness_window_s: float = 5.0


@dataclass
class NotificationSettings:
    """Significant-change alerts."""

    enabled: bool = False
    threshold_percent: float = 5.0
    change_mode: str = ChangeMode.HOURS_24.value

    @property
    def mode(self) -> ChangeMode:
        try:
            return ChangeMode(self.change_mode)
        except ValueError:
            logger.warning(
                f"Unknown change mode '{self.change_mode}'. Falling back to 24h."
            )
            return ChangeMode.HOURS_24


@dataclass
class PollingSettings:
    """REST polling fallback."""

    interval_s: float = 60.0
    min_interval_s: float = 10.0
    max_interval_s: float = 300.0
    request_timeout_s: float = 10.0
    exchange_rate_refresh_s: float = 2 * 60 * 60


@dataclass
class StorageSettings:
    """Where state lives and what a fresh install starts with."""

    state_file: str = str(CONFIG_DIR / "state.json")
    default_watchlist: list[str] = field(
        default_factory=lambda: ["BTC-USDT", "ETH-USDT"]
    )
    display_currency: str = "USD"


@dataclass
class Settings:
    """Root container for all application settings."""

    general: GeneralSettings = field(default_factory=GeneralSettings)
    stream: StreamSettings = field(default_factory=StreamSettings)
    subscriptions: SubscriptionSettings = field(default_factory=SubscriptionSettings)
    reconciler: ReconcilerSettings = field(default_factory=ReconcilerSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    polling: PollingSettings = field(default_factory=PollingSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)


def _update_dataclass(dc_instance: T, data: dict[str, Any]) -> T:
    """Recursively updates a dataclass instance from a dictionary."""
    for f in field_names(dc_instance):
        if f in data:
            field_value = getattr(dc_instance, f)
            if is_dataclass(field_value):
                if isinstance(data[f], dict):
                    _update_dataclass(field_value, data[f])
                else:
                    logger.warning(f"Ignoring non-table value for section '{f}'.")
            else:
                setattr(dc_instance, f, data[f])
    return dc_instance


def field_names(dc_instance: Any) -> list[str]:
    """Helper to get field names from a dataclass instance."""
    return [f.name for f in dc_instance.__dataclass_fields__.values()]


def load_config(path: Path = CONFIG_FILE) -> Settings:
    """Loads settings from a TOML file, merging them with defaults.

    If the config file does not exist, it creates one with commented defaults.

    Args:
        path: The path to the configuration file.

    Returns:
        A populated Settings object.
    """
    settings_obj = Settings()
    logger.info(f"Loading configuration from '{path}'...")

    if not path.exists():
        logger.warning(f"Configuration file not found. Creating default at '{path}'.")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(DEFAULT_CONFIG_TEXT, encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to create default config file: {e}")
        return settings_obj

    try:
        with path.open("rb") as f:
            user_config = tomllib.load(f)
        _update_dataclass(settings_obj, user_config)
        logger.success("Successfully loaded user configuration.")
    except tomllib.TOMLDecodeError as e:
        logger.error(f"Error decoding TOML from '{path}': {e}")
        logger.warning("Using default settings due to configuration error.")
        settings_obj = Settings()
    except OSError as e:
        logger.error(f"Could not read configuration file '{path}': {e}")
        logger.warning("Using default settings due to configuration error.")

    return settings_obj
