import time
from datetime import datetime, timezone
from typing import Any

from loguru import logger

# A heuristic to determine the unit of a numeric timestamp.
# If a timestamp (in seconds) is greater than this, it's likely in milliseconds.
MILLISECONDS_THRESHOLD = 10**10
# If a timestamp (in seconds) is greater than this, it's likely in microseconds.
MICROSECONDS_THRESHOLD = 10**13


def get_current_rfc3339_timestamp() -> str:
    """Returns the current time in UTC as an RFC3339 string with milliseconds.

    Example: "2023-10-27T10:00:00.123Z"
    """
    now_utc = datetime.now(timezone.utc)
    return now_utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def epoch_seconds() -> float:
    """Returns wall-clock seconds since the Unix epoch, used for cache stamps."""
    return time.time()


def is_within_ttl(stamp: Any, ttl_seconds: float, now: float | None = None) -> bool:
    """Checks whether an epoch-seconds stamp is younger than `ttl_seconds`.

    Args:
        stamp: The stored timestamp. Non-numeric values are treated as expired.
        ttl_seconds: The validity window.
        now: The reference time. Defaults to the current wall clock.

    Returns:
        True if the stamp is numeric and inside the window.
    """
    if isinstance(stamp, bool) or not isinstance(stamp, int | float):
        return False
    reference = epoch_seconds() if now is None else now
    return 0 <= reference - stamp < ttl_seconds


def normalize_timestamp_to_rfc3339(timestamp: Any) -> str:  # noqa: C901
    """Normalizes a timestamp from various formats to an RFC3339 string.

    This function can handle:
    - int, float: Unix timestamps in seconds, milliseconds or microseconds.
                  The unit is guessed from the magnitude.
    - str: Either a numeric string (exchange tick stamps such as "1597026383085")
           or an ISO 8601 string. Handles a 'Z' suffix for UTC.
    - datetime: Naive datetimes are assumed to be UTC.

    Args:
        timestamp: The timestamp to normalize.

    Returns:
        An RFC3339 formatted string in UTC with millisecond precision.

    Raises:
        ValueError: If the timestamp format is unrecognized or invalid.
    """
    if isinstance(timestamp, str) and timestamp.isdigit():
        timestamp = int(timestamp)

    if isinstance(timestamp, datetime):
        dt_obj = timestamp
        if dt_obj.tzinfo is None:
            dt_obj = dt_obj.replace(tzinfo=timezone.utc)
        else:
            dt_obj = dt_obj.astimezone(timezone.utc)

    elif isinstance(timestamp, int | float) and not isinstance(timestamp, bool):
        if timestamp > MICROSECONDS_THRESHOLD:
            ts_seconds = timestamp / 1_000_000
        elif timestamp > MILLISECONDS_THRESHOLD:
            ts_seconds = timestamp / 1_000
        else:
            ts_seconds = timestamp
        try:
            dt_obj = datetime.fromtimestamp(ts_seconds, tz=timezone.utc)
        except (OSError, OverflowError, ValueError) as e:
            err_msg = f"Numeric timestamp '{timestamp}' is out of range."
            raise ValueError(err_msg) from e

    elif isinstance(timestamp, str):
        try:
            if timestamp.endswith("Z"):
                timestamp = timestamp[:-1] + "+00:00"
            dt_obj = datetime.fromisoformat(timestamp)
            if dt_obj.tzinfo is None:
                dt_obj = dt_obj.replace(tzinfo=timezone.utc)
            else:
                dt_obj = dt_obj.astimezone(timezone.utc)
        except ValueError as e:
            logger.warning(f"Could not parse timestamp string '{timestamp}': {e}")
            err_msg = f"Invalid or unrecognized timestamp string format: {timestamp}"
            raise ValueError(err_msg) from e

    else:
        err_msg = f"Unsupported timestamp type: {type(timestamp).__name__}"
        raise ValueError(err_msg)

    return dt_obj.isoformat(timespec="milliseconds").replace("+00:00", "Z")
