# gym_enrollment/utils/time_utils.py
from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Normalize a timestamp written by a device or by the store to an aware UTC datetime.

    Accepts datetime objects, ISO strings ("2026-01-14T08:09:52Z") and epoch
    numbers (seconds, or milliseconds as sent by the ESP32 firmware).
    Returns None when the value is missing or unreadable.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        try:
            dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        # fromisoformat() only understands "Z" from Python 3.11 on
        clean_ts = value.strip().replace("Z", "+00:00")
        try:
            dt = datetime.fromisoformat(clean_ts)
        except ValueError:
            return None
    else:
        return None

    # Naive timestamps are taken as UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
