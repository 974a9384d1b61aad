from datetime import datetime, timezone
from typing import Optional

# Tuya reports a numeric timezone id; only the common ones are mapped.
TUYA_TIMEZONES = {
    "1": "UTC",
    "2": "Europe/London",
    "3": "Europe/Paris",
    "4": "Europe/Berlin",
    "5": "America/New_York",
    "6": "America/Chicago",
    "7": "America/Denver",
    "8": "America/Los_Angeles",
    "9": "Asia/Shanghai",
    "10": "Asia/Tokyo",
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def seconds_until(moment: datetime, now: Optional[datetime] = None) -> int:
    now = now or utc_now()
    return int((ensure_utc(moment) - now).total_seconds())


def map_tuya_timezone(timezone_id: Optional[str]) -> str:
    if not timezone_id:
        return "UTC"
    return TUYA_TIMEZONES.get(str(timezone_id), "UTC")
