"""Date helpers: UTC now, day arithmetic, Panel epoch-millisecond conversion."""
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def add_days(dt: datetime, days: int) -> datetime:
    return dt + timedelta(days=days)


def latest(*values: Optional[datetime]) -> Optional[datetime]:
    """Latest of the given datetimes, ignoring None. None if all are None."""
    present = [v for v in values if v is not None]
    return max(present) if present else None


def to_epoch_ms(dt: Optional[datetime]) -> int:
    """Panel expiryTime: milliseconds since epoch, 0 = no expiry."""
    if dt is None:
        return 0
    return int(dt.timestamp() * 1000)


def from_epoch_ms(value) -> Optional[datetime]:
    """Panel expiryTime -> aware UTC datetime; 0/None/garbage -> None."""
    try:
        ms = int(value)
    except (TypeError, ValueError):
        return None
    if ms <= 0:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


MONTHS_RU = ("", "янв", "фев", "мар", "апр", "май", "июн", "июл", "авг", "сен", "окт", "ноя", "дек")


def format_date_ru(dt: Optional[datetime]) -> str:
    """Format date in Russian short form: '25 фев 2027'."""
    if dt is None:
        return "N/A"
    return f"{dt.day} {MONTHS_RU[dt.month]} {dt.year}"
