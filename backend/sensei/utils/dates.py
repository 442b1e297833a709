# backend/sensei/utils/dates.py
from datetime import date, datetime, time, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Naive datetimes are taken to be UTC.
    """
    if dt is None:
        return dt
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def epoch_ms(dt: datetime) -> int:
    return int(ensure_aware_utc(dt).timestamp() * 1000)


def parse_date(value: Any) -> Optional[datetime]:
    """
    Lenient parsing for query parameters: ISO dates / datetimes or epoch
    milliseconds. Unparseable input yields None and the filter is skipped.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_aware_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
    try:
        return ensure_aware_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        return None


def end_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=23, minute=59, second=59, microsecond=999000)
