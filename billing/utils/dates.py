"""
UTC datetime helpers.
Some drivers (SQLite) hand back naive datetimes; everything here treats naive values as UTC.
"""
from datetime import date, datetime, time, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_date_param(value: str | None, end_of_day: bool = False) -> datetime | None:
    """
    Parse an ISO date or datetime string from a query parameter.
    A bare date (2025-01-31) expands to the start of that day, or its last microsecond with end_of_day.
    Raises ValueError on malformed input.
    """
    if value is None or not value.strip():
        return None
    raw = value.strip()
    if len(raw) == 10:
        d = date.fromisoformat(raw)
        t = time.max if end_of_day else time.min
        return datetime.combine(d, t, tzinfo=timezone.utc)
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(raw))


def month_key(dt: datetime) -> str:
    """Format: 2025-01"""
    return as_utc(dt).strftime("%Y-%m")


def month_start(dt: datetime) -> datetime:
    dt = as_utc(dt)
    return datetime(dt.year, dt.month, 1, tzinfo=timezone.utc)


def shift_months(dt: datetime, months: int) -> datetime:
    """First day of the month `months` away from dt's month (negative goes back)."""
    start = month_start(dt)
    index = start.year * 12 + (start.month - 1) + months
    return datetime(index // 12, index % 12 + 1, 1, tzinfo=timezone.utc)


def last_n_month_keys(n: int, now: datetime) -> list[str]:
    """Month keys for the last n months, oldest first, current month last."""
    return [month_key(shift_months(now, -offset)) for offset in range(n - 1, -1, -1)]
