"""Time utilities (UTC now, billing periods, elapsed formatting)."""
from __future__ import annotations
from datetime import datetime, timezone, timedelta

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def year_month(value: datetime) -> str:
    value = ensure_utc(value)
    return f"{value.year:04d}-{value.month:02d}"

def current_year_month(now: datetime | None = None) -> str:
    return year_month(now or utc_now())

def previous_year_month(now: datetime | None = None) -> str:
    now = ensure_utc(now or utc_now())
    first = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return year_month(first - timedelta(days=1))

def parse_year_month(value: str) -> tuple[int, int]:
    """Parse ``YYYY-MM`` into (year, month); raises ValueError on bad input."""
    parts = value.split("-")
    if len(parts) != 2 or len(parts[0]) != 4 or len(parts[1]) != 2:
        raise ValueError(f"Invalid year_month '{value}', expected YYYY-MM")
    year, month = int(parts[0]), int(parts[1])
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month in '{value}'")
    return year, month

def month_bounds(value: str) -> tuple[datetime, datetime]:
    """Return [start, end) UTC datetimes of a ``YYYY-MM`` period."""
    year, month = parse_year_month(value)
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, end

def iter_year_months(start: str, end: str) -> list[str]:
    """Inclusive list of periods from ``start`` to ``end``."""
    year, month = parse_year_month(start)
    end_year, end_month = parse_year_month(end)
    out: list[str] = []
    while (year, month) <= (end_year, end_month):
        out.append(f"{year:04d}-{month:02d}")
        month += 1
        if month > 12:
            year, month = year + 1, 1
    return out

def seconds_until_period_end(value: str, now: datetime | None = None) -> int:
    _, end = month_bounds(value)
    remaining = (end - ensure_utc(now or utc_now())).total_seconds()
    return max(1, int(remaining))

def format_elapsed(start: datetime, end: datetime | None = None) -> str:
    end_ts = end or utc_now()
    delta: timedelta = end_ts - start
    ms = int(delta.total_seconds() * 1000)
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60_000:
        return f"{ms/1000:.2f}s"
    return f"{delta.total_seconds()/60:.2f}m"

__all__ = [
    "utc_now",
    "ensure_utc",
    "year_month",
    "current_year_month",
    "previous_year_month",
    "parse_year_month",
    "month_bounds",
    "iter_year_months",
    "seconds_until_period_end",
    "format_elapsed",
]
