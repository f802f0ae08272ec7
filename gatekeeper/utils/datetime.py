"""Time utilities with timezone-aware defaults."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    """Return current UTC time with tzinfo."""

    return datetime.now(timezone.utc)


def month_window(now: datetime | None = None) -> tuple[datetime, datetime]:
    """Return the first and last instant of the UTC calendar month containing ``now``."""

    now = (now or utc_now()).astimezone(timezone.utc)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        next_start = start.replace(year=start.year + 1, month=1)
    else:
        next_start = start.replace(month=start.month + 1)
    return start, next_start - timedelta(microseconds=1)


__all__ = ["month_window", "utc_now"]
