from datetime import datetime, timedelta, tzinfo
from typing import Optional

from . import config
from .models import PERIODS

_WEEKDAY_INDEX = {name: i for i, name in enumerate(config.WEEKDAYS)}


def _midnight(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def period_start(period: str, now: datetime, tz: Optional[tzinfo] = None, week_start: Optional[str] = None) -> datetime:
    """Start of the window ``period`` that contains ``now`` (local midnight)."""
    tz = tz or config.get_leaderboard_tz()
    now = now.astimezone(tz)
    if period == "daily":
        return _midnight(now)
    if period == "weekly":
        first = _WEEKDAY_INDEX[week_start or config.get_week_start()]
        days_back = (now.weekday() - first) % 7
        return _midnight(now - timedelta(days=days_back))
    if period == "monthly":
        return _midnight(now.replace(day=1))
    if period == "yearly":
        return _midnight(now.replace(month=1, day=1))
    raise ValueError(f"Unknown period: {period}")


def period_end(period: str, now: datetime, tz: Optional[tzinfo] = None, week_start: Optional[str] = None) -> datetime:
    """Start of the next window, i.e. the moment the counters are reset."""
    tz = tz or config.get_leaderboard_tz()
    start = period_start(period, now, tz, week_start)
    if period == "daily":
        nxt = start + timedelta(days=1)
    elif period == "weekly":
        nxt = start + timedelta(days=7)
    elif period == "monthly":
        if start.month == 12:
            nxt = start.replace(year=start.year + 1, month=1)
        else:
            nxt = start.replace(month=start.month + 1)
    else:
        nxt = start.replace(year=start.year + 1)
    # Re-anchor to local midnight so DST shifts inside the window don't leak.
    return datetime(nxt.year, nxt.month, nxt.day, tzinfo=tz)


def is_period(value: str) -> bool:
    return value in PERIODS
