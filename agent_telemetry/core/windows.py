"""
Time window helpers.

All windows are half-open [start, end) in milliseconds since the epoch and
follow local calendar time.
"""

from datetime import date, datetime, time, timedelta
from typing import Optional, Tuple


def to_millis(moment: datetime) -> int:
    """Convert a datetime (naive means local time) to ms since the epoch."""
    return int(moment.timestamp() * 1000)


def now_millis() -> int:
    return to_millis(datetime.now())


def _midnight(day: date) -> datetime:
    return datetime.combine(day, time.min)


def start_of_day(moment: Optional[datetime] = None) -> int:
    moment = moment or datetime.now()
    return to_millis(_midnight(moment.date()))


def end_of_day(moment: Optional[datetime] = None) -> int:
    """Exclusive end of the local day: the next local midnight."""
    moment = moment or datetime.now()
    return to_millis(_midnight(moment.date() + timedelta(days=1)))


def start_of_week(moment: Optional[datetime] = None) -> int:
    """Local midnight of the most recent Sunday (weeks start on Sunday)."""
    moment = moment or datetime.now()
    days_since_sunday = (moment.weekday() + 1) % 7
    return to_millis(_midnight(moment.date() - timedelta(days=days_since_sunday)))


def start_of_month(moment: Optional[datetime] = None) -> int:
    moment = moment or datetime.now()
    return to_millis(_midnight(moment.date().replace(day=1)))


def today_window(moment: Optional[datetime] = None) -> Tuple[int, int]:
    return start_of_day(moment), end_of_day(moment)


def week_window(moment: Optional[datetime] = None) -> Tuple[int, int]:
    return start_of_week(moment), end_of_day(moment)


def month_window(moment: Optional[datetime] = None) -> Tuple[int, int]:
    return start_of_month(moment), end_of_day(moment)
