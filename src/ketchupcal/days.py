from __future__ import annotations
from datetime import date, datetime, time, timedelta
from typing import Tuple, Union
from zoneinfo import ZoneInfo

DayLike = Union[date, datetime]


def day_key(value: DayLike, tz: ZoneInfo) -> date:
    """Calendar day of `value` in the reference timezone; naive datetimes are read as local to it."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=tz).date()
        return value.astimezone(tz).date()
    return value


def day_range(value: DayLike, tz: ZoneInfo) -> Tuple[datetime, datetime]:
    day = day_key(value, tz)
    day_start = datetime.combine(day, time.min, tzinfo=tz)
    # Computed from the next date rather than +24h so DST days keep their real length.
    day_end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return day_start, day_end


def midnight(day: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)


def as_aware(value: datetime, tz: ZoneInfo) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value.astimezone(tz)
