from __future__ import annotations
import re
from datetime import date, datetime, time
from zoneinfo import ZoneInfo

from classbook.config import settings

TZ = ZoneInfo(settings.tz)

def now_local() -> datetime:
    # all persisted datetimes are naive wall-clock time in settings.tz
    return datetime.now(TZ).replace(tzinfo=None, microsecond=0)

def slot_start(d: date, t: time) -> datetime:
    return datetime.combine(d, t)

def minutes_of(t: time) -> int:
    return t.hour * 60 + t.minute

def time_from_minutes(total: int) -> time:
    # a buffer may push the end past midnight; clamp to the last minute of the day
    total = min(total, 23 * 60 + 59)
    return time(hour=total // 60, minute=total % 60)

def format_day(d: date | datetime) -> str:
    return d.strftime("%A, %b %d, %Y").replace(" 0", " ")

def format_clock(t: time | datetime) -> str:
    hour = t.hour % 12 or 12
    period = "PM" if t.hour >= 12 else "AM"
    return f"{hour}:{t.minute:02d} {period}"

def format_dt(dt: datetime) -> str:
    return f"{format_day(dt)} at {format_clock(dt)}"

_NON_DIGITS = re.compile(r"\D")

def normalize_phone(value: str | None) -> str:
    return _NON_DIGITS.sub("", value or "")

def normalize_email(value: str | None) -> str | None:
    if not value:
        return None
    cleaned = value.strip().lower()
    return cleaned or None
