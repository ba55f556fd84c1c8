"""
hirecall/time_utils.py

Local-time helpers shared by the rate gate, the queue scheduler and the
callback / follow-up schedulers.

Calling hours are evaluated in APSCHEDULER_TIMEZONE, the same zone the
scheduler triggers run in. All helpers accept and return timezone-aware
datetimes.
"""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from django.conf import settings


def local_tz() -> ZoneInfo:
    return ZoneInfo(settings.APSCHEDULER_TIMEZONE)


def to_local(dt: datetime) -> datetime:
    return dt.astimezone(local_tz())


def at_local_hour(dt: datetime, hour: int, minute: int = 0, days: int = 0) -> datetime:
    """Return ``dt``'s local calendar day (shifted by ``days``) at hour:minute."""
    local = to_local(dt)
    day = (local + timedelta(days=days)).date()
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=local_tz())


def is_within_calling_hours(dt: datetime) -> bool:
    """True if ``dt`` falls inside [CALLING_START_HOUR, CALLING_END_HOUR) locally."""
    hour = to_local(dt).hour
    return settings.CALLING_START_HOUR <= hour < settings.CALLING_END_HOUR


def next_window_start(dt: datetime) -> datetime:
    """
    Start of the next calling window as seen from ``dt``:
    today at the start hour if ``dt`` is before it, otherwise tomorrow.
    """
    if to_local(dt).hour < settings.CALLING_START_HOUR:
        return at_local_hour(dt, settings.CALLING_START_HOUR)
    return at_local_hour(dt, settings.CALLING_START_HOUR, days=1)


def roll_into_window(dt: datetime) -> datetime:
    """Return ``dt`` unchanged if inside calling hours, else the next window start."""
    if is_within_calling_hours(dt):
        return dt
    return next_window_start(dt)
