"""
scheduler/timing.py

Time rules for redials.

  parse_callback_time(text, now) → when to call back a candidate who asked for it
  follow_up_time(now)            → when to retry a candidate who did not pick up

Both are pure functions of their inputs and the configured local timezone.
parse_callback_time() never fails: anything it cannot interpret falls back
to now + DEFAULT_CALLBACK_DELAY_HOURS.
"""

import re
from datetime import datetime, timedelta

from django.conf import settings

from hirecall.constants import (
    DEFAULT_CALLBACK_DELAY_HOURS,
    FOLLOW_UP_AFTERNOON_HOUR,
    FOLLOW_UP_CUTOFF_HOUR,
    FOLLOW_UP_MORNING_HOUR,
    PART_OF_DAY_HOURS,
)
from hirecall.time_utils import at_local_hour, to_local

_NUMBER_WORDS = {
    "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11,
    "twelve": 12, "fifteen": 15, "twenty": 20, "thirty": 30, "forty": 40,
    "forty-five": 45, "fifty": 50, "sixty": 60, "ninety": 90,
}

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

_HALF_HOUR_RE = re.compile(r"\bhalf an? hour\b")
_COUPLE_HOURS_RE = re.compile(r"\bcouple (?:of )?hours?\b")
_RELATIVE_RE = re.compile(
    r"\b(?:in|after)\s+(?:about\s+|around\s+|another\s+)?"
    r"(\d+|" + "|".join(sorted(_NUMBER_WORDS, key=len, reverse=True)) + r")\s*"
    r"(minutes?|mins?|hours?|hrs?)\b"
)
_MERIDIEM_RE = re.compile(r"\b(\d{1,2})(?:[:.](\d{2}))?\s*(am|pm|a\.m\.|p\.m\.)(?![a-z])")
_24H_RE = re.compile(r"\b([01]?\d|2[0-3]):([0-5]\d)\b")
_BARE_HOUR_RE = re.compile(r"\b(?:at|around|by)\s+(\d{1,2})(?:\s*o'?\s?clock)?\b|\b(\d{1,2})\s*o'?\s?clock\b")


def default_callback_time(now: datetime) -> datetime:
    return now + timedelta(hours=DEFAULT_CALLBACK_DELAY_HOURS)


def parse_callback_time(text: str | None, now: datetime) -> datetime:
    """
    Interpret a candidate's callback request, in order of precedence:

      1. empty text                         → now + 2h
      2. "in 30 minutes", "in two hours",
         "half an hour", "a couple of hours" → now + that delay
      3. a clock time ("3pm", "3:30 pm", "15:00", "at 4") on the named day
         (today / tomorrow / weekday); rolled to the next day when already past
      4. a named day with a part of day     → that day at 10/14/18/20h;
         a named day alone                  → that day at 10:00
      5. a part of day alone                → today at that hour, or tomorrow if past
      6. anything else                      → now + 2h

    Part-of-day hours are pulled inside the calling window, so "evening"
    becomes the last calling hour when the window closes at 18:00.

    Results that are not in the future fall back to now + 2h.
    """
    phrase = (text or "").strip().lower()
    if not phrase:
        return default_callback_time(now)

    delay = _relative_delay(phrase)
    if delay is not None:
        return now + delay

    day_offset = _day_offset(phrase, now)
    part_of_day = _part_of_day(phrase)
    clock = _clock_time(phrase, part_of_day)

    if clock is not None:
        hour, minute = clock
        result = at_local_hour(now, hour, minute, days=day_offset or 0)
        if result <= now:
            result += timedelta(days=1)
        return result

    if day_offset is not None:
        result = at_local_hour(now, _part_of_day_hour(part_of_day), days=day_offset)
        return result if result > now else default_callback_time(now)

    if part_of_day is not None:
        hour = _part_of_day_hour(part_of_day)
        result = at_local_hour(now, hour)
        if result <= now:
            result = at_local_hour(now, hour, days=1)
        return result

    return default_callback_time(now)


def follow_up_time(now: datetime) -> datetime:
    """Always the next local day: 16:00 if missed before 14:00, otherwise 10:00."""
    if to_local(now).hour < FOLLOW_UP_CUTOFF_HOUR:
        return at_local_hour(now, FOLLOW_UP_AFTERNOON_HOUR, days=1)
    return at_local_hour(now, FOLLOW_UP_MORNING_HOUR, days=1)


# ── Phrase helpers ─────────────────────────────────────────────────────────────

def _part_of_day_hour(part_of_day: str | None) -> int:
    """Local hour for a part of day, kept inside [CALLING_START_HOUR, CALLING_END_HOUR)."""
    hour = PART_OF_DAY_HOURS.get(part_of_day, PART_OF_DAY_HOURS["morning"])
    return max(settings.CALLING_START_HOUR, min(hour, settings.CALLING_END_HOUR - 1))


def _relative_delay(phrase: str) -> timedelta | None:
    if _HALF_HOUR_RE.search(phrase):
        return timedelta(minutes=30)
    if _COUPLE_HOURS_RE.search(phrase):
        return timedelta(hours=2)
    match = _RELATIVE_RE.search(phrase)
    if not match:
        return None
    amount, unit = match.groups()
    value = int(amount) if amount.isdigit() else _NUMBER_WORDS[amount]
    if value <= 0:
        return None
    if unit.startswith(("hour", "hr")):
        return timedelta(hours=value)
    return timedelta(minutes=value)


def _day_offset(phrase: str, now: datetime) -> int | None:
    """Days from today's local date to the day named in ``phrase``, or None."""
    if "day after tomorrow" in phrase:
        return 2
    if re.search(r"\btomorrow\b", phrase):
        return 1
    if re.search(r"\b(?:today|tonight)\b", phrase):
        return 0
    today = to_local(now).weekday()
    for index, name in enumerate(_WEEKDAYS):
        if re.search(rf"\b{name}\b", phrase):
            return (index - today) % 7 or 7
    return None


def _part_of_day(phrase: str) -> str | None:
    if re.search(r"\btonight\b", phrase):
        return "night"
    for part in PART_OF_DAY_HOURS:
        if re.search(rf"\b{part}\b", phrase):
            return part
    return None


def _clock_time(phrase: str, part_of_day: str | None) -> tuple[int, int] | None:
    match = _MERIDIEM_RE.search(phrase)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2) or 0)
        if not 1 <= hour <= 12 or minute > 59:
            return None
        is_pm = match.group(3).startswith("p")
        if is_pm and hour != 12:
            hour += 12
        elif not is_pm and hour == 12:
            hour = 0
        return hour, minute

    match = _24H_RE.search(phrase)
    if match:
        return _afternoon_if_ambiguous(int(match.group(1)), part_of_day), int(match.group(2))

    match = _BARE_HOUR_RE.search(phrase)
    if match:
        hour = int(match.group(1) or match.group(2))
        if not 0 <= hour <= 23:
            return None
        return _afternoon_if_ambiguous(hour, part_of_day), 0

    return None


def _afternoon_if_ambiguous(hour: int, part_of_day: str | None) -> int:
    """Read "at 4" or "3:30" as pm when said for later in the day or before calling hours start."""
    if hour < 12 and (part_of_day in ("afternoon", "evening", "night") or hour < settings.CALLING_START_HOUR):
        return hour + 12
    return hour
