# recurrence.py
# Weekly wall-clock occurrences. Weekdays are 0 = Sunday .. 6 = Saturday.
import datetime
import re
import time

import pytz

HOUR_MS = 3600 * 1000
DAY_MS = 24 * HOUR_MS
WEEK_MS = 7 * DAY_MS

_TIME_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")


def now_ms():
    return int(time.time() * 1000)


def get_timezone(tz):
    if tz is None:
        return pytz.utc
    if isinstance(tz, str):
        return pytz.timezone(tz)
    return tz


def parse_time_of_day(time_str):
    """Lenient "HH:MM" parsing: missing or invalid parts become 0."""
    parts = (time_str or "00:00").split(":")

    def _part(index, upper):
        try:
            value = int(parts[index])
        except (IndexError, ValueError):
            return 0
        return value if 0 <= value < upper else 0

    return _part(0, 24), _part(1, 60)


def validate_time_of_day(time_str):
    """Strict "HH:MM" check used when a rule is created. Returns "HH:MM"."""
    m = _TIME_RE.match(time_str or "")
    if not m:
        raise ValueError(f"time of day must look like HH:MM, got {time_str!r}")
    hh, mm = int(m.group(1)), int(m.group(2))
    if hh > 23 or mm > 59:
        raise ValueError(f"time of day out of range: {time_str!r}")
    return f"{hh:02d}:{mm:02d}"


def sunday_based_weekday(day):
    return (day.weekday() + 1) % 7


def _local_ms(tz, day, hh, mm):
    local = tz.localize(datetime.datetime(day.year, day.month, day.day, hh, mm))
    return int(local.timestamp() * 1000)


def next_occurrence(weekday, time_of_day, after_ms, tz=None):
    """Soonest instant strictly after ``after_ms`` falling on ``weekday`` at
    ``time_of_day`` local time, never more than a week ahead."""
    tz = get_timezone(tz)
    hh, mm = parse_time_of_day(time_of_day)
    today = datetime.datetime.fromtimestamp(after_ms / 1000.0, tz).date()
    diff = (weekday - sunday_based_weekday(today) + 7) % 7
    if diff == 0 and _local_ms(tz, today, hh, mm) <= after_ms:
        diff = 7
    return _local_ms(tz, today + datetime.timedelta(days=diff), hh, mm)


def scheduled_record_id(recurrence_id, weekday, due_at):
    return f"{recurrence_id}-{weekday}-{due_at}"


def format_ms(ms, tz=None):
    tz = get_timezone(tz)
    return datetime.datetime.fromtimestamp(ms / 1000.0, tz).strftime("%a %Y-%m-%d %H:%M %Z")
