"""Date and time helpers shared by the availability and booking routes.

Slot start times are stored as ``HH:MM`` strings next to a calendar date, and
session timestamps are naive datetimes holding UTC wall-clock values.
"""

import re
import secrets
import string
from datetime import date, datetime, timedelta

from therapy_backend.core import config

SLOT_START_PATTERN = re.compile(r'^([01]?\d|2[0-3]):[0-5]\d$')
SLOT_STEP_MINUTES = 60

RECURRENCE_NONE = 'None'
RECURRENCE_DAILY = 'Daily'
RECURRENCE_WEEKLY = 'Weekly'
RECURRENCE_MONTHLY = 'Monthly'
RECURRENCE_CUSTOM = 'Custom'
RECURRENCE_TYPES = (
    RECURRENCE_NONE,
    RECURRENCE_DAILY,
    RECURRENCE_WEEKLY,
    RECURRENCE_MONTHLY,
    RECURRENCE_CUSTOM,
)

_BASE36 = string.digits + string.ascii_lowercase


def normalize_start_time(value: str) -> str:
    """Validate ``H:MM``/``HH:MM`` and return it zero-padded."""
    cleaned = value.strip()
    if not SLOT_START_PATTERN.match(cleaned):
        raise ValueError(f'Invalid time format: "{cleaned}"')
    hours, minutes = cleaned.split(':')
    return f'{int(hours):02d}:{int(minutes):02d}'


def parse_time_slot(time_slot: str) -> str:
    """Return the normalized start of a ``HH:MM-HH:MM`` slot label."""
    start, _, _ = time_slot.partition('-')
    return normalize_start_time(start)


def to_minutes(start_time: str) -> int:
    hours, minutes = start_time.split(':')
    return int(hours) * 60 + int(minutes)


def slot_label(start_time: str, duration_minutes: int | None = None) -> str:
    duration = duration_minutes or config.SESSION_DURATION_MINUTES
    start = datetime.strptime(start_time, '%H:%M')
    end = start + timedelta(minutes=duration)
    return f'{start:%H:%M}-{end:%H:%M}'


def session_datetime(slot_date: date, start_time: str) -> datetime:
    hours, minutes = start_time.split(':')
    return datetime(slot_date.year, slot_date.month, slot_date.day, int(hours), int(minutes))


def format_utc_iso(value: datetime) -> str:
    """Render a naive UTC datetime as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    return f'{value:%Y-%m-%dT%H:%M:%S}.{value.microsecond // 1000:03d}Z'


def random_base36(length: int) -> str:
    return ''.join(secrets.choice(_BASE36) for _ in range(length))


def to_base36(number: int) -> str:
    if number == 0:
        return '0'
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return ''.join(reversed(digits))


def hourly_start_times(start_time: str, end_time: str, duration_minutes: int | None = None) -> list[str]:
    """Session starts on the hour that fit entirely between two ``HH:MM`` bounds."""
    duration = duration_minutes or config.SESSION_DURATION_MINUTES
    current = to_minutes(start_time)
    end = to_minutes(end_time)

    if current % SLOT_STEP_MINUTES != 0:
        current += SLOT_STEP_MINUTES - (current % SLOT_STEP_MINUTES)

    starts: list[str] = []
    while current + duration <= end:
        starts.append(f'{current // 60:02d}:{current % 60:02d}')
        current += SLOT_STEP_MINUTES
    return starts


def sunday_first_weekday(value: date) -> int:
    """Weekday number with Sunday as 0, as calendar widgets send it."""
    return (value.weekday() + 1) % 7


def _add_month(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def applicable_dates(
    start_date: date,
    end_date: date,
    recurrence_type: str,
    selected_days: list[int] | None = None,
) -> list[date]:
    if recurrence_type == RECURRENCE_NONE:
        return [start_date]

    if recurrence_type == RECURRENCE_MONTHLY:
        dates: list[date] = []
        year, month = start_date.year, start_date.month
        while True:
            try:
                candidate = date(year, month, start_date.day)
            except ValueError:
                # Month is too short for this day of month.
                year, month = _add_month(year, month)
                continue
            if candidate > end_date:
                return dates
            dates.append(candidate)
            year, month = _add_month(year, month)

    if recurrence_type not in (RECURRENCE_DAILY, RECURRENCE_WEEKLY, RECURRENCE_CUSTOM):
        raise ValueError(f'Unknown recurrence type: {recurrence_type}')

    wanted_days = set(selected_days or [])
    dates = []
    current = start_date
    while current <= end_date:
        if recurrence_type == RECURRENCE_DAILY:
            dates.append(current)
        elif recurrence_type == RECURRENCE_WEEKLY and current.weekday() == start_date.weekday():
            dates.append(current)
        elif recurrence_type == RECURRENCE_CUSTOM and sunday_first_weekday(current) in wanted_days:
            dates.append(current)
        current += timedelta(days=1)
    return dates
