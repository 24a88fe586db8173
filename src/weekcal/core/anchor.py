"""Anchor weekly templates to concrete dates.

All occurrences of a run are anchored to the same upcoming week, which
starts on the Monday after "now".  Weekday arithmetic uses Sunday-first
numbering (Sunday=0 .. Saturday=6).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from zoneinfo import ZoneInfo

from weekcal.core.templates import Template, Weekday
from weekcal.errors import InvalidTimeOfDayError

_TIME_OF_DAY_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


@dataclass(frozen=True)
class Occurrence:
    """One dated instance of a template."""

    weekday: Weekday
    start_at: datetime
    end_at: datetime


def sunday_index(value: date | Weekday) -> int:
    if isinstance(value, Weekday):
        return value.sunday_index
    return (value.weekday() + 1) % 7


def next_week_start(now: datetime | date) -> date:
    """Return the Monday that begins the next full week after *now*.

    A Monday advances a full week, so the result is always 1-7 days ahead.
    """
    today = now.date() if isinstance(now, datetime) else now
    offset = (8 - sunday_index(today)) % 7 or 7
    return today + timedelta(days=offset)


def parse_time_of_day(value: str) -> time:
    match = _TIME_OF_DAY_PATTERN.fullmatch(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise InvalidTimeOfDayError(str(value))
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise InvalidTimeOfDayError(value)
    return time(hour, minute)


def _as_zone(timezone: str | tzinfo) -> tzinfo:
    return ZoneInfo(timezone) if isinstance(timezone, str) else timezone


def occurrence_date(week_start: date, weekday: Weekday) -> date:
    offset = (sunday_index(weekday) - sunday_index(week_start) + 7) % 7
    return week_start + timedelta(days=offset)


def combine(
    day: date,
    time_of_day: time,
    timezone: str | tzinfo,
    duration: timedelta,
) -> tuple[datetime, datetime]:
    """Build the ``(start, end)`` instants for *time_of_day* on *day* in *timezone*."""
    zone = _as_zone(timezone)
    start_at = datetime.combine(day, time_of_day, tzinfo=zone)
    # Elapsed time, not wall-clock time, across DST transitions.
    end_at = (start_at.astimezone(UTC) + duration).astimezone(zone)
    return start_at, end_at


def resolve_occurrence(
    week_start: date,
    weekday: Weekday,
    time_of_day: time | str,
    timezone: str | tzinfo,
    duration: timedelta = timedelta(0),
) -> tuple[datetime, datetime]:
    """Locate *weekday* within ``[week_start, week_start + 6]`` and build its window."""
    if isinstance(time_of_day, str):
        time_of_day = parse_time_of_day(time_of_day)
    return combine(occurrence_date(week_start, weekday), time_of_day, timezone, duration)


def expand_template(
    template: Template,
    week_start: date,
    timezone: str | tzinfo,
) -> list[Occurrence]:
    """Expand *template* into one occurrence per listed weekday, in listed order.

    Raises
    ------
    InvalidTimeOfDayError
        If the template's start time cannot be parsed.
    """
    time_of_day = parse_time_of_day(template.start_time)
    occurrences: list[Occurrence] = []
    for weekday in template.weekdays:
        start_at, end_at = resolve_occurrence(
            week_start, weekday, time_of_day, timezone, template.duration
        )
        occurrences.append(Occurrence(weekday=weekday, start_at=start_at, end_at=end_at))
    return occurrences
