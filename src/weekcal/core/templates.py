"""Immutable recurring-event templates.

A :class:`Template` is a dateless description of one weekly routine entry:
which weekdays it happens on, when, for how long, and how the operator wants
to be reminded.  Templates are built once from configuration and never
mutated by the reconciliation engine.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable
from datetime import timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_RECURRENCE = "RRULE:FREQ=WEEKLY"
DEFAULT_EMAIL_OFFSET_MINUTES = 5


class Weekday(enum.IntEnum):
    """Day of week, numbered like :meth:`datetime.date.weekday` (Monday=0)."""

    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6

    @property
    def short_name(self) -> str:
        return self.name[:3].title()

    @property
    def sunday_index(self) -> int:
        """Position in a Sunday-first week (Sunday=0 .. Saturday=6)."""
        return (self.value + 1) % 7

    @classmethod
    def parse(cls, value: Any) -> Weekday:
        """Accept a ``Weekday``, a Monday-based int, or a (possibly short) English name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Not a weekday: {value!r}")
        if isinstance(value, int):
            return cls(value)
        if isinstance(value, str):
            normalized = value.strip().lower()
            for day in cls:
                if normalized in (day.name.lower(), day.name[:3].lower()):
                    return day
        raise ValueError(f"Not a weekday: {value!r}")


WORKWEEK: tuple[Weekday, ...] = (
    Weekday.MONDAY,
    Weekday.TUESDAY,
    Weekday.WEDNESDAY,
    Weekday.THURSDAY,
    Weekday.FRIDAY,
)
WEEKEND: tuple[Weekday, ...] = (Weekday.SATURDAY, Weekday.SUNDAY)
EVERY_DAY: tuple[Weekday, ...] = WORKWEEK + WEEKEND

DAY_ALIASES: dict[str, tuple[Weekday, ...]] = {
    "weekdays": WORKWEEK,
    "workweek": WORKWEEK,
    "weekend": WEEKEND,
    "daily": EVERY_DAY,
    "everyday": EVERY_DAY,
}


def parse_weekdays(values: str | Iterable[Any]) -> tuple[Weekday, ...]:
    """Expand day names and aliases into weekdays.

    Order and duplicates are preserved: listing a day twice means the event
    happens twice on that day.
    """
    if isinstance(values, str):
        values = [values]
    days: list[Weekday] = []
    for value in values:
        if isinstance(value, str) and value.strip().lower() in DAY_ALIASES:
            days.extend(DAY_ALIASES[value.strip().lower()])
        else:
            days.append(Weekday.parse(value))
    return tuple(days)


class ReminderMethod(enum.StrEnum):
    """Notification channel understood by Google Calendar."""

    POPUP = "popup"
    EMAIL = "email"


class ReminderOverride(BaseModel):
    """One explicit reminder: a channel and a lead time in minutes."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    method: ReminderMethod = ReminderMethod.POPUP
    minutes: int = Field(ge=0)


class ReminderPolicy(BaseModel):
    """Template-set reminder policy.

    Every template gets a popup at its lead time.  When
    ``email_offset_minutes`` is set, an email reminder is added that many
    minutes earlier.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    email_offset_minutes: int | None = Field(default=DEFAULT_EMAIL_OFFSET_MINUTES, ge=0)

    def overrides(self, lead_minutes: int) -> tuple[ReminderOverride, ...]:
        if lead_minutes < 0:
            raise ValueError("reminder lead minutes must be non-negative")
        reminders = [ReminderOverride(method=ReminderMethod.POPUP, minutes=lead_minutes)]
        if self.email_offset_minutes is not None:
            reminders.append(
                ReminderOverride(
                    method=ReminderMethod.EMAIL,
                    minutes=lead_minutes + self.email_offset_minutes,
                )
            )
        return tuple(reminders)


class Template(BaseModel):
    """A recurring weekly event as authored by the operator."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    title: str = Field(min_length=1)
    body: str = ""
    start_time: str
    duration: timedelta
    weekdays: tuple[Weekday, ...] = Field(min_length=1)
    reminders: tuple[ReminderOverride, ...] = ()
    color_id: str | None = None
    recurrence: str = DEFAULT_RECURRENCE

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("title must be a non-empty string")
        return normalized

    @field_validator("duration")
    @classmethod
    def _non_negative_duration(cls, value: timedelta) -> timedelta:
        if value < timedelta(0):
            raise ValueError("duration must be non-negative")
        return value

    @field_validator("weekdays", mode="before")
    @classmethod
    def _coerce_weekdays(cls, value: Any) -> Any:
        if isinstance(value, (str, list, tuple)):
            return parse_weekdays(value)
        return value


def build_template(
    *,
    title: str,
    start_time: str,
    duration: timedelta,
    weekdays: str | Iterable[Any],
    reminder_minutes: int,
    policy: ReminderPolicy | None = None,
    body: str = "",
    color_id: str | None = None,
    recurrence: str = DEFAULT_RECURRENCE,
) -> Template:
    """Build a template whose reminders come from a template-set policy."""
    policy = policy or ReminderPolicy()
    return Template(
        title=title,
        body=body,
        start_time=start_time,
        duration=duration,
        weekdays=parse_weekdays(weekdays),
        reminders=policy.overrides(reminder_minutes),
        color_id=color_id,
        recurrence=recurrence,
    )
