"""Test doubles and builders shared across weekcal tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta

from weekcal.core.templates import ReminderMethod, ReminderOverride, Template
from weekcal.gateway import CalendarGateway, EventDraft, GatewayRequestError, RemoteEvent

TIMEZONE = "America/New_York"
# A Monday.
WEEK_START = date(2024, 1, 8)


@dataclass
class FakeGateway(CalendarGateway):
    """In-memory calendar with per-operation failure injection.

    ``fail_create_on`` / ``fail_update_for`` / ``fail_get_for`` /
    ``fail_delete_for`` hold titles, ISO dates or event ids that should make
    the matching call raise ``GatewayRequestError``.
    """

    events: dict[str, EventDraft] = field(default_factory=dict)
    calls: list[tuple[str, str]] = field(default_factory=list)
    fail_create_on: set[str] = field(default_factory=set)
    fail_get_for: set[str] = field(default_factory=set)
    fail_update_for: set[str] = field(default_factory=set)
    fail_delete_for: set[str] = field(default_factory=set)
    closed: bool = False
    _counter: int = 0

    @property
    def name(self) -> str:
        return "fake"

    def _remote(self, event_id: str, draft: EventDraft) -> RemoteEvent:
        return RemoteEvent(
            event_id=event_id,
            title=draft.title,
            start_at=draft.start_at,
            end_at=draft.end_at,
            timezone=draft.timezone,
            recurrence=draft.recurrence,
            color_id=draft.color_id,
        )

    def seed(self, event_id: str, draft: EventDraft) -> None:
        self.events[event_id] = draft

    async def create_event(self, draft: EventDraft) -> RemoteEvent:
        self.calls.append(("create", draft.title))
        if (
            draft.title in self.fail_create_on
            or draft.start_at.date().isoformat() in self.fail_create_on
        ):
            raise GatewayRequestError(status_code=500, message="backend error")
        self._counter += 1
        event_id = f"evt-{self._counter}"
        self.events[event_id] = draft
        return self._remote(event_id, draft)

    async def get_event(self, event_id: str) -> RemoteEvent | None:
        self.calls.append(("get", event_id))
        if event_id in self.fail_get_for:
            raise GatewayRequestError(status_code=500, message="backend error")
        draft = self.events.get(event_id)
        return None if draft is None else self._remote(event_id, draft)

    async def update_event(self, event_id: str, draft: EventDraft) -> RemoteEvent:
        self.calls.append(("update", event_id))
        if event_id in self.fail_update_for or event_id not in self.events:
            raise GatewayRequestError(status_code=404, message="Not Found")
        self.events[event_id] = draft
        return self._remote(event_id, draft)

    async def delete_event(self, event_id: str) -> None:
        self.calls.append(("delete", event_id))
        if event_id in self.fail_delete_for:
            raise GatewayRequestError(status_code=500, message="backend error")
        self.events.pop(event_id, None)

    async def shutdown(self) -> None:
        self.closed = True

    def ops(self, kind: str) -> list[str]:
        return [target for op, target in self.calls if op == kind]


def make_template(
    title: str = "Standup",
    *,
    start_time: str = "09:30",
    minutes: int = 15,
    weekdays=("mon", "wed", "fri"),
    body: str = "",
    reminder_minutes: int = 10,
    color_id: str | None = None,
) -> Template:
    return Template(
        title=title,
        body=body,
        start_time=start_time,
        duration=timedelta(minutes=minutes),
        weekdays=weekdays,
        reminders=(
            ReminderOverride(method=ReminderMethod.POPUP, minutes=reminder_minutes),
            ReminderOverride(method=ReminderMethod.EMAIL, minutes=reminder_minutes + 5),
        ),
        color_id=color_id,
    )


