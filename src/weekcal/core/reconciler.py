"""Reconcile declared templates against the remote calendar.

For every template the reconciler walks a small state machine::

    UNKNOWN --(no stored id)--> CREATING --(create ok)--> SETTLED
    UNKNOWN --(stored id)-----> UPDATING --(get+update ok)--> SETTLED
    UPDATING --(get/update fails or event gone)--> RECOVERING --(create ok)--> SETTLED
    CREATING | RECOVERING --(every create fails)--> FAILED

Failures are isolated per template and per occurrence: an error is logged,
recorded on the template's outcome, and processing moves on.  The identity
store passed in is never mutated; a fresh one is built from the outcomes.

Identity keying
---------------
``IdentityKeying.TITLE`` keys the store by template title.  All occurrences
are created on the create path and only the last one's id is kept, so the
update path touches just that event.  ``IdentityKeying.OCCURRENCE`` keys
each occurrence separately (see :func:`occurrence_key`) and runs the state
machine once per occurrence, so every created event stays tracked.
"""

from __future__ import annotations

import enum
import logging
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from zoneinfo import ZoneInfo

from weekcal.core.anchor import Occurrence, combine, expand_template, parse_time_of_day
from weekcal.core.identity import IdentityStore, occurrence_key
from weekcal.core.templates import Template
from weekcal.errors import GatewayError, InvalidTimeOfDayError, describe_error
from weekcal.gateway import CalendarGateway, EventDraft, RemoteEvent

logger = logging.getLogger(__name__)


class TemplateState(enum.StrEnum):
    UNKNOWN = "unknown"
    CREATING = "creating"
    UPDATING = "updating"
    RECOVERING = "recovering"
    SETTLED = "settled"
    FAILED = "failed"


class IdentityKeying(enum.StrEnum):
    """How remote events are matched to templates across runs."""

    TITLE = "title"
    OCCURRENCE = "occurrence"


@dataclass
class TemplateOutcome:
    """What happened to one identity key during a run."""

    title: str
    key: str
    state: TemplateState = TemplateState.UNKNOWN
    event_id: str | None = None
    created: int = 0
    updated: int = 0
    recovered: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def settled(self) -> bool:
        return self.state is TemplateState.SETTLED


@dataclass
class ReconcileReport:
    """Aggregate result of one reconciliation run."""

    week_start: date
    outcomes: list[TemplateOutcome]
    store: IdentityStore

    @property
    def created(self) -> int:
        return sum(outcome.created for outcome in self.outcomes)

    @property
    def updated(self) -> int:
        return sum(outcome.updated for outcome in self.outcomes)

    @property
    def recovered(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.recovered)

    @property
    def failed(self) -> list[TemplateOutcome]:
        return [outcome for outcome in self.outcomes if outcome.state is TemplateState.FAILED]

    @property
    def ok(self) -> bool:
        return not self.failed


def build_event_draft(
    template: Template,
    start_at: datetime,
    end_at: datetime,
    timezone: str,
) -> EventDraft:
    """Describe the remote event for one occurrence of *template*."""
    return EventDraft(
        title=template.title,
        body=template.body,
        start_at=start_at,
        end_at=end_at,
        timezone=timezone,
        recurrence=(template.recurrence,) if template.recurrence else (),
        reminders=template.reminders,
        use_default_reminders=False,
        color_id=template.color_id,
    )


class Reconciler:
    """Brings the remote calendar in line with a sequence of templates."""

    def __init__(
        self,
        gateway: CalendarGateway,
        *,
        timezone: str,
        keying: IdentityKeying = IdentityKeying.TITLE,
    ) -> None:
        self._gateway = gateway
        self._timezone = timezone
        self._keying = IdentityKeying(keying)

    async def reconcile(
        self,
        templates: Sequence[Template],
        store: IdentityStore,
        *,
        week_start: date,
    ) -> ReconcileReport:
        """Run one reconciliation pass anchored to *week_start*.

        Raises
        ------
        ValueError
            If two templates share a title.
        """
        duplicates = sorted(
            title for title, count in Counter(t.title for t in templates).items() if count > 1
        )
        if duplicates:
            raise ValueError(f"Template titles must be unique: {', '.join(duplicates)}")

        new_store = IdentityStore()
        outcomes: list[TemplateOutcome] = []

        for template in templates:
            for outcome in await self._reconcile_template(template, store, week_start):
                outcomes.append(outcome)
                if outcome.settled and outcome.event_id is not None:
                    new_store.record(outcome.key, outcome.event_id)

        report = ReconcileReport(week_start=week_start, outcomes=outcomes, store=new_store)
        logger.info(
            "Reconciled %d template(s): %d created, %d updated, %d recovered, %d failed",
            len(templates),
            report.created,
            report.updated,
            report.recovered,
            len(report.failed),
        )
        return report

    async def _reconcile_template(
        self,
        template: Template,
        store: IdentityStore,
        week_start: date,
    ) -> list[TemplateOutcome]:
        try:
            occurrences = expand_template(template, week_start, self._timezone)
        except InvalidTimeOfDayError as exc:
            logger.error("Skipping template %r: %s", template.title, exc)
            return [
                TemplateOutcome(
                    title=template.title,
                    key=template.title,
                    state=TemplateState.FAILED,
                    errors=[str(exc)],
                )
            ]

        outcomes = []
        for key, slot in self._slots(template, occurrences):
            outcomes.append(await self._reconcile_slot(template, key, slot, store))
        return outcomes

    def _slots(
        self,
        template: Template,
        occurrences: list[Occurrence],
    ) -> list[tuple[str, list[Occurrence]]]:
        if self._keying is IdentityKeying.TITLE:
            return [(template.title, occurrences)]

        seen: Counter = Counter()
        slots = []
        for occurrence in occurrences:
            seen[occurrence.weekday] += 1
            key = occurrence_key(template.title, occurrence.weekday, seen[occurrence.weekday])
            slots.append((key, [occurrence]))
        return slots

    async def _reconcile_slot(
        self,
        template: Template,
        key: str,
        occurrences: list[Occurrence],
        store: IdentityStore,
    ) -> TemplateOutcome:
        outcome = TemplateOutcome(title=template.title, key=key)
        stored_id = store.get(key)

        if stored_id is None:
            outcome.state = TemplateState.CREATING
            logger.info("Creating %r (%d occurrence(s))", key, len(occurrences))
        else:
            outcome.state = TemplateState.UPDATING
            if await self._update(template, key, stored_id, outcome):
                outcome.state = TemplateState.SETTLED
                outcome.event_id = stored_id
                outcome.updated += 1
                return outcome
            outcome.state = TemplateState.RECOVERING
            outcome.recovered = True
            logger.warning("Recreating %r after failed update of event %s", key, stored_id)

        await self._create(template, key, occurrences, outcome)
        return outcome

    async def _update(
        self,
        template: Template,
        key: str,
        event_id: str,
        outcome: TemplateOutcome,
    ) -> bool:
        try:
            existing = await self._gateway.get_event(event_id)
            if existing is None:
                outcome.errors.append(f"event {event_id} no longer exists")
                logger.warning("Event %s for %r no longer exists remotely", event_id, key)
                return False

            start_at, end_at = self._rescheduled_window(template, existing)
            draft = build_event_draft(template, start_at, end_at, self._timezone)
            await self._gateway.update_event(event_id, draft)
        except (GatewayError, ValueError) as exc:
            message = describe_error(exc)
            outcome.errors.append(f"update of {event_id} failed: {message}")
            logger.warning("Updating event %s for %r failed: %s", event_id, key, message)
            return False

        logger.info("Updated %r (event %s)", key, event_id)
        return True

    def _rescheduled_window(
        self,
        template: Template,
        existing: RemoteEvent,
    ) -> tuple[datetime, datetime]:
        """Keep the existing event's day, take the time of day from *template*."""
        time_of_day = parse_time_of_day(template.start_time)
        day = existing.start_at.astimezone(ZoneInfo(self._timezone)).date()
        return combine(day, time_of_day, self._timezone, template.duration)

    async def _create(
        self,
        template: Template,
        key: str,
        occurrences: list[Occurrence],
        outcome: TemplateOutcome,
    ) -> None:
        last_event_id: str | None = None
        for occurrence in occurrences:
            draft = build_event_draft(
                template, occurrence.start_at, occurrence.end_at, self._timezone
            )
            try:
                event = await self._gateway.create_event(draft)
            except (GatewayError, ValueError) as exc:
                message = describe_error(exc)
                outcome.errors.append(
                    f"create on {occurrence.start_at.date().isoformat()} failed: {message}"
                )
                logger.error(
                    "Creating %r on %s failed: %s",
                    key,
                    occurrence.start_at.date().isoformat(),
                    message,
                )
                continue
            outcome.created += 1
            last_event_id = event.event_id
            logger.debug("Created %r on %s as %s", key, occurrence.start_at.date(), event.event_id)

        if last_event_id is None:
            outcome.state = TemplateState.FAILED
            return
        outcome.state = TemplateState.SETTLED
        outcome.event_id = last_event_id
