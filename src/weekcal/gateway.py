"""Remote calendar gateway contract.

This module defines:
- ``EventDraft``: the full description of an event the engine wants remotely
- ``RemoteEvent``: the subset of a remote event the engine reads back
- ``CalendarGateway``: single-event create/get/update/delete interface

Every operation may fail for transient or permanent reasons and raises a
``GatewayError`` subclass when it does.  Gateways are not assumed to be
idempotent; the identity store is what makes repeated runs converge.
"""

from __future__ import annotations

import abc
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from weekcal.core.templates import ReminderOverride
from weekcal.errors import (
    CredentialError,
    GatewayError,
    GatewayRequestError,
    TokenRefreshError,
)

__all__ = [
    "CalendarGateway",
    "CredentialError",
    "EventDraft",
    "GatewayError",
    "GatewayRequestError",
    "RemoteEvent",
    "TokenRefreshError",
]


class EventDraft(BaseModel):
    """Everything the engine owns about one remote event.

    Updates send the whole draft; fields the operator edited by hand on the
    remote side are overwritten.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    title: str = Field(min_length=1)
    body: str = ""
    start_at: datetime
    end_at: datetime
    timezone: str = Field(min_length=1)
    recurrence: tuple[str, ...] = ()
    reminders: tuple[ReminderOverride, ...] = ()
    use_default_reminders: bool = False
    color_id: str | None = None

    @model_validator(mode="after")
    def _validate_window(self) -> EventDraft:
        if self.start_at.tzinfo is None or self.end_at.tzinfo is None:
            raise ValueError("start_at and end_at must be timezone-aware")
        if self.end_at < self.start_at:
            raise ValueError("end_at must not be before start_at")
        return self


class RemoteEvent(BaseModel):
    """An event as reported by the remote calendar."""

    event_id: str
    title: str
    start_at: datetime
    end_at: datetime
    timezone: str | None = None
    recurrence: tuple[str, ...] = ()
    color_id: str | None = None


class CalendarGateway(abc.ABC):
    """Single-event operations against one remote calendar."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Gateway identifier (e.g., ``google``)."""
        ...

    @abc.abstractmethod
    async def create_event(self, draft: EventDraft) -> RemoteEvent:
        """Create an event and return it with its new id."""
        ...

    @abc.abstractmethod
    async def get_event(self, event_id: str) -> RemoteEvent | None:
        """Fetch an event; ``None`` when it no longer exists remotely."""
        ...

    @abc.abstractmethod
    async def update_event(self, event_id: str, draft: EventDraft) -> RemoteEvent:
        """Replace every engine-owned field of an existing event."""
        ...

    @abc.abstractmethod
    async def delete_event(self, event_id: str) -> None:
        """Delete an event.  Deleting an already-deleted event is not an error."""
        ...

    async def shutdown(self) -> None:  # noqa: B027
        """Release gateway resources."""
