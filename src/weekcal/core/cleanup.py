"""Bulk deletion of every event recorded in the identity store.

Used by the wipe-and-rebuild workflow.  The store itself is left untouched;
the reconciliation pass that follows builds a fresh one.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field

from weekcal.errors import GatewayError, describe_error
from weekcal.gateway import CalendarGateway

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


@dataclass
class CleanupReport:
    deleted: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    settled_for: float = 0.0


async def cleanup_events(
    gateway: CalendarGateway,
    store: Mapping[str, str],
    *,
    settle_seconds: float = 0.0,
    sleep: Sleeper = asyncio.sleep,
) -> CleanupReport:
    """Delete every recorded event, then wait *settle_seconds*.

    Individual delete failures are logged and collected; they never stop the
    batch.  The settle wait gives the remote calendar time to apply the
    deletions before anything is recreated.
    """
    if settle_seconds < 0:
        raise ValueError("settle_seconds must be non-negative")

    report = CleanupReport()
    for key, event_id in store.items():
        logger.info("Deleting existing event: %s (ID: %s)", key, event_id)
        try:
            await gateway.delete_event(event_id)
        except (GatewayError, ValueError) as exc:
            message = describe_error(exc)
            logger.error("Error deleting event %r: %s", key, message)
            report.failed[key] = message
            continue
        report.deleted.append(key)

    if store and settle_seconds > 0:
        logger.info("Waiting %.1fs for deletions to settle", settle_seconds)
        await sleep(settle_seconds)
        report.settled_for = settle_seconds
    return report
