"""Run-level workflows: sync, cleanup and rebuild.

``SyncService`` owns the identity store file for the duration of a run:
it loads it once, hands a read-only view to the reconciler or the cleanup
pass, and persists the freshly built store at the end.  A failed save is
logged and reported but never rolls back remote changes already made.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from zoneinfo import ZoneInfo

from weekcal.config import WeekcalConfig
from weekcal.core.anchor import next_week_start
from weekcal.core.cleanup import CleanupReport, Sleeper, cleanup_events
from weekcal.core.identity import IdentityStore, load_identity_store, save_identity_store
from weekcal.core.logging import new_run_id
from weekcal.core.reconciler import Reconciler, ReconcileReport
from weekcal.errors import IdentityStoreError
from weekcal.gateway import CalendarGateway

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass
class SyncResult:
    """A reconciliation report plus whether the new store reached disk."""

    report: ReconcileReport
    persisted: bool = True

    @property
    def ok(self) -> bool:
        return self.report.ok and self.persisted


class SyncService:
    """Wires configuration, a gateway and the identity store file together."""

    def __init__(
        self,
        config: WeekcalConfig,
        gateway: CalendarGateway,
        *,
        clock: Clock | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._config = config
        self._gateway = gateway
        self._clock = clock or (lambda: datetime.now(ZoneInfo(config.timezone)))
        self._sleep = sleep
        self._reconciler = Reconciler(
            gateway,
            timezone=config.timezone,
            keying=config.identity_keying,
        )

    def week_start(self) -> date:
        return next_week_start(self._clock())

    def load_store(self) -> IdentityStore:
        return load_identity_store(self._config.state_file)

    def _persist(self, store: IdentityStore) -> bool:
        try:
            save_identity_store(self._config.state_file, store)
        except IdentityStoreError as exc:
            logger.error("Error saving event IDs: %s", exc)
            return False
        logger.info("Saved %d event id(s) to %s", len(store), self._config.state_file)
        return True

    async def _reconcile_and_persist(self, store: IdentityStore) -> SyncResult:
        week_start = self.week_start()
        logger.info(
            "Reconciling %d template(s) for the week of %s",
            len(self._config.templates),
            week_start.isoformat(),
        )
        report = await self._reconciler.reconcile(
            self._config.templates, store, week_start=week_start
        )
        return SyncResult(report=report, persisted=self._persist(report.store))

    async def sync(self) -> SyncResult:
        """Incremental run: update what is tracked, create what is not."""
        new_run_id()
        return await self._reconcile_and_persist(self.load_store())

    async def cleanup(self, settle_seconds: float | None = None) -> CleanupReport:
        """Delete every tracked event.  The store file is left as it is."""
        new_run_id()
        return await cleanup_events(
            self._gateway,
            self.load_store(),
            settle_seconds=self._settle(settle_seconds),
            sleep=self._sleep,
        )

    async def rebuild(
        self,
        settle_seconds: float | None = None,
    ) -> tuple[CleanupReport, SyncResult]:
        """Wipe every tracked event, let deletions settle, then recreate everything."""
        new_run_id()
        logger.info("Cleaning up existing events...")
        cleanup_report = await cleanup_events(
            self._gateway,
            self.load_store(),
            settle_seconds=self._settle(settle_seconds),
            sleep=self._sleep,
        )
        logger.info("Creating new events...")
        result = await self._reconcile_and_persist(IdentityStore())
        return cleanup_report, result

    def _settle(self, settle_seconds: float | None) -> float:
        return self._config.settle_seconds if settle_seconds is None else settle_seconds

    async def shutdown(self) -> None:
        await self._gateway.shutdown()
