"""Background scheduler for periodic CRM syncs.

Provides a lightweight APScheduler wrapper with one interval job that syncs
every active integration through IntegrationManager.sync_all_active().

Exports:
    SyncScheduler: Async scheduler for periodic pull syncs.
"""

from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

import structlog

from src.givesync.crm.manager import IntegrationManager

logger = structlog.get_logger(__name__)

JOB_ID = "crm_sync_all_active"


class SyncScheduler:
    """Runs a sync of all active integrations every interval_minutes.

    A run still in progress when the next one is due is skipped
    (max_instances=1); per-integration single-flight is enforced separately
    by the sync engine.

    Args:
        manager: IntegrationManager used to run the syncs.
        interval_minutes: Minutes between runs.
    """

    def __init__(self, manager: IntegrationManager, interval_minutes: int = 60) -> None:
        self._manager = manager
        self._interval_minutes = interval_minutes
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> bool:
        """Start the scheduler. Must be called from a running event loop."""
        if self._started:
            return True

        try:
            self._scheduler = AsyncIOScheduler()
            self._scheduler.add_job(
                self.run_once,
                trigger=IntervalTrigger(minutes=self._interval_minutes),
                id=JOB_ID,
                name="Sync all active CRM integrations",
                max_instances=1,
                coalesce=True,
                misfire_grace_time=600,
            )
            self._scheduler.start()
            self._started = True
            logger.info(
                "sync_scheduler.started",
                interval_minutes=self._interval_minutes,
            )
            return True

        except Exception as exc:
            logger.warning(
                "sync_scheduler.start_failed",
                error=str(exc),
            )
            return False

    def stop(self) -> None:
        """Shut down the scheduler."""
        if self._scheduler is not None and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("sync_scheduler.stopped")

    async def run_once(self) -> None:
        """Sync every active integration once. Never raises."""
        logger.info("sync_scheduler.run_triggered")
        try:
            results = await self._manager.sync_all_active()
        except Exception as exc:
            logger.warning("sync_scheduler.run_failed", error=str(exc))
            return

        failed = sum(1 for result in results.values() if result is None)
        logger.info(
            "sync_scheduler.run_complete",
            integrations=len(results),
            success=len(results) - failed,
            failed=failed,
        )


__all__ = ["SyncScheduler"]
