"""Tests for SyncScheduler -- periodic sync of all active integrations."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from src.givesync.crm.scheduler import JOB_ID, SyncScheduler


def _manager(results=None, error=None) -> MagicMock:
    manager = MagicMock()
    manager.sync_all_active = AsyncMock(return_value=results or {}, side_effect=error)
    return manager


class TestSyncScheduler:
    async def test_start_registers_single_interval_job(self):
        scheduler = SyncScheduler(_manager(), interval_minutes=15)

        assert scheduler.start() is True
        try:
            assert scheduler.running is True
            job = scheduler._scheduler.get_job(JOB_ID)
            assert job is not None
            assert job.trigger.interval == timedelta(minutes=15)
            assert job.max_instances == 1
            assert job.coalesce is True
        finally:
            scheduler.stop()

        assert scheduler.running is False

    async def test_start_is_idempotent(self):
        scheduler = SyncScheduler(_manager())

        assert scheduler.start() is True
        try:
            first = scheduler._scheduler
            assert scheduler.start() is True
            assert scheduler._scheduler is first
        finally:
            scheduler.stop()

    def test_stop_without_start_is_a_no_op(self):
        scheduler = SyncScheduler(_manager())
        scheduler.stop()
        assert scheduler.running is False

    async def test_run_once_syncs_all_active(self):
        manager = _manager(results={"a": MagicMock(), "b": None})
        scheduler = SyncScheduler(manager)

        await scheduler.run_once()

        manager.sync_all_active.assert_awaited_once()

    async def test_run_once_never_raises(self):
        manager = _manager(error=RuntimeError("database unavailable"))
        scheduler = SyncScheduler(manager)

        await scheduler.run_once()

        manager.sync_all_active.assert_awaited_once()
