"""Tests for the background reconciliation scheduler."""

from __future__ import annotations

import asyncio

from DsasCCA.cache.reconcile import CleanupReport
from DsasCCA.cache.scheduler import BackgroundScheduler


class RecordingReconciler:
    """Records which reconciliation passes ran."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    async def populate_all(self) -> int:
        self.calls.append("populate")
        return 0

    async def refresh_staff_if_due(self, force: bool = False):
        self.calls.append("staff-force" if force else "staff")
        return None

    async def cleanup_orphans(self, dry_run: bool = False) -> CleanupReport:
        self.calls.append("cleanup")
        return CleanupReport(skipped=True)

    async def refresh_stale(self) -> int:
        self.calls.append("sweep")
        return 0


class TestBackgroundScheduler:
    """Bootstrap order and periodic loops."""

    def test_bootstrap_order(self, cache_config):
        reconciler = RecordingReconciler()
        scheduler = BackgroundScheduler(reconciler, cache_config)

        asyncio.run(scheduler.run_bootstrap())

        assert reconciler.calls == ["populate", "staff-force", "cleanup"]

    def test_loops_run_and_stop(self, cache_config):
        config = cache_config.model_copy(
            update={"club_check_interval_s": 0.01, "staff_check_interval_s": 0.01}
        )
        reconciler = RecordingReconciler()
        scheduler = BackgroundScheduler(reconciler, config, bootstrap=False)

        async def _run():
            scheduler.start()
            assert scheduler.running
            await asyncio.sleep(0.05)
            await scheduler.stop()
            return scheduler.running

        assert asyncio.run(_run()) is False
        assert "sweep" in reconciler.calls
        assert "staff" in reconciler.calls
        assert "populate" not in reconciler.calls

    def test_failing_pass_does_not_kill_loop(self, cache_config):
        config = cache_config.model_copy(
            update={"club_check_interval_s": 0.01, "staff_check_interval_s": 10}
        )
        reconciler = RecordingReconciler()
        attempts = []

        async def _broken_sweep() -> int:
            attempts.append(1)
            raise RuntimeError("redis down")

        reconciler.refresh_stale = _broken_sweep
        scheduler = BackgroundScheduler(reconciler, config, bootstrap=False)

        async def _run():
            scheduler.start()
            await asyncio.sleep(0.06)
            await scheduler.stop()

        asyncio.run(_run())
        assert len(attempts) >= 2

    def test_stop_before_start_is_noop(self, cache_config):
        scheduler = BackgroundScheduler(RecordingReconciler(), cache_config)
        asyncio.run(scheduler.stop())
        assert not scheduler.running
