"""Background scheduling of cache reconciliation.

**Lifecycle:**

    scheduler = BackgroundScheduler(reconciler, config.cache)
    scheduler.start()        # bootstrap, then periodic sweeps
    ...
    await scheduler.stop()   # cancel loops, wait for them to unwind

Bootstrap runs once: populate the activity range, force a staff refresh, then
clean orphaned photos. Afterwards two independent loops run the activity
staleness sweep and the staff refresh at their own intervals. A sweep never
overlaps with itself. The single-shot coroutines are public so callers and
tests can trigger one pass without waiting on timers.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from DsasCCA.cache.reconcile import CacheReconciler, CleanupReport
from DsasCCA.config.models import CacheConfig

__all__ = ["BackgroundScheduler"]

logger = logging.getLogger(__name__)


class BackgroundScheduler:
    """Owns the periodic reconciliation tasks of one process."""

    def __init__(
        self,
        reconciler: CacheReconciler,
        config: CacheConfig,
        *,
        bootstrap: bool = True,
    ) -> None:
        self.reconciler = reconciler
        self.config = config
        self.bootstrap = bootstrap
        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    # ---- single passes ----

    async def run_bootstrap(self) -> CleanupReport:
        logger.info("Bootstrap: populating activity cache")
        await self.reconciler.populate_all()
        logger.info("Bootstrap: refreshing staff directory")
        await self.reconciler.refresh_staff_if_due(force=True)
        logger.info("Bootstrap: cleaning orphaned photos")
        return await self.reconciler.cleanup_orphans()

    async def run_activity_sweep(self) -> int:
        return await self.reconciler.refresh_stale()

    async def run_staff_sweep(self) -> Optional[dict]:
        return await self.reconciler.refresh_staff_if_due()

    # ---- loops ----

    async def _sleep_or_stop(self, seconds: float) -> bool:
        """Wait up to ``seconds``; True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _periodic(self, name: str, interval_s: float, job: Callable[[], Awaitable]) -> None:
        logger.info(f"{name} loop every {interval_s:g}s")
        while not await self._sleep_or_stop(interval_s):
            try:
                await job()
            except Exception as exc:
                logger.error(f"{name} pass failed: {exc}")
        logger.debug(f"{name} loop stopped")

    async def _main(self) -> None:
        if self.bootstrap:
            try:
                await self.run_bootstrap()
            except Exception as exc:
                logger.error(f"Bootstrap failed: {exc}")
        if self._stop.is_set():
            return
        await asyncio.gather(
            self._periodic(
                "Activity sweep", self.config.club_check_interval_s, self.run_activity_sweep
            ),
            self._periodic("Staff sweep", self.config.staff_check_interval_s, self.run_staff_sweep),
        )

    def start(self) -> None:
        """Start bootstrap and periodic loops on the running event loop."""
        if self.running:
            logger.warning("Scheduler already running")
            return
        self._stop.clear()
        self._tasks = [asyncio.create_task(self._main(), name="dsas-reconcile")]
        logger.info("Background scheduler started")

    async def stop(self, timeout: float = 5.0) -> None:
        """Signal stop, then cancel whatever is still running after ``timeout``."""
        logger.info("Background scheduler stopping")
        self._stop.set()
        if not self._tasks:
            return
        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info("Background scheduler stopped")
