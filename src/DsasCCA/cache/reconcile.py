# === NAVMAP v1 ===
# {
#   "module": "DsasCCA.cache.reconcile",
#   "purpose": "Cache population, staleness sweeps, staff refresh and orphaned-photo cleanup.",
#   "sections": [
#     {
#       "id": "cleanupreport",
#       "name": "CleanupReport",
#       "anchor": "class-cleanupreport",
#       "kind": "class"
#     },
#     {
#       "id": "cachereconciler",
#       "name": "CacheReconciler",
#       "anchor": "class-cachereconciler",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Cache reconciliation engine.

Responsibilities
----------------
- ``populate_all``: fill every id of the configured range that has never been
  processed successfully.
- ``refresh_stale``: re-fetch cached activities that are older than the
  activity threshold or carry an error marker, running orphan cleanup while
  the refresh jobs are in flight.
- ``refresh_staff_if_due``: keep the staff directory fresh, serving the old
  value with a bumped ``lastCheck`` when the portal is unavailable.
- ``cleanup_orphans``: delete stored photos no normal record points at.

Design Notes
------------
- Every upstream activity job runs inside ``async with self.limiter`` so at
  most N jobs talk to the portal at once. The semaphore is injected, so two
  engines can run with independent budgets.
- Per-activity failures never escape: the entry is overwritten with an error
  marker and picked up again by the next staleness sweep.
- Photos uploaded by a refresh job that has not written its record yet are
  never treated as orphans. Older photos of the same activity are.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Set, Tuple

from DsasCCA.cache import entries
from DsasCCA.cache.store import CacheRecord, RedisCacheStore
from DsasCCA.config.models import CacheConfig
from DsasCCA.engage.fetcher import FetchOrchestrator
from DsasCCA.errors import ConfigurationError, ProcessingError
from DsasCCA.normalize.activity import normalize_activity
from DsasCCA.normalize.staff import normalize_staff
from DsasCCA.storage.images import extract_base64_image, is_data_url
from DsasCCA.storage.s3_store import AssetStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CleanupReport:
    """Outcome of one orphan cleanup pass."""

    listed: int = 0
    referenced: int = 0
    orphaned: int = 0
    deleted: int = 0
    failed: int = 0
    dry_run: bool = False
    skipped: bool = False


class CacheReconciler:
    """Keeps the Redis cache and the photo bucket in line with the portal.

    Args:
        fetcher: Orchestrator used for every upstream fetch
        store: Activity/staff cache
        config: Range, thresholds and staff activity id
        limiter: Shared semaphore bounding concurrent activity jobs
        username: Portal username
        password: Portal password
        assets: Photo storage; ``None`` disables offload and cleanup
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        fetcher: FetchOrchestrator,
        store: RedisCacheStore,
        config: CacheConfig,
        *,
        limiter: asyncio.Semaphore,
        username: Optional[str],
        password: Optional[str],
        assets: Optional[AssetStore] = None,
        clock: Callable[[], datetime] = entries.utc_now,
    ) -> None:
        self.fetcher = fetcher
        self.store = store
        self.config = config
        self.limiter = limiter
        self.assets = assets
        self._username = username
        self._password = password
        self._clock = clock
        self._pending_uploads: Set[str] = set()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def activity_max_age(self) -> timedelta:
        return timedelta(minutes=self.config.club_update_interval_mins)

    @property
    def staff_max_age(self) -> timedelta:
        return timedelta(minutes=self.config.staff_update_interval_mins)

    def _credentials(self) -> Tuple[str, str]:
        if not self._username or not self._password:
            raise ConfigurationError(
                "Portal username and password are not configured", setting="engage.username"
            )
        return self._username, self._password

    async def _offload_photo(
        self, activity_id: str, record: CacheRecord, uploaded: List[str]
    ) -> None:
        """Replace an embedded photo with its public URL.

        The object URL is reserved in ``_pending_uploads`` before the upload
        starts and stays there until the owning job has written its record,
        so a concurrent cleanup cannot delete it.
        """
        photo = record.get("photo")
        if not is_data_url(photo):
            return
        if self.assets is None:
            logger.debug(f"Object storage disabled; keeping embedded photo for {activity_id}")
            return
        image = extract_base64_image(photo)
        if image is None:
            return
        key = self.assets.activity_object_key(activity_id)
        reserved = self.assets.public_url(key)
        self._pending_uploads.add(reserved)
        uploaded.append(reserved)
        url = await self.assets.upload_image(image, key)
        if not url:
            logger.warning(f"Keeping embedded photo for activity {activity_id}; upload failed")
            return
        record["photo"] = url

    async def _build_record(self, activity_id: str, uploaded: List[str]) -> CacheRecord:
        username, password = self._credentials()
        raw = await self.fetcher.fetch(activity_id, username, password)
        if raw is None:
            logger.info(f"Activity {activity_id} is empty upstream")
            return entries.empty_marker(self._clock())

        try:
            record = normalize_activity(raw)
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise ProcessingError(
                f"Could not normalize activity {activity_id}: {exc}", activity_id=activity_id
            ) from exc

        await self._offload_photo(activity_id, record, uploaded)
        record[entries.LAST_CHECK] = entries.format_timestamp(self._clock())
        return record

    # ------------------------------------------------------------------
    # Per-activity job
    # ------------------------------------------------------------------

    async def refresh_activity(self, activity_id: str) -> CacheRecord:
        """Fetch, normalize, offload and cache one activity.

        Always writes an entry: the normalized record, the empty marker, or
        the error marker. Never raises.
        """
        activity_id = str(activity_id)
        uploaded: List[str] = []
        try:
            try:
                record = await self._build_record(activity_id, uploaded)
            except Exception as exc:
                logger.error(f"Failed to fetch or process activity {activity_id}: {exc}")
                record = entries.error_marker(self._clock())
            await self.store.set_activity(activity_id, record)
        finally:
            self._pending_uploads.difference_update(uploaded)
        return record

    async def _populate_one(self, activity_id: str) -> bool:
        async with self.limiter:
            entry = await self.store.get_activity(activity_id)
            if not entries.needs_initial_fetch(entry):
                return False
            logger.debug(f"Initializing activity {activity_id}")
            await self.refresh_activity(activity_id)
            return True

    async def _refresh_if_stale(self, key: str) -> bool:
        activity_id = self.store.activity_id_from_key(key)
        async with self.limiter:
            entry = await self.store.get_json(key)
            if not entries.is_stale(entry, self.activity_max_age, self._clock()):
                return False
            logger.debug(f"Activity {activity_id} is stale; refreshing")
            await self.refresh_activity(activity_id)
            return True

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def populate_all(self) -> int:
        """Process every id in the configured range that has no good entry yet.

        Returns:
            Number of activities that were (re)fetched
        """
        first, last = self.config.min_activity_id, self.config.max_activity_id
        logger.info(f"Populating activity cache for ids {first}..{last}")
        results = await asyncio.gather(
            *(self._populate_one(str(activity_id)) for activity_id in range(first, last + 1))
        )
        refreshed = sum(1 for result in results if result)
        logger.info(f"Population finished: {refreshed} activities fetched")
        return refreshed

    async def refresh_stale(self) -> int:
        """Refresh stale, errored and empty cached activities.

        Orphan cleanup runs after the refresh jobs are scheduled and before
        they are awaited.

        Returns:
            Number of activities that were refreshed
        """
        keys = await self.store.scan_activity_keys()
        logger.info(f"Staleness sweep over {len(keys)} cached activities")
        tasks = [asyncio.create_task(self._refresh_if_stale(key)) for key in keys]
        try:
            await self.cleanup_orphans()
        finally:
            results = await asyncio.gather(*tasks)
        refreshed = sum(1 for result in results if result)
        logger.info(f"Staleness sweep finished: {refreshed} activities refreshed")
        return refreshed

    async def refresh_staff_if_due(self, force: bool = False) -> Optional[CacheRecord]:
        """Refresh the staff directory when forced, never checked, or stale.

        On upstream failure a previous value is kept and only its
        ``lastCheck`` moves forward; with no previous value nothing is
        written. Never raises.

        Returns:
            The staff record now in the cache, or ``None`` if there is none
        """
        try:
            return await self._refresh_staff(force)
        except Exception as exc:
            logger.error(f"Staff refresh failed: {exc}")
            return None

    async def _refresh_staff(self, force: bool) -> Optional[CacheRecord]:
        current = await self.store.get_staff()
        now = self._clock()
        due = force or not current or entries.is_stale(current, self.staff_max_age, now)
        if not due:
            logger.debug("Staff directory is fresh")
            return current

        staff_activity_id = self.config.fixed_staff_activity_id
        if not staff_activity_id:
            raise ConfigurationError(
                "No activity id configured for the staff directory",
                setting="cache.fixed_staff_activity_id",
            )
        username, password = self._credentials()

        raw = await self.fetcher.fetch(staff_activity_id, username, password)
        if raw is not None:
            record: CacheRecord = dict(normalize_staff(raw))
            record[entries.LAST_CHECK] = entries.format_timestamp(self._clock())
            await self.store.set_staff(record)
            logger.info(f"Staff directory refreshed ({len(record) - 1} entries)")
            return record

        if current and current.get(entries.LAST_CHECK):
            current[entries.LAST_CHECK] = entries.format_timestamp(self._clock())
            await self.store.set_staff(current)
            logger.warning("Staff fetch failed; serving previous directory")
            return current

        logger.warning("Staff fetch failed and no previous directory exists")
        return None

    async def cleanup_orphans(self, dry_run: bool = False) -> CleanupReport:
        """Delete stored photos that no normal cached record references.

        Args:
            dry_run: Log what would be deleted without deleting

        Returns:
            CleanupReport with per-pass counts
        """
        if self.assets is None:
            logger.info("Object storage disabled; skipping orphan cleanup")
            return CleanupReport(dry_run=dry_run, skipped=True)

        try:
            keys = await self.assets.list_keys(f"{self.assets.prefix}/")
        except Exception as exc:
            logger.error(f"Could not list stored photos: {exc}")
            return CleanupReport(dry_run=dry_run, skipped=True)

        # Listing happens first: a photo uploaded after the listing cannot be
        # deleted, and one uploaded before it is either still pending or
        # already referenced by the record its job wrote.
        protected = set(self._pending_uploads)
        records = await self.store.all_activities()
        referenced = entries.collect_referenced_urls(records.values(), self.assets.public_url(""))

        keep = referenced | protected
        orphans = [key for key in keys if self.assets.public_url(key) not in keep]
        logger.info(
            f"Orphan scan: {len(keys)} stored, {len(referenced)} referenced, {len(orphans)} orphaned"
        )

        if dry_run:
            for key in orphans:
                logger.info(f"[DRY-RUN] Would delete: {key}")
            return CleanupReport(
                listed=len(keys),
                referenced=len(referenced),
                orphaned=len(orphans),
                dry_run=True,
            )

        deleted, failed = await self.assets.delete_many(orphans)
        logger.info(f"GC deleted {deleted}/{len(orphans)} orphaned photos")
        return CleanupReport(
            listed=len(keys),
            referenced=len(referenced),
            orphaned=len(orphans),
            deleted=deleted,
            failed=failed,
        )


def describe_entry(entry: Optional[dict[str, Any]]) -> str:
    """Short human label for an entry's state, used by the CLI."""
    if not entry:
        return "missing"
    if entries.is_error(entry):
        return "error"
    if entries.is_empty_source(entry):
        return "empty"
    return "ok"
