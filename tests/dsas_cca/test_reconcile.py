"""Tests for cache population, staleness sweeps, staff refresh and photo cleanup."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from DsasCCA.cache import entries
from DsasCCA.cache.reconcile import CacheReconciler, describe_entry
from DsasCCA.cache.store import RedisCacheStore
from DsasCCA.errors import ConfigurationError

from tests.dsas_cca.fakes import (
    PUBLIC_BASE,
    FakeAssetStore,
    FakeFetcher,
    FakeRedis,
    activity_payload,
)

NOW = datetime(2024, 9, 1, 12, 0, tzinfo=timezone.utc)
PNG_DATA_URL = "data:image/png;base64,iVBORw0KGgo="


def _ago(minutes: float) -> str:
    return entries.format_timestamp(NOW - timedelta(minutes=minutes))


def _build(cache_config, fetcher, redis=None, assets=None, limit=None, username="robot"):
    redis = redis if redis is not None else FakeRedis()
    store = RedisCacheStore(redis)
    reconciler = CacheReconciler(
        fetcher,
        store,
        cache_config,
        limiter=asyncio.Semaphore(limit or cache_config.concurrent_api_calls),
        username=username,
        password="pw",
        assets=assets,
        clock=lambda: NOW,
    )
    return reconciler, redis


class TestRefreshActivity:
    """The per-activity job always leaves an entry behind."""

    def test_normal_record(self, cache_config):
        fetcher = FakeFetcher({"3350": activity_payload("3350")})
        reconciler, redis = _build(cache_config, fetcher)

        record = asyncio.run(reconciler.refresh_activity("3350"))

        assert record["name"] == "Robotics Club"
        assert record["lastCheck"] == entries.format_timestamp(NOW)
        assert redis.load_json("activity:3350") == record
        assert describe_entry(record) == "ok"

    def test_empty_upstream_writes_marker(self, cache_config):
        reconciler, redis = _build(cache_config, FakeFetcher())
        record = asyncio.run(reconciler.refresh_activity("7"))

        assert record == {"lastCheck": entries.format_timestamp(NOW), "source": "api-fetch-empty"}
        assert redis.load_json("activity:7") == record
        assert describe_entry(record) == "empty"

    def test_failure_writes_error_marker(self, cache_config):
        """Fetch exceptions never escape; an error marker is cached instead."""
        fetcher = FakeFetcher({"8": RuntimeError("boom")})
        reconciler, redis = _build(cache_config, fetcher)

        record = asyncio.run(reconciler.refresh_activity("8"))

        assert record == {"lastCheck": entries.format_timestamp(NOW), "error": "Failed to fetch or process"}
        assert redis.load_json("activity:8") == record
        assert describe_entry(record) == "error"

    def test_unnormalizable_payload_writes_error_marker(self, cache_config):
        fetcher = FakeFetcher({"9": {"unexpected": True}})
        reconciler, redis = _build(cache_config, fetcher)

        record = asyncio.run(reconciler.refresh_activity("9"))
        assert entries.is_error(record)

    def test_missing_credentials_writes_error_marker(self, cache_config):
        fetcher = FakeFetcher({"1": activity_payload("1")})
        reconciler, _ = _build(cache_config, fetcher, username=None)

        record = asyncio.run(reconciler.refresh_activity("1"))
        assert entries.is_error(record)
        assert fetcher.calls == []

    def test_embedded_photo_is_offloaded(self, cache_config):
        fetcher = FakeFetcher({"5": activity_payload("5", photo=PNG_DATA_URL)})
        assets = FakeAssetStore()
        reconciler, _ = _build(cache_config, fetcher, assets=assets)

        record = asyncio.run(reconciler.refresh_activity("5"))

        key, image = assets.uploads[0]
        assert record["photo"] == f"{PUBLIC_BASE}/{key}"
        assert image.format == "png"
        assert key.startswith("files/activity-5-")

    def test_photo_kept_inline_without_storage(self, cache_config):
        fetcher = FakeFetcher({"5": activity_payload("5", photo=PNG_DATA_URL)})
        reconciler, _ = _build(cache_config, fetcher)

        record = asyncio.run(reconciler.refresh_activity("5"))
        assert record["photo"] == PNG_DATA_URL


class TestPopulateAll:
    """Bulk population over the configured id range (1..5)."""

    def test_populates_missing_and_errored_only(self, cache_config):
        redis = FakeRedis()
        redis.put_json("activity:1", {"name": "Chess", "lastCheck": _ago(600)})
        redis.put_json("activity:2", {"lastCheck": _ago(5), "error": "Failed to fetch or process"})
        redis.put_json("activity:3", {})
        redis.put_json("activity:4", {"name": "No check"})
        fetcher = FakeFetcher(default=None)
        reconciler, _ = _build(cache_config, fetcher, redis=redis)

        count = asyncio.run(reconciler.populate_all())

        assert sorted(fetcher.calls) == ["2", "3", "4", "5"]
        assert count == 4
        assert redis.load_json("activity:1") == {"name": "Chess", "lastCheck": _ago(600)}

    def test_second_pass_is_idempotent(self, cache_config):
        """Running population twice changes nothing the second time."""
        fetcher = FakeFetcher({str(i): activity_payload(str(i)) for i in range(1, 4)})
        reconciler, redis = _build(cache_config, fetcher)

        async def _run():
            await reconciler.populate_all()
            snapshot = dict(redis.data)
            redis.set_calls.clear()
            second = await reconciler.populate_all()
            return snapshot, second

        snapshot, second = asyncio.run(_run())

        assert second == 0
        assert redis.set_calls == []
        assert redis.data == snapshot

    def test_concurrency_is_bounded(self, cache_config):
        fetcher = FakeFetcher(default=None)
        fetcher.delay = 0.01
        reconciler, _ = _build(cache_config, fetcher, limit=2)

        asyncio.run(reconciler.populate_all())

        assert len(fetcher.calls) == 5
        assert fetcher.peak <= 2


class TestRefreshStale:
    """Staleness sweep over cached keys."""

    def test_only_old_and_errored_entries_refresh(self, cache_config):
        redis = FakeRedis()
        redis.put_json("activity:10", {"name": "Old", "lastCheck": _ago(120)})
        redis.put_json("activity:11", {"name": "Fresh", "lastCheck": _ago(10)})
        redis.put_json("activity:12", {"lastCheck": _ago(1), "error": "Failed to fetch or process"})
        redis.put_json("activity:13", {"name": "Garbled", "lastCheck": "yesterday"})
        redis.put_json("staffs:all", {"lastCheck": _ago(500)})
        fetcher = FakeFetcher(default=None)
        reconciler, _ = _build(cache_config, fetcher, redis=redis)

        count = asyncio.run(reconciler.refresh_stale())

        assert sorted(fetcher.calls) == ["10", "12", "13"]
        assert count == 3
        assert redis.load_json("activity:11")["name"] == "Fresh"

    def test_revisited_scan_keys_fetch_once(self, cache_config):
        redis = FakeRedis(repeat_scan=True)
        redis.put_json("activity:10", {"name": "Old", "lastCheck": _ago(120)})
        fetcher = FakeFetcher(default=None)
        reconciler, _ = _build(cache_config, fetcher, redis=redis)

        count = asyncio.run(reconciler.refresh_stale())

        assert fetcher.calls == ["10"]
        assert count == 1

    def test_sweep_runs_cleanup(self, cache_config):
        redis = FakeRedis()
        redis.put_json("activity:10", {"name": "Fresh", "lastCheck": _ago(1)})
        assets = FakeAssetStore(["files/activity-99-old.png"])
        reconciler, _ = _build(cache_config, FakeFetcher(), redis=redis, assets=assets)

        asyncio.run(reconciler.refresh_stale())

        assert assets.deleted == ["files/activity-99-old.png"]


class TestStaffRefresh:
    """Staff aggregate lifecycle."""

    STAFF_PAYLOAD = activity_payload(
        "3350",
        staff_options=[
            {"key": "100", "val": "Ms Cindy 薛"},
            {"key": "CL1-827", "val": "Test Account"},
            {"key": "101", "val": "Mr Smith"},
        ],
    )

    def test_forced_refresh_writes_directory(self, cache_config):
        fetcher = FakeFetcher({"3350": self.STAFF_PAYLOAD})
        reconciler, redis = _build(cache_config, fetcher)

        record = asyncio.run(reconciler.refresh_staff_if_due(force=True))

        assert record == {
            "100": "Ms Cindy Xue",
            "101": "Mr Smith",
            "lastCheck": entries.format_timestamp(NOW),
        }
        assert redis.load_json("staffs:all") == record

    def test_fresh_directory_is_not_refetched(self, cache_config):
        redis = FakeRedis()
        redis.put_json("staffs:all", {"100": "Ms A", "lastCheck": _ago(5)})
        fetcher = FakeFetcher({"3350": self.STAFF_PAYLOAD})
        reconciler, _ = _build(cache_config, fetcher, redis=redis)

        record = asyncio.run(reconciler.refresh_staff_if_due())

        assert fetcher.calls == []
        assert record["100"] == "Ms A"

    def test_failure_without_previous_writes_nothing(self, cache_config):
        """No prior directory and upstream absent: nothing written, next call retries."""
        fetcher = FakeFetcher({"3350": None})
        reconciler, redis = _build(cache_config, fetcher)

        async def _run():
            first = await reconciler.refresh_staff_if_due()
            second = await reconciler.refresh_staff_if_due(force=False)
            return first, second

        first, second = asyncio.run(_run())

        assert first is None and second is None
        assert "staffs:all" not in redis.data
        assert fetcher.calls == ["3350", "3350"]

    def test_failure_keeps_previous_and_bumps_last_check(self, cache_config):
        redis = FakeRedis()
        redis.put_json("staffs:all", {"100": "Ms A", "lastCheck": _ago(120)})
        fetcher = FakeFetcher({"3350": None})
        reconciler, _ = _build(cache_config, fetcher, redis=redis)

        record = asyncio.run(reconciler.refresh_staff_if_due())

        assert record == {"100": "Ms A", "lastCheck": entries.format_timestamp(NOW)}
        assert redis.load_json("staffs:all") == record

    def test_missing_staff_activity_id_never_raises(self, cache_config):
        config = cache_config.model_copy(update={"fixed_staff_activity_id": None})
        reconciler, redis = _build(config, FakeFetcher())

        assert asyncio.run(reconciler.refresh_staff_if_due(force=True)) is None
        assert "staffs:all" not in redis.data

    def test_missing_credentials(self, cache_config):
        reconciler, _ = _build(cache_config, FakeFetcher(), username=None)
        with pytest.raises(ConfigurationError):
            reconciler._credentials()


class TestCleanupOrphans:
    """Photo deletion iff unreferenced by a normal record."""

    def _redis_with_records(self):
        redis = FakeRedis()
        redis.put_json(
            "activity:1",
            {"name": "A", "photo": f"{PUBLIC_BASE}/files/activity-1-a.png", "lastCheck": _ago(1)},
        )
        redis.put_json(
            "activity:2",
            {
                "lastCheck": _ago(1),
                "error": "Failed to fetch or process",
                "photo": f"{PUBLIC_BASE}/files/activity-2-b.png",
            },
        )
        redis.put_json("activity:3", {"lastCheck": _ago(1), "source": "api-fetch-empty"})
        return redis

    def test_deletes_only_unreferenced(self, cache_config):
        assets = FakeAssetStore(
            [
                "files/activity-1-a.png",
                "files/activity-2-b.png",
                "files/activity-3-c.png",
                "files/activity-4-d.png",
            ]
        )
        reconciler, _ = _build(
            cache_config, FakeFetcher(), redis=self._redis_with_records(), assets=assets
        )

        report = asyncio.run(reconciler.cleanup_orphans())

        assert sorted(assets.deleted) == [
            "files/activity-2-b.png",
            "files/activity-3-c.png",
            "files/activity-4-d.png",
        ]
        assert assets.keys == ["files/activity-1-a.png"]
        assert (report.listed, report.referenced, report.orphaned, report.deleted) == (4, 1, 3, 3)

    def test_dry_run_deletes_nothing(self, cache_config):
        assets = FakeAssetStore(["files/activity-1-a.png", "files/activity-9-z.png"])
        reconciler, _ = _build(
            cache_config, FakeFetcher(), redis=self._redis_with_records(), assets=assets
        )

        report = asyncio.run(reconciler.cleanup_orphans(dry_run=True))

        assert report.dry_run and report.orphaned == 1
        assert assets.deleted == []

    def test_partial_delete_failure_continues(self, cache_config):
        assets = FakeAssetStore(["files/activity-7-x.png", "files/activity-8-y.png"])
        assets.fail_delete.add("files/activity-7-x.png")
        reconciler, _ = _build(cache_config, FakeFetcher(), assets=assets)

        report = asyncio.run(reconciler.cleanup_orphans())

        assert assets.deleted == ["files/activity-8-y.png"]
        assert (report.deleted, report.failed) == (1, 1)

    def test_without_storage_is_skipped(self, cache_config):
        reconciler, _ = _build(cache_config, FakeFetcher())
        assert asyncio.run(reconciler.cleanup_orphans()).skipped

    def test_photo_becomes_orphan_when_activity_empties(self, cache_config):
        """Populated-with-photo then empty upstream: the old photo is deleted next sweep."""
        fetcher = FakeFetcher({"5": activity_payload("5", photo=PNG_DATA_URL)})
        assets = FakeAssetStore()
        reconciler, redis = _build(cache_config, fetcher, assets=assets)

        async def _run():
            await reconciler.refresh_activity("5")
            uploaded = list(assets.keys)
            kept = await reconciler.cleanup_orphans()
            fetcher.responses["5"] = None
            await reconciler.refresh_activity("5")
            removed = await reconciler.cleanup_orphans()
            return uploaded, kept, removed

        uploaded, kept, removed = asyncio.run(_run())

        assert kept.deleted == 0
        assert removed.deleted == 1
        assert assets.deleted == uploaded
        assert entries.is_empty_source(redis.load_json("activity:5"))

    def test_pending_upload_survives_but_old_photo_goes(self, cache_config):
        """A photo whose job has not written its record yet is kept; older ones are not."""
        fetcher = FakeFetcher({"6": activity_payload("6", photo=PNG_DATA_URL)})
        assets = FakeAssetStore(["files/activity-6-old.png", "files/activity-9-old.png"])
        reconciler, redis = _build(cache_config, fetcher, assets=assets)

        async def _run():
            reached = asyncio.Event()
            release = asyncio.Event()

            async def _hold():
                reached.set()
                await release.wait()

            assets.on_upload = _hold
            job = asyncio.create_task(reconciler.refresh_activity("6"))
            await reached.wait()
            report = await reconciler.cleanup_orphans()
            release.set()
            await job
            return report

        report = asyncio.run(_run())

        new_key = "files/activity-6-0.avif"
        assert sorted(assets.deleted) == ["files/activity-6-old.png", "files/activity-9-old.png"]
        assert assets.keys == [new_key]
        assert report.orphaned == 2
        assert redis.load_json("activity:6")["photo"] == f"{PUBLIC_BASE}/{new_key}"
        assert reconciler._pending_uploads == set()

    def test_errored_entry_old_photo_deleted_during_sweep(self, cache_config):
        """A sweep deletes an errored activity's stale photo while its refresh runs."""
        redis = FakeRedis()
        redis.put_json("activity:6", {"lastCheck": _ago(1), "error": "Failed to fetch or process"})
        assets = FakeAssetStore(["files/activity-6-old.png"])

        async def _run():
            release = asyncio.Event()

            async def _slow_payload():
                await release.wait()
                return None

            fetcher = FakeFetcher({"6": _slow_payload})
            reconciler, _ = _build(cache_config, fetcher, redis=redis, assets=assets)

            async def _refresh_in_flight():
                while not fetcher.calls:
                    await asyncio.sleep(0)
                release.set()

            assets.on_list = _refresh_in_flight
            await reconciler.refresh_stale()

        asyncio.run(_run())

        assert assets.deleted == ["files/activity-6-old.png"]
        assert entries.is_empty_source(redis.load_json("activity:6"))
