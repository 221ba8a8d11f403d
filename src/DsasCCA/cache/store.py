"""Redis-backed JSON cache for activity records and the staff aggregate.

Keys:
- ``activity:<id>``: one normalized activity record (or a marker entry)
- ``staffs:all``: the staff directory plus its ``lastCheck``

Example:
    from DsasCCA.cache.store import RedisCacheStore, build_redis_client

    store = RedisCacheStore(build_redis_client("redis://localhost:6379"))
    await store.set_activity("3350", {"name": "Robotics", "lastCheck": "..."})
    record = await store.get_activity("3350")
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

CONNECTION_TEST_KEY = "connection-test"

CacheRecord = Dict[str, Any]


def build_redis_client(url: str, socket_timeout: float = 5.0) -> aioredis.Redis:
    """Create an asyncio Redis client that decodes responses to ``str``."""
    return aioredis.Redis.from_url(
        url,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
        decode_responses=True,
    )


@dataclass
class RedisCacheStore:
    """
    JSON document store over Redis strings.

    Parameters
    ----------
    client : redis.asyncio.Redis
        Connected client (``decode_responses=True``)
    activity_key_prefix : str
        Prefix for per-activity keys (default "activity:")
    staff_key : str
        Key of the staff aggregate (default "staffs:all")
    scan_count : int
        COUNT hint for SCAN iterations

    Notes
    -----
    Read failures are logged and reported as a miss; write failures are
    logged and dropped. Only :meth:`check_connection` raises.
    """

    client: aioredis.Redis
    activity_key_prefix: str = "activity:"
    staff_key: str = "staffs:all"
    scan_count: int = 100

    def activity_key(self, activity_id: str) -> str:
        return f"{self.activity_key_prefix}{activity_id}"

    def activity_id_from_key(self, key: str) -> str:
        return key[len(self.activity_key_prefix) :] if key.startswith(self.activity_key_prefix) else key

    async def get_json(self, key: str) -> Optional[CacheRecord]:
        try:
            raw = await self.client.get(key)
        except RedisError as exc:
            logger.error(f"Redis GET {key} failed: {exc}")
            return None
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as exc:
            logger.error(f"Corrupt JSON under {key}: {exc}")
            return None
        return value if isinstance(value, dict) else None

    async def set_json(self, key: str, value: CacheRecord) -> None:
        try:
            await self.client.set(key, json.dumps(value, ensure_ascii=False))
        except RedisError as exc:
            logger.error(f"Redis SET {key} failed: {exc}")

    async def get_activity(self, activity_id: str) -> Optional[CacheRecord]:
        return await self.get_json(self.activity_key(activity_id))

    async def set_activity(self, activity_id: str, record: CacheRecord) -> None:
        await self.set_json(self.activity_key(activity_id), record)

    async def get_staff(self) -> Optional[CacheRecord]:
        return await self.get_json(self.staff_key)

    async def set_staff(self, record: CacheRecord) -> None:
        await self.set_json(self.staff_key, record)

    async def scan_activity_keys(self) -> List[str]:
        """Return every key under the activity prefix (SCAN, never KEYS)."""
        keys: List[str] = []
        try:
            async for key in self.client.scan_iter(
                match=f"{self.activity_key_prefix}*", count=self.scan_count
            ):
                keys.append(key)
        except RedisError as exc:
            logger.error(f"Redis SCAN failed: {exc}")
            return []
        # SCAN may report a key more than once
        keys = list(dict.fromkeys(keys))
        logger.debug(f"Scanned {len(keys)} activity keys")
        return keys

    async def all_activities(self) -> Dict[str, CacheRecord]:
        """Return ``{activity_id: record}`` for every readable cached activity."""
        records: Dict[str, CacheRecord] = {}
        for key in await self.scan_activity_keys():
            record = await self.get_json(key)
            if record is not None:
                records[self.activity_id_from_key(key)] = record
        return records

    async def check_connection(self) -> None:
        """Write and delete a probe key.

        Raises:
            RedisError: If Redis cannot be reached
        """
        await self.client.set(CONNECTION_TEST_KEY, "ok")
        await self.client.delete(CONNECTION_TEST_KEY)
        logger.info("Redis connection verified")

    async def close(self) -> None:
        await self.client.aclose()
