"""Two-tier storage for the portal session credential.

The credential is read from an in-process holder first and from a durable
single-slot backend (a Redis key or a file) on a cold start. Writes go to both
tiers; durable failures are logged and never raised, so the in-memory copy
keeps serving the current process.

Example:
    from DsasCCA.engage.credentials import CredentialStore, RedisTokenSlot

    store = CredentialStore(RedisTokenSlot(redis_client, "engage:cookie"))
    token = await store.load()
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional, Protocol

from redis import asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class TokenSlot(Protocol):
    """Durable single-slot backend for the session credential."""

    async def get(self) -> Optional[str]: ...

    async def set(self, token: str) -> None: ...

    async def delete(self) -> None: ...


class RedisTokenSlot:
    """Token slot stored under one Redis key."""

    def __init__(self, client: aioredis.Redis, key: str = "engage:cookie") -> None:
        self._client = client
        self.key = key

    async def get(self) -> Optional[str]:
        raw = await self._client.get(self.key)
        if raw is None:
            return None
        return raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)

    async def set(self, token: str) -> None:
        await self._client.set(self.key, token)

    async def delete(self) -> None:
        await self._client.delete(self.key)


class FileTokenSlot:
    """Token slot stored in a small text file."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def _read(self) -> Optional[str]:
        if not self.path.exists():
            return None
        value = self.path.read_text(encoding="utf-8").strip()
        return value or None

    def _write(self, token: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(token, encoding="utf-8")

    async def get(self) -> Optional[str]:
        return await asyncio.to_thread(self._read)

    async def set(self, token: str) -> None:
        await asyncio.to_thread(self._write, token)

    async def delete(self) -> None:
        await asyncio.to_thread(self.path.unlink, missing_ok=True)


class CredentialStore:
    """Holds the single session credential shared by every upstream call.

    Concurrent writers are not serialized: the last ``save`` wins, which is
    enough because any freshly minted credential is valid.
    """

    def __init__(self, slot: TokenSlot) -> None:
        self._slot = slot
        self._token: Optional[str] = None

    async def load(self) -> Optional[str]:
        """Return the cached credential, warming the in-memory copy on a cold start."""
        if self._token:
            return self._token
        try:
            durable = await self._slot.get()
        except (OSError, RedisError) as exc:
            logger.warning(f"Could not read durable credential: {exc}")
            return None
        if durable:
            logger.debug("Loaded credential from durable slot")
            self._token = durable
        return self._token

    async def save(self, token: str) -> None:
        if not token:
            logger.warning("Refusing to save an empty credential")
            return
        self._token = token
        try:
            await self._slot.set(token)
        except (OSError, RedisError) as exc:
            logger.error(f"Could not persist credential: {exc}")

    async def clear(self) -> None:
        self._token = None
        try:
            await self._slot.delete()
        except (OSError, RedisError) as exc:
            logger.error(f"Could not delete durable credential: {exc}")

    @property
    def cached(self) -> Optional[str]:
        """In-memory copy only; never touches the durable slot."""
        return self._token
