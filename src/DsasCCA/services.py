"""Wiring of the runtime object graph from an :class:`AppConfig`.

The HTTP server and the CLI both build the same graph: one HTTPX client, one
Redis client, the credential store, the fetch orchestrator, the reconciler
with its semaphore, and the background scheduler.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from redis import asyncio as aioredis

from DsasCCA.cache.reconcile import CacheReconciler
from DsasCCA.cache.scheduler import BackgroundScheduler
from DsasCCA.cache.store import RedisCacheStore, build_redis_client
from DsasCCA.config.models import AppConfig
from DsasCCA.engage.auth import Authenticator
from DsasCCA.engage.client import FetchClient
from DsasCCA.engage.credentials import CredentialStore, FileTokenSlot, RedisTokenSlot, TokenSlot
from DsasCCA.engage.fetcher import FetchOrchestrator
from DsasCCA.engage.http import build_http_client
from DsasCCA.engage.probe import ValidityProber
from DsasCCA.storage.s3_store import AssetStore, build_asset_store

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a running process needs, closed together."""

    config: AppConfig
    http_client: httpx.AsyncClient
    redis_client: aioredis.Redis
    cache: RedisCacheStore
    credentials: CredentialStore
    fetcher: FetchOrchestrator
    reconciler: CacheReconciler
    scheduler: BackgroundScheduler
    assets: Optional[AssetStore] = None

    @property
    def username(self) -> Optional[str]:
        return self.config.engage.username

    @property
    def password(self) -> str:
        return self.config.engage.password_value()

    async def aclose(self) -> None:
        if self.scheduler.running:
            await self.scheduler.stop()
        await self.http_client.aclose()
        await self.cache.close()
        logger.info("Services closed")


def _token_slot(config: AppConfig, redis_client: aioredis.Redis) -> TokenSlot:
    if config.engage.token_store == "file":
        return FileTokenSlot(config.engage.token_file_path)
    return RedisTokenSlot(redis_client, config.redis.token_key)


def build_services(
    config: AppConfig,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    redis_client: Any = None,
    assets: Optional[AssetStore] = None,
    limiter: Optional[asyncio.Semaphore] = None,
    bootstrap: bool = True,
) -> Services:
    """Build the runtime graph.

    Args:
        config: Validated application config
        transport: HTTPX transport override (tests)
        redis_client: Redis client override (tests)
        assets: Asset store override; built from ``config.object_store`` when omitted
        limiter: Shared semaphore; sized from ``cache.concurrent_api_calls`` when omitted
        bootstrap: Whether the scheduler populates the cache when started

    Returns:
        Services container
    """
    http_client = build_http_client(config.engage, transport=transport)
    redis_client = redis_client if redis_client is not None else build_redis_client(
        config.redis.url, config.redis.socket_timeout_s
    )
    cache = RedisCacheStore(
        redis_client,
        activity_key_prefix=config.redis.activity_key_prefix,
        staff_key=config.redis.staff_key,
        scan_count=config.redis.scan_count,
    )
    credentials = CredentialStore(_token_slot(config, redis_client))
    fetcher = FetchOrchestrator(
        credentials,
        Authenticator(http_client, config.engage),
        ValidityProber(http_client, config.engage),
        FetchClient(http_client, config.engage),
    )
    if assets is None:
        assets = build_asset_store(config.object_store)
    reconciler = CacheReconciler(
        fetcher,
        cache,
        config.cache,
        limiter=limiter or asyncio.Semaphore(config.cache.concurrent_api_calls),
        username=config.engage.username,
        password=config.engage.password_value(),
        assets=assets,
    )
    scheduler = BackgroundScheduler(reconciler, config.cache, bootstrap=bootstrap)
    return Services(
        config=config,
        http_client=http_client,
        redis_client=redis_client,
        cache=cache,
        credentials=credentials,
        fetcher=fetcher,
        reconciler=reconciler,
        scheduler=scheduler,
        assets=assets,
    )
