"""Redis cache, reconciliation engine and its background scheduler."""

from .reconcile import CacheReconciler, CleanupReport
from .scheduler import BackgroundScheduler
from .store import RedisCacheStore, build_redis_client

__all__ = [
    "BackgroundScheduler",
    "CacheReconciler",
    "CleanupReport",
    "RedisCacheStore",
    "build_redis_client",
]
