"""
Pytest Configuration

Shared fixtures for the DSAS CCA suite: configuration objects with
credentials filled in, an in-memory Redis and a recording sleep so retry
delays can be asserted without waiting.
"""

from __future__ import annotations

import logging
from typing import List

import pytest

from DsasCCA.config.models import AppConfig, CacheConfig, EngageConfig

from tests.dsas_cca.fakes import FakeRedis


class RecordingSleep:
    """Async ``sleep`` replacement that records requested delays."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def engage_config() -> EngageConfig:
    return EngageConfig(
        base_url="https://engage.test",
        username="robot",
        password="s3cret&pw",
        fetch_backoff_step_s=1.0,
    )


@pytest.fixture
def cache_config() -> CacheConfig:
    return CacheConfig(
        min_activity_id=1,
        max_activity_id=5,
        concurrent_api_calls=2,
        club_update_interval_mins=60,
        staff_update_interval_mins=60,
        fixed_staff_activity_id="3350",
    )


@pytest.fixture
def app_config(engage_config: EngageConfig, cache_config: CacheConfig) -> AppConfig:
    return AppConfig(engage=engage_config, cache=cache_config)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture(autouse=True)
def _reset_dsas_logger():
    """Keep handlers installed by ``setup_logging`` from leaking between tests."""
    yield
    logger = logging.getLogger("DsasCCA")
    for handler in list(logger.handlers):
        if getattr(handler, "_dsas_managed", False):
            logger.removeHandler(handler)
            handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
