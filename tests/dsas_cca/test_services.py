"""Tests for runtime wiring."""

from __future__ import annotations

import asyncio

import pytest
from redis.exceptions import RedisError

from DsasCCA.engage.credentials import FileTokenSlot, RedisTokenSlot
from DsasCCA.services import build_services

from tests.dsas_cca.fakes import FakeRedis


class TestBuildServices:
    def test_redis_token_slot_by_default(self, app_config, fake_redis):
        services = build_services(app_config, redis_client=fake_redis)
        assert isinstance(services.credentials._slot, RedisTokenSlot)
        assert services.assets is None
        assert services.reconciler.limiter._value == app_config.cache.concurrent_api_calls

    def test_file_token_slot(self, app_config, fake_redis, tmp_path):
        config = app_config.model_copy(deep=True)
        config.engage.token_store = "file"
        config.engage.token_file_path = str(tmp_path / "cookies.txt")
        services = build_services(config, redis_client=fake_redis)
        assert isinstance(services.credentials._slot, FileTokenSlot)

    def test_shared_limiter(self, app_config, fake_redis):
        limiter = asyncio.Semaphore(1)
        services = build_services(app_config, redis_client=fake_redis, limiter=limiter)
        assert services.reconciler.limiter is limiter

    def test_aclose_closes_clients(self, app_config):
        redis = FakeRedis()
        services = build_services(app_config, redis_client=redis, bootstrap=False)
        asyncio.run(services.aclose())
        assert redis.closed
        assert services.http_client.is_closed

    def test_check_connection_failure_raises(self, app_config):
        services = build_services(app_config, redis_client=FakeRedis(fail=True))
        with pytest.raises(RedisError):
            asyncio.run(services.cache.check_connection())
