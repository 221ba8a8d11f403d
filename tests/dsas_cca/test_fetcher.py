"""Tests for the credential state machine around activity fetches."""

from __future__ import annotations

import asyncio

import httpx

from DsasCCA.engage.auth import Authenticator
from DsasCCA.engage.client import FetchClient
from DsasCCA.engage.credentials import CredentialStore, RedisTokenSlot
from DsasCCA.engage.fetcher import FetchOrchestrator
from DsasCCA.engage.http import build_http_client
from DsasCCA.engage.probe import ValidityProber

from tests.dsas_cca.fakes import (
    FakeRedis,
    PortalRecorder,
    detail_body,
    good_login_scripts,
    set_cookie_response,
)

FRESH = "ASP.NET_SessionId=sess1; .ASPXFORMSAUTH=auth1"
PAYLOAD = {"newRows": [{"rID": "42:1:0:0", "fields": []}]}


def _run_fetch(engage_config, recorder, redis, sleep, *, force_login=False, activity_id="42"):
    async def _run():
        client = build_http_client(engage_config, transport=recorder.transport())
        store = CredentialStore(RedisTokenSlot(redis))
        orchestrator = FetchOrchestrator(
            store,
            Authenticator(client, engage_config),
            ValidityProber(client, engage_config, sleep=sleep),
            FetchClient(client, engage_config, sleep=sleep),
        )
        try:
            result = await orchestrator.fetch(
                activity_id, "robot", "s3cret&pw", force_login=force_login
            )
            return result, store.cached
        finally:
            await client.aclose()

    return asyncio.run(_run())


def _fetch_requests(recorder):
    """Detail requests that carried the X-Requested-With header (fetches, not probes)."""
    return [r for r in recorder.requests if "X-Requested-With" in r.headers]


class TestFetchOrchestrator:
    """Token resolution and the single re-authentication cycle."""

    def test_cold_start_logs_in_and_fetches(self, engage_config, sleep):
        """No token anywhere: login, persist, fetch."""
        redis = FakeRedis()
        recorder = PortalRecorder(
            **good_login_scripts(), details=[httpx.Response(200, json=detail_body(PAYLOAD))]
        )
        result, cached = _run_fetch(engage_config, recorder, redis, sleep)

        assert result == PAYLOAD
        assert cached == FRESH
        assert redis.data["engage:cookie"] == FRESH
        assert recorder.logins == 1
        assert _fetch_requests(recorder)[0].headers["Cookie"] == FRESH

    def test_valid_cached_token_skips_login(self, engage_config, sleep):
        """A token that passes the probe is used as-is."""
        redis = FakeRedis({"engage:cookie": "cached-token"})
        recorder = PortalRecorder(details=[httpx.Response(200, json=detail_body(PAYLOAD))])
        result, cached = _run_fetch(engage_config, recorder, redis, sleep)

        assert result == PAYLOAD
        assert cached == "cached-token"
        assert recorder.logins == 0

    def test_invalid_cached_token_is_replaced(self, engage_config, sleep):
        """A token failing the probe is discarded and a fresh login happens."""
        redis = FakeRedis({"engage:cookie": "stale"})
        recorder = PortalRecorder(
            **good_login_scripts(),
            details=[
                httpx.Response(401),
                httpx.Response(401),
                httpx.Response(401),
                httpx.Response(200, json=detail_body(PAYLOAD)),
            ],
        )
        result, cached = _run_fetch(engage_config, recorder, redis, sleep)

        assert result == PAYLOAD
        assert cached == FRESH
        assert recorder.logins == 1

    def test_forced_login_failure_returns_absent(self, engage_config, sleep):
        """Auth down with force_login: absent, no fetch, store left empty."""
        redis = FakeRedis({"engage:cookie": "old"})
        recorder = PortalRecorder(login_get=[httpx.Response(503)])
        result, cached = _run_fetch(engage_config, recorder, redis, sleep, force_login=True)

        assert result is None
        assert cached is None
        assert "engage:cookie" not in redis.data
        assert recorder.detail_calls == 0

    def test_double_rejection_empties_store(self, engage_config, sleep):
        """Probe ok, fetch 401, re-login, re-fetch 401: absent and no token left."""
        redis = FakeRedis({"engage:cookie": "cached-token"})
        recorder = PortalRecorder(
            **good_login_scripts(),
            details=[
                httpx.Response(200, json=detail_body({})),
                httpx.Response(401),
                httpx.Response(401),
            ],
        )
        result, cached = _run_fetch(engage_config, recorder, redis, sleep)

        assert result is None
        assert cached is None
        assert "engage:cookie" not in redis.data
        assert recorder.logins == 1
        fetches = _fetch_requests(recorder)
        assert len(fetches) == 2
        assert fetches[0].headers["Cookie"] == "cached-token"
        assert fetches[1].headers["Cookie"] == FRESH
        assert sleep.calls == []

    def test_rejection_then_success_after_relogin(self, engage_config, sleep):
        """One rejection is healed by exactly one re-login."""
        redis = FakeRedis({"engage:cookie": "cached-token"})
        recorder = PortalRecorder(
            **good_login_scripts(),
            details=[
                httpx.Response(200, json=detail_body({})),
                httpx.Response(403),
                httpx.Response(200, json=detail_body(PAYLOAD)),
            ],
        )
        result, cached = _run_fetch(engage_config, recorder, redis, sleep)

        assert result == PAYLOAD
        assert cached == FRESH
        assert recorder.logins == 1

    def test_call_is_bounded(self, engage_config, sleep):
        """Worst case: at most two logins and two fetch cycles per call."""
        redis = FakeRedis({"engage:cookie": "stale"})
        recorder = PortalRecorder(
            login_get=[set_cookie_response(200, ["ASP.NET_SessionId=s; path=/"])],
            login_post=[set_cookie_response(302, [".ASPXFORMSAUTH=a; path=/"])],
            details=[httpx.Response(401)],
        )
        result, _ = _run_fetch(engage_config, recorder, redis, sleep)

        assert result is None
        assert recorder.logins <= 2
        assert len(_fetch_requests(recorder)) <= 2

    def test_transient_failure_returns_absent(self, engage_config, sleep):
        """Exhausted retries collapse to absent without re-login."""
        redis = FakeRedis({"engage:cookie": "cached-token"})
        recorder = PortalRecorder(
            details=[httpx.Response(200, json=detail_body({})), httpx.Response(500)]
        )
        result, cached = _run_fetch(engage_config, recorder, redis, sleep)

        assert result is None
        assert cached == "cached-token"
        assert recorder.logins == 0
        assert len(_fetch_requests(recorder)) == 3
