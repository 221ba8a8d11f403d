"""Resilient activity fetch composed from the credential, login, probe and fetch layers.

Credential lifecycle for one :meth:`FetchOrchestrator.fetch` call::

    force_login ──► clear ──► no-token ──login──► validated ──fetch──► payload
                               ▲                      │
    cached token ──probe ok────┼──────────────────────┘
         │                     │
         └──probe fails──► clear

    fetch rejected (4xx) ──► clear ──► one re-login ──► one re-fetch ──► payload | None

A call performs at most two logins and two fetches. Every failure collapses to
``None`` for the caller.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from DsasCCA.engage.auth import Authenticator
from DsasCCA.engage.client import FetchClient
from DsasCCA.engage.credentials import CredentialStore
from DsasCCA.engage.probe import ValidityProber
from DsasCCA.errors import AuthenticationFailure, AuthenticationRejected, TransientFetchError

logger = logging.getLogger(__name__)


class FetchOrchestrator:
    """Single entry point for fetching raw activity payloads from the portal."""

    def __init__(
        self,
        store: CredentialStore,
        authenticator: Authenticator,
        prober: ValidityProber,
        client: FetchClient,
    ) -> None:
        self.store = store
        self._authenticator = authenticator
        self._prober = prober
        self._client = client

    async def _login(self, username: str, password: str) -> Optional[str]:
        try:
            token = await self._authenticator.login(username, password)
        except AuthenticationFailure as exc:
            logger.error(f"Login failed ({exc.stage}): {exc}")
            return None
        await self.store.save(token)
        return token

    async def _resolve_token(
        self, username: str, password: str, force_login: bool
    ) -> Optional[str]:
        if force_login:
            logger.info("Forced login requested; discarding cached credential")
            await self.store.clear()
            return await self._login(username, password)

        token = await self.store.load()
        if token:
            if await self._prober.is_valid(token):
                return token
            logger.info("Cached credential failed the validity probe")
            await self.store.clear()
        return await self._login(username, password)

    async def _fetch_after_rejection(
        self, activity_id: str, username: str, password: str
    ) -> Optional[dict[str, Any]]:
        token = await self._login(username, password)
        if token is None:
            return None
        try:
            return await self._client.fetch_raw(activity_id, token)
        except AuthenticationRejected as exc:
            logger.error(f"Fresh credential rejected for activity {activity_id}: HTTP {exc.status}")
            await self.store.clear()
        except TransientFetchError as exc:
            logger.error(f"Retry after re-login failed for activity {activity_id}: {exc}")
        return None

    async def fetch(
        self,
        activity_id: str,
        username: str,
        password: str,
        force_login: bool = False,
    ) -> Optional[dict[str, Any]]:
        """Fetch the raw payload for ``activity_id``.

        Args:
            activity_id: Portal activity id
            username: Portal username
            password: Portal password
            force_login: Discard the cached credential before fetching

        Returns:
            Raw payload, or ``None`` when the record is empty or could not be fetched
        """
        activity_id = str(activity_id)
        token = await self._resolve_token(username, password, force_login)
        if token is None:
            logger.warning(f"No usable credential; activity {activity_id} not fetched")
            return None

        try:
            return await self._client.fetch_raw(activity_id, token)
        except AuthenticationRejected as exc:
            logger.warning(
                f"Credential rejected (HTTP {exc.status}) for activity {activity_id}; "
                "re-authenticating once"
            )
            await self.store.clear()
            return await self._fetch_after_rejection(activity_id, username, password)
        except TransientFetchError as exc:
            logger.error(f"Fetch failed for activity {activity_id}: {exc}")
            return None
