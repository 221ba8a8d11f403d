"""Activity detail fetches with failure classification.

The detail endpoint is an ASP.NET script service: it answers
``{"d": "<json-encoded string>"}`` and the decoded inner payload carries an
``isError`` flag for unknown activities.

Classification:
- 400-499 → :class:`AuthenticationRejected`, raised at once (no sleep)
- network errors, 3xx/5xx, malformed payloads → retried with a linear delay,
  then surfaced as :class:`TransientFetchError`
- ``isError`` inner payload → ``None`` (a confirmed empty record)
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

import httpx

from DsasCCA.config.models import EngageConfig
from DsasCCA.engage.http import JSON_CONTENT_TYPE
from DsasCCA.engage.retry import Decision, SleepFn, linear_wait, retry_with_classifier
from DsasCCA.errors import AuthenticationRejected, MalformedResponseError, TransientFetchError

logger = logging.getLogger(__name__)


def classify_fetch_failure(exc: BaseException) -> Decision:
    """Map a failed detail request to a retry decision."""
    if isinstance(exc, AuthenticationRejected):
        return Decision.FAIL
    if isinstance(exc, (TransientFetchError, httpx.HTTPError)):
        return Decision.RETRY
    return Decision.FAIL


def decode_detail_payload(body: Any, activity_id: str) -> Optional[dict[str, Any]]:
    """Unwrap the ``d`` envelope of a detail response.

    Returns:
        The inner payload, or ``None`` when the portal flags it with ``isError``

    Raises:
        MalformedResponseError: If the envelope or inner JSON is not as expected
    """
    if not isinstance(body, dict) or not isinstance(body.get("d"), str):
        raise MalformedResponseError(
            "Detail response lacks a string 'd' field", activity_id=activity_id
        )
    try:
        inner = json.loads(body["d"])
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(
            f"Detail payload is not JSON: {exc}", activity_id=activity_id
        ) from exc
    if not isinstance(inner, dict):
        raise MalformedResponseError("Detail payload is not an object", activity_id=activity_id)
    if inner.get("isError"):
        return None
    return inner


class FetchClient:
    """Retrieves raw activity payloads with a given credential."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: EngageConfig,
        *,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._client = client
        self._config = config
        self._sleep = sleep

    async def _attempt(self, activity_id: str, token: str) -> Optional[dict[str, Any]]:
        response = await self._client.post(
            self._config.details_path,
            json={"activityID": str(activity_id)},
            headers={
                "Content-Type": JSON_CONTENT_TYPE,
                "Cookie": token,
                "X-Requested-With": "XMLHttpRequest",
            },
        )
        status = response.status_code
        if 400 <= status <= 499:
            raise AuthenticationRejected(status, activity_id=activity_id)
        if not response.is_success:
            raise TransientFetchError(
                f"Detail request answered HTTP {status}", activity_id=activity_id, status=status
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise MalformedResponseError(
                "Detail response is not JSON", activity_id=activity_id, status=status
            ) from exc
        return decode_detail_payload(body, activity_id)

    async def fetch_raw(self, activity_id: str, token: str) -> Optional[dict[str, Any]]:
        """Fetch the raw payload for ``activity_id``.

        Args:
            activity_id: Portal activity id
            token: Composite session credential

        Returns:
            Decoded payload, or ``None`` for a record the portal reports as missing

        Raises:
            AuthenticationRejected: On any 4xx answer
            TransientFetchError: When every attempt failed for another reason
        """
        try:
            result = await retry_with_classifier(
                lambda: self._attempt(activity_id, token),
                classifier=classify_fetch_failure,
                max_attempts=self._config.fetch_max_attempts,
                wait=linear_wait(self._config.fetch_backoff_step_s),
                sleep=self._sleep,
                operation=f"activity {activity_id}",
            )
        except httpx.HTTPError as exc:
            raise TransientFetchError(
                f"Detail request for activity {activity_id} failed: {exc}",
                activity_id=activity_id,
            ) from exc

        if result is None:
            logger.info(f"Portal reports no record for activity {activity_id}")
        return result
