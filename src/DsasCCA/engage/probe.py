"""Credential validity probe."""

from __future__ import annotations

import asyncio
import logging

import httpx

from DsasCCA.config.models import EngageConfig
from DsasCCA.engage.http import JSON_CONTENT_TYPE
from DsasCCA.engage.retry import Decision, SleepFn, retry_with_classifier

logger = logging.getLogger(__name__)


class ProbeRejected(Exception):
    """Non-2xx answer to a probe request."""

    def __init__(self, status: int) -> None:
        super().__init__(f"Probe answered HTTP {status}")
        self.status = status


def _classify_probe_failure(exc: BaseException) -> Decision:
    if isinstance(exc, (httpx.HTTPError, ProbeRejected)):
        return Decision.RETRY
    return Decision.FAIL


class ValidityProber:
    """Decides whether the portal still accepts a credential.

    The probe posts a detail request for a known activity and treats any 2xx
    answer as proof of validity. Network errors and non-2xx answers are
    retried without backoff; every failure mode collapses to ``False``.
    """

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

    async def _probe_once(self, token: str) -> None:
        response = await self._client.post(
            self._config.details_path,
            json={"activityID": self._config.probe_activity_id},
            headers={"Content-Type": JSON_CONTENT_TYPE, "Cookie": token},
        )
        if not response.is_success:
            raise ProbeRejected(response.status_code)

    async def is_valid(self, token: str | None) -> bool:
        if not token:
            return False
        logger.debug("Testing credential validity")
        try:
            await retry_with_classifier(
                lambda: self._probe_once(token),
                classifier=_classify_probe_failure,
                max_attempts=self._config.probe_max_attempts,
                sleep=self._sleep,
                operation="probe",
            )
        except (httpx.HTTPError, ProbeRejected) as exc:
            logger.warning(f"Credential probe failed after retries: {exc}")
            return False
        except Exception as exc:
            logger.warning(f"Credential probe could not be sent: {exc}")
            return False
        logger.debug("Credential probe succeeded")
        return True
