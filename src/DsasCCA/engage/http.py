"""HTTPX client factory for the Engage portal.

One ``httpx.AsyncClient`` is shared by the authenticator, the validity prober
and the fetch client. Redirects are never followed automatically: the login
form answers with a 302 whose Set-Cookie headers are the whole point of the
request.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from DsasCCA.config.models import EngageConfig
from DsasCCA.logging_utils import mask_cookie_values

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json; charset=UTF-8"


async def _on_response(response: httpx.Response) -> None:
    request = response.request
    logger.debug(
        f"{request.method} {request.url.path} -> {response.status_code} "
        f"(cookie={mask_cookie_values(request.headers.get('Cookie', '-'))})"
    )


def build_http_client(
    config: EngageConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Build the shared async client for the portal.

    Args:
        config: Upstream portal settings
        transport: Optional transport override (``httpx.MockTransport`` in tests)

    Returns:
        Configured ``httpx.AsyncClient``
    """
    client = httpx.AsyncClient(
        base_url=config.base_url,
        transport=transport,
        timeout=httpx.Timeout(config.timeout_s),
        limits=httpx.Limits(max_connections=64, max_keepalive_connections=16),
        headers={"User-Agent": config.user_agent, "Accept": "*/*"},
        follow_redirects=False,
    )
    client.event_hooks["response"] = [_on_response]
    logger.debug(f"HTTPX client created for {config.base_url}")
    return client
