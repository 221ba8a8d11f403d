"""Two-step login handshake against the portal's ASP.NET forms authentication.

Step 1 fetches the login page to obtain an ``ASP.NET_SessionId`` cookie.
Step 2 posts the login form with that session and reads the
``.ASPXFORMSAUTH`` assertion from the response's Set-Cookie headers. The
resulting credential is ``"<session cookie>; <forms cookie>"``.
"""

from __future__ import annotations

import logging
from importlib import resources
from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import quote_plus

import httpx

from DsasCCA.config.models import EngageConfig
from DsasCCA.errors import AuthenticationFailure

logger = logging.getLogger(__name__)

SESSION_COOKIE = "ASP.NET_SessionId"
FORMS_AUTH_COOKIE = ".ASPXFORMSAUTH"


def load_login_template(path: Optional[str] = None) -> str:
    """Return the login form body template.

    Args:
        path: Template file; the packaged ``login_template.txt`` when omitted

    Raises:
        FileNotFoundError: If ``path`` does not exist
    """
    if path:
        return Path(path).read_text(encoding="utf-8").strip()
    return (
        resources.files("DsasCCA.engage")
        .joinpath("login_template.txt")
        .read_text(encoding="utf-8")
        .strip()
    )


def render_login_form(template: str, username: str, password: str) -> str:
    """Interpolate form-encoded credentials into the login template."""
    return template.replace("{{USERNAME}}", quote_plus(username)).replace(
        "{{PASSWORD}}", quote_plus(password)
    )


def extract_session_cookie(set_cookie_headers: Iterable[str]) -> Optional[str]:
    """Return ``ASP.NET_SessionId=<value>`` from the first matching header."""
    for header in set_cookie_headers:
        candidate = header.strip()
        if candidate.startswith(f"{SESSION_COOKIE}="):
            fragment = candidate.split(";", 1)[0]
            return fragment or None
    return None


def extract_forms_auth_cookie(set_cookie_headers: Iterable[str]) -> Optional[str]:
    """Return the last non-empty ``.ASPXFORMSAUTH=<value>`` fragment.

    The portal can issue the cookie more than once in a single response,
    blanking it before setting the real value, so the scan runs from the
    last header backwards and skips empty values.
    """
    candidates = [
        header.strip()
        for header in set_cookie_headers
        if header.strip().startswith(f"{FORMS_AUTH_COOKIE}=")
    ]
    for candidate in reversed(candidates):
        fragment = candidate.split(";", 1)[0]
        value = fragment.split("=", 1)[1] if "=" in fragment else ""
        if value:
            return fragment
    return None


class Authenticator:
    """Produces fresh portal credentials from a username and password."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: EngageConfig,
        *,
        template: Optional[str] = None,
    ) -> None:
        self._client = client
        self._config = config
        self._template = template if template is not None else load_login_template(
            config.login_template_path
        )

    @property
    def login_url(self) -> str:
        return f"{self._config.base_url.rstrip('/')}{self._config.login_path}"

    async def _request_session_id(self) -> str:
        # Credentials travel in explicit Cookie headers; a jar left over from
        # an earlier login would make the portal reuse the old session.
        self._client.cookies.clear()
        try:
            response = await self._client.get(self._config.login_path)
        except httpx.HTTPError as exc:
            raise AuthenticationFailure(
                f"Login page request failed: {exc}", stage="session"
            ) from exc

        session_cookie = extract_session_cookie(response.headers.get_list("set-cookie"))
        if not session_cookie:
            raise AuthenticationFailure(
                f"No {SESSION_COOKIE} cookie in login page response",
                stage="session",
                status=response.status_code,
            )
        logger.debug(f"{SESSION_COOKIE} created")
        return session_cookie

    async def _submit_login_form(self, session_cookie: str, username: str, password: str) -> str:
        body = render_login_form(self._template, username, password)
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Cookie": session_cookie,
            "Referer": self.login_url,
        }
        try:
            response = await self._client.post(
                self._config.login_path, content=body.encode("utf-8"), headers=headers
            )
        except httpx.HTTPError as exc:
            raise AuthenticationFailure(
                f"Login form submission failed: {exc}", stage="login"
            ) from exc

        if not 200 <= response.status_code < 400:
            raise AuthenticationFailure(
                f"Login form rejected with HTTP {response.status_code}",
                stage="login",
                status=response.status_code,
            )

        forms_cookie = extract_forms_auth_cookie(response.headers.get_list("set-cookie"))
        if not forms_cookie:
            raise AuthenticationFailure(
                f"No non-empty {FORMS_AUTH_COOKIE} cookie after login",
                stage="login",
                status=response.status_code,
            )
        logger.debug(f"{FORMS_AUTH_COOKIE} obtained")
        return forms_cookie

    async def login(self, username: str, password: str) -> str:
        """Run the full handshake and return the composite credential.

        Raises:
            AuthenticationFailure: If either step fails to yield its cookie
        """
        if not username or not password:
            raise AuthenticationFailure("Username and password are required", stage="input")
        session_cookie = await self._request_session_id()
        forms_cookie = await self._submit_login_form(session_cookie, username, password)
        logger.info("Logged in to the portal")
        return f"{session_cookie}; {forms_cookie}"
