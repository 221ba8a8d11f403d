"""Error taxonomy for the Engage caching proxy.

Responsibilities
----------------
- Define the exceptions raised at the network boundary (login, credential
  probing, detail fetches) so raw transport errors never travel further than
  the component that issued the request.
- Carry enough metadata (HTTP status, activity id) for log lines and for the
  HTTP layer to map outcomes onto deterministic status codes.

Design Notes
------------
- "Upstream returned nothing" is not an exception. It is represented by a
  ``None`` fetch result and persisted as the ``api-fetch-empty`` source marker.
- Exceptions chain their cause (``raise ... from exc``) so the final transport
  error remains visible in logs.
"""

from __future__ import annotations

from typing import Any

__all__ = (
    "EngageError",
    "AuthenticationFailure",
    "AuthenticationRejected",
    "TransientFetchError",
    "MalformedResponseError",
    "ProcessingError",
    "ConfigurationError",
)


class EngageError(Exception):
    """Base class for all errors raised by the caching proxy."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.details = details or {}


class AuthenticationFailure(EngageError):
    """Raised when the login sequence cannot produce a session credential."""

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        status: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details=details)
        self.stage = stage
        self.status = status


class AuthenticationRejected(EngageError):
    """Raised when the portal refuses a credential in the middle of a fetch."""

    def __init__(self, status: int, *, activity_id: str | None = None):
        super().__init__(f"Credential rejected with HTTP {status}")
        self.status = status
        self.activity_id = activity_id


class TransientFetchError(EngageError):
    """Raised when a detail fetch keeps failing after its retry budget."""

    def __init__(
        self,
        message: str,
        *,
        activity_id: str | None = None,
        status: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details=details)
        self.activity_id = activity_id
        self.status = status


class MalformedResponseError(TransientFetchError):
    """Raised when the detail endpoint answers with an unexpected payload shape."""


class ProcessingError(EngageError):
    """Raised when a fetched record cannot be normalized or its assets stored."""

    def __init__(self, message: str, *, activity_id: str | None = None):
        super().__init__(message)
        self.activity_id = activity_id


class ConfigurationError(EngageError):
    """Raised when a required setting (credentials, staff activity id) is missing."""

    def __init__(self, message: str, *, setting: str | None = None):
        super().__init__(message)
        self.setting = setting
