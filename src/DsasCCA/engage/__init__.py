"""Client side of the legacy Engage portal: credentials, login, probing and fetches."""

from .auth import Authenticator, load_login_template
from .client import FetchClient
from .credentials import CredentialStore, FileTokenSlot, RedisTokenSlot
from .fetcher import FetchOrchestrator
from .http import build_http_client
from .probe import ValidityProber

__all__ = [
    "Authenticator",
    "CredentialStore",
    "FetchClient",
    "FetchOrchestrator",
    "FileTokenSlot",
    "RedisTokenSlot",
    "ValidityProber",
    "build_http_client",
    "load_login_template",
]
