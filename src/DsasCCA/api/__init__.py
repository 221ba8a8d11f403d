"""HTTP API over the activity cache."""

from .app import create_app

__all__ = ["create_app"]
