"""Bookkeeping fields and predicates for cached entries."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Optional, Set

LAST_CHECK = "lastCheck"
SOURCE = "source"
ERROR = "error"
CACHE = "cache"

SOURCE_API_FETCH_EMPTY = "api-fetch-empty"
ERROR_FETCH_OR_PROCESS = "Failed to fetch or process"

BOOKKEEPING_FIELDS = frozenset({LAST_CHECK, CACHE, SOURCE})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a ``Z`` suffix."""
    utc = moment.astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def empty_marker(moment: datetime) -> dict[str, Any]:
    return {LAST_CHECK: format_timestamp(moment), SOURCE: SOURCE_API_FETCH_EMPTY}


def error_marker(moment: datetime) -> dict[str, Any]:
    return {LAST_CHECK: format_timestamp(moment), ERROR: ERROR_FETCH_OR_PROCESS}


def is_error(entry: Optional[Mapping[str, Any]]) -> bool:
    return bool(entry) and ERROR in entry


def is_empty_source(entry: Optional[Mapping[str, Any]]) -> bool:
    return bool(entry) and entry.get(SOURCE) == SOURCE_API_FETCH_EMPTY


def has_payload(entry: Optional[Mapping[str, Any]]) -> bool:
    """True when the entry holds fields beyond ``lastCheck``/``cache``/``source``."""
    return bool(entry) and any(key not in BOOKKEEPING_FIELDS for key in entry)


def is_servable(entry: Optional[Mapping[str, Any]]) -> bool:
    """A normal record: not an error, not a confirmed-empty marker, with payload."""
    return has_payload(entry) and not is_error(entry) and not is_empty_source(entry)


def needs_initial_fetch(entry: Optional[Mapping[str, Any]]) -> bool:
    """Missing, ``{}``, never checked, or errored."""
    return not entry or LAST_CHECK not in entry or ERROR in entry


def is_stale(
    entry: Optional[Mapping[str, Any]], max_age: timedelta, now: datetime
) -> bool:
    """Missing, empty, errored, unparseable, or older than ``max_age``."""
    if not entry or ERROR in entry:
        return True
    last_check = parse_timestamp(entry.get(LAST_CHECK))
    if last_check is None:
        return True
    return now - last_check > max_age


def collect_referenced_urls(
    entries: Iterable[Optional[Mapping[str, Any]]], public_base: str
) -> Set[str]:
    """Photo URLs under ``public_base`` referenced by normal (non-marker) records."""
    referenced: Set[str] = set()
    if not public_base:
        return referenced
    for entry in entries:
        if not entry or is_error(entry) or is_empty_source(entry):
            continue
        photo = entry.get("photo")
        if isinstance(photo, str) and photo.startswith(public_base):
            referenced.add(photo)
    return referenced
