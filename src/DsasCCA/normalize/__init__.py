"""Normalizers turning raw portal payloads into cached records."""

from .activity import normalize_activity, parse_grades
from .models import Activity
from .staff import normalize_staff
from .text import clean_text, spacing

__all__ = [
    "Activity",
    "clean_text",
    "normalize_activity",
    "normalize_staff",
    "parse_grades",
    "spacing",
]
