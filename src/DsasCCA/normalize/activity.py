"""Map raw portal rows onto the normalized :class:`Activity` schema.

The detail endpoint returns ``newRows``, each a list of ``fields``. Most values
are addressed by their ``fID``; a few only appear as a label cell followed by a
value cell, so those are read positionally.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Mapping, Optional, Sequence

from DsasCCA.normalize.models import Activity
from DsasCCA.normalize.text import clean_text, spacing, tidy_paragraph

logger = logging.getLogger(__name__)

STUDENT_LED_MARKERS = ("Student-led", "学生社团", "(SL)")

_GRADE_PATTERNS = (re.compile(r"G(\d+)-(\d+)"), re.compile(r"KG(\d+)-KG(\d+)"))

_NAME_FIXES = (
    ("（", "("),
    ("）", ")"),
    ("’", "'"),
    (".", ""),
    ("IssuesT台上的社会问题", "Issues T 台上的社会问题"),
    ("校管弦乐团(新老成员都适用", "校管弦乐团(新老成员都适用)"),
    ("))", ")"),
)


def normalize_name(raw: str) -> str:
    name = clean_text(raw)
    for old, new in _NAME_FIXES:
        name = name.replace(old, new)
    return spacing(name)


def _set_meeting(attr: str) -> Callable[[Activity, str], None]:
    def _apply(activity: Activity, value: str) -> None:
        setattr(activity.meeting, attr, value)

    return _apply


def _set_location(attr: str) -> Callable[[Activity, str], None]:
    def _apply(activity: Activity, value: str) -> None:
        setattr(activity.meeting.location, attr, value)

    return _apply


def _set_duration(attr: str) -> Callable[[Activity, str], None]:
    def _apply(activity: Activity, value: str) -> None:
        setattr(activity.duration, attr, value)

    return _apply


def _set_top(attr: str) -> Callable[[Activity, str], None]:
    def _apply(activity: Activity, value: str) -> None:
        setattr(activity, attr, value)

    return _apply


def _set_name(activity: Activity, value: str) -> None:
    activity.name = normalize_name(value)


def _set_staff(activity: Activity, value: str) -> None:
    activity.staff = value.split(", ")


FIELD_HANDLERS: dict[str, Callable[[Activity, str], None]] = {
    "academicyear": _set_top("academic_year"),
    "schedule": _set_top("schedule"),
    "category": _set_top("category"),
    "activityname": _set_name,
    "day": _set_meeting("day"),
    "start": _set_meeting("start_time"),
    "end": _set_meeting("end_time"),
    "site": _set_location("site"),
    "block": _set_location("block"),
    "room": _set_location("room"),
    "staff": _set_staff,
    "runsfrom": _set_duration("start_date"),
    "runsto": _set_duration("end_date"),
}


def _value_at(fields: Sequence[Mapping[str, Any]], index: int) -> Optional[str]:
    if index >= len(fields) or not fields[index]:
        return None
    value = fields[index].get("fData")
    return value if isinstance(value, str) else ""


def _apply_labelled(activity: Activity, label: str, fields: Sequence[Mapping[str, Any]], i: int) -> bool:
    """Handle label cells whose value lives in a following cell. Returns True if ``label`` matched."""
    if label == "Description":
        value = _value_at(fields, i + 1)
        if value is not None:
            activity.description = value
    elif label == "Name To Appear On Reports":
        value = _value_at(fields, i + 1)
        if value is not None:
            activity.staff_for_reports = value.split(", ")
    elif label == "Upload Photo":
        value = _value_at(fields, i + 1)
        if value is not None:
            activity.photo = value
    elif label == "Poor Weather Plan":
        value = _value_at(fields, i + 1)
        if value is not None:
            activity.poor_weather_plan = value
    elif label == "Activity Runs From":
        value = _value_at(fields, i + 4)
        if value is not None:
            activity.duration.is_recurring_weekly = value == "Recurring Weekly"
    elif label == "Is Pre Sign-up":
        value = _value_at(fields, i + 1)
        if value is not None:
            activity.is_pre_signup = value != ""
    elif label == "Semester Cost":
        value = _value_at(fields, i + 1)
        if value is not None:
            activity.semester_cost = value or None
    else:
        return False
    return True


def _apply_field(activity: Activity, field: Mapping[str, Any]) -> None:
    handler = FIELD_HANDLERS.get(field.get("fID", ""))
    if handler is not None:
        handler(activity, field["fData"])
    elif field["fData"] == "Recurring Weekly":
        activity.duration.is_recurring_weekly = True
    else:
        logger.debug(f"No mapping for field fID={field.get('fID')} fType={field.get('fType')}")


def parse_grades(schedule: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Extract ``(min, max)`` grades from a schedule string such as ``"G6-8 Mon"``."""
    if not schedule:
        return None, None
    for pattern in _GRADE_PATTERNS:
        match = pattern.search(schedule)
        if match:
            return str(int(match.group(1))), str(int(match.group(2)))
    logger.warning(f"Could not parse grades from schedule {schedule!r}")
    return None, None


def _post_process(activity: Activity) -> None:
    activity.description = tidy_paragraph(activity.description)
    activity.poor_weather_plan = (
        tidy_paragraph(activity.poor_weather_plan) if activity.poor_weather_plan else ""
    )
    activity.semester_cost = tidy_paragraph(activity.semester_cost) if activity.semester_cost else ""

    if activity.name:
        activity.is_student_led = any(marker in activity.name for marker in STUDENT_LED_MARKERS)

    if activity.schedule:
        activity.grades.min, activity.grades.max = parse_grades(activity.schedule)


def normalize_activity(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Convert a raw detail payload into a normalized activity record.

    Args:
        raw: Decoded inner payload of the detail endpoint

    Returns:
        camelCase record ready to be cached and served

    Raises:
        ValueError: If the payload has no ``newRows`` list
    """
    rows = raw.get("newRows")
    if not isinstance(rows, list):
        raise ValueError("Activity payload has no 'newRows' list")

    activity = Activity()
    if rows and isinstance(rows[0], Mapping) and rows[0].get("rID"):
        # rID looks like "3350:1:0:0"
        activity.id = str(rows[0]["rID"]).split(":")[0]

    for row in rows:
        fields = row.get("fields") or []
        for i, field in enumerate(fields):
            if not field or not field.get("fData"):
                continue
            if _apply_labelled(activity, field["fData"], fields, i):
                continue
            _apply_field(activity, field)

    _post_process(activity)
    return activity.to_record()
