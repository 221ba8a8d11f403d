"""Normalized activity schema.

Field names are snake_case in Python and camelCase on the wire
(``model_dump(by_alias=True)``), matching what API consumers already read.
"""

from __future__ import annotations

from typing import Any, ClassVar, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _WireModel(BaseModel):
    model_config: ClassVar[ConfigDict] = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )


class Location(_WireModel):
    block: Optional[str] = None
    room: Optional[str] = None
    site: Optional[str] = None


class Meeting(_WireModel):
    day: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    location: Location = Field(default_factory=Location)


class Duration(_WireModel):
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    is_recurring_weekly: Optional[bool] = None


class Grades(_WireModel):
    min: Optional[str] = None
    max: Optional[str] = None


class Activity(_WireModel):
    """One activity as served by the API and stored in the cache."""

    id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    photo: Optional[str] = None
    academic_year: Optional[str] = None
    category: Optional[str] = None
    is_pre_signup: Optional[bool] = None
    is_student_led: Optional[bool] = None
    materials: List[Any] = Field(default_factory=list)
    poor_weather_plan: Optional[str] = None
    requirements: List[Any] = Field(default_factory=list)
    schedule: Optional[str] = None
    semester_cost: Optional[str] = None
    staff: List[str] = Field(default_factory=list)
    staff_for_reports: List[str] = Field(default_factory=list)
    student_leaders: List[str] = Field(default_factory=list)
    duration: Duration = Field(default_factory=Duration)
    grades: Grades = Field(default_factory=Grades)
    meeting: Meeting = Field(default_factory=Meeting)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)
