from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Literal, Optional, Tuple, Union

Frequency = Literal["daily", "weekly", "monthly", "yearly"]
MonthlyMode = Literal["fixed_date", "nth_weekday"]
BoundaryMode = Literal["unbounded", "until", "count"]
WeekOfMonth = Union[int, Literal["second_last", "last"]]

FREQUENCIES: Tuple[str, ...] = ("daily", "weekly", "monthly", "yearly")
MONTHLY_MODES: Tuple[str, ...] = ("fixed_date", "nth_weekday")
BOUNDARY_MODES: Tuple[str, ...] = ("unbounded", "until", "count")
RELATIVE_WEEKS: Tuple[str, ...] = ("second_last", "last")

# 0 = Sunday, matching the stored weekday convention.
DAY_NAMES: Tuple[str, ...] = (
    "Sunday",
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
)


def sunday_based_weekday(value: date) -> int:
    """Weekday of ``value`` with Sunday as 0."""
    return (value.weekday() + 1) % 7


@dataclass(frozen=True)
class RecurrencePattern:
    """Structured description of a repeating schedule."""

    frequency: Frequency
    interval: int = 1
    weekly_day_of_week: Optional[int] = None
    monthly_mode: Optional[MonthlyMode] = None
    day_of_month: Optional[int] = None
    week_of_month: Optional[WeekOfMonth] = None
    day_of_week: Optional[int] = None
    explicit_rule: Optional[str] = None
    boundary_mode: BoundaryMode = "unbounded"
    until_date: Optional[date] = None
    count: Optional[int] = None

    def is_bounded(self) -> bool:
        return self.boundary_mode != "unbounded"


@dataclass(frozen=True)
class Occurrence:
    sequence_number: int
    date: datetime


@dataclass(frozen=True)
class PhaseAllocation:
    """A phase or milestone as seen by the consistency rules."""

    id: str = ""
    name: str = ""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    allocated_hours: float = 0.0
    is_recurring_template: bool = False
    due_date: Optional[date] = None
    recurrence: Optional[RecurrencePattern] = None

    @property
    def effective_date(self) -> Optional[date]:
        return self.end_date or self.due_date

    def duration(self):
        if self.start_date is None or self.effective_date is None:
            return None
        return self.effective_date - self.start_date


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()

    @classmethod
    def from_messages(cls, errors, warnings=()) -> "ValidationResult":
        errors = tuple(errors)
        return cls(is_valid=not errors, errors=errors, warnings=tuple(warnings))


@dataclass(frozen=True)
class PlanningConfig:
    project_start: date
    project_end: Optional[date]
    budget_hours: float
    continuous: bool = False
    today: Optional[date] = None
    max_occurrences: Optional[int] = None
    target_utilization: float = 0.9
    logging_level: str = "INFO"
    project_name: str = ""

    def window_end(self) -> Optional[date]:
        return None if self.continuous else self.project_end
