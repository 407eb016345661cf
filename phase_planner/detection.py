from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, List, Literal, Optional, Sequence, Tuple, Union

from .models import PhaseAllocation, RecurrencePattern, sunday_based_weekday

Confidence = Literal["low", "medium", "high"]

_SERIES_SUFFIX = re.compile(r"\s\d+$")
DEFAULT_SERIES_NAME = "Recurring Phase"


@dataclass(frozen=True)
class DetectedPattern:
    """Pattern inferred from concrete dates.

    Only the first two dates decide the pattern. ``consistent`` reports whether every
    later gap agrees with it; callers that need certainty should check it.
    """

    pattern: RecurrencePattern
    confidence: Confidence
    consistent: bool
    sample_size: int


def _as_date(value: Union[date, datetime]) -> date:
    return value.date() if isinstance(value, datetime) else value


def _classify(delta_days: int) -> Tuple[str, int]:
    if delta_days == 1:
        return "daily", 1
    if delta_days == 7:
        return "weekly", 1
    if 28 <= delta_days <= 31:
        return "monthly", 1
    if delta_days % 7 == 0:
        return "weekly", delta_days // 7
    if 365 <= delta_days <= 366:
        return "yearly", 1
    return "daily", delta_days


def _pattern_for(frequency: str, interval: int, first: date) -> RecurrencePattern:
    if frequency == "weekly":
        return RecurrencePattern(frequency, interval, weekly_day_of_week=sunday_based_weekday(first))
    if frequency == "monthly":
        return RecurrencePattern(frequency, interval, monthly_mode="fixed_date", day_of_month=first.day)
    return RecurrencePattern(frequency, interval)


def detect_pattern(sorted_dates: Sequence[Union[date, datetime]]) -> Optional[DetectedPattern]:
    """Infer a recurrence pattern from ascending, distinct dates.

    Returns ``None`` when nothing can be inferred (no dates, or a zero gap).
    """
    days: List[date] = [_as_date(value) for value in sorted_dates]
    if not days:
        return None
    if len(days) == 1:
        return DetectedPattern(
            pattern=_pattern_for("weekly", 1, days[0]),
            confidence="low",
            consistent=True,
            sample_size=1,
        )
    first_delta = (days[1] - days[0]).days
    if first_delta <= 0:
        return None
    frequency, interval = _classify(first_delta)
    later = [(current - previous).days for previous, current in zip(days[1:], days[2:])]
    consistent = all(_classify(delta) == (frequency, interval) for delta in later if delta > 0) and all(
        delta > 0 for delta in later
    )
    if not later:
        confidence: Confidence = "medium"
    elif consistent:
        confidence = "high"
    else:
        confidence = "low"
    return DetectedPattern(
        pattern=_pattern_for(frequency, interval, days[0]),
        confidence=confidence,
        consistent=consistent,
        sample_size=len(days),
    )


def split_series_name(name: str) -> Tuple[str, Optional[int]]:
    """Split "Weekly sync 3" into ("Weekly sync", 3)."""
    match = _SERIES_SUFFIX.search(name or "")
    if not match:
        return name, None
    return name[: match.start()], int(match.group().strip())


def detect_series(phases: Iterable[PhaseAllocation]) -> Optional[Tuple[str, DetectedPattern]]:
    """Detect a legacy numbered series ("Standup 1", "Standup 2", ...) among ``phases``.

    Needs at least two numbered phases with an effective date.
    """
    numbered = [
        phase
        for phase in phases
        if phase.effective_date is not None and split_series_name(phase.name)[1] is not None
    ]
    if len(numbered) < 2:
        return None
    numbered.sort(key=lambda phase: phase.effective_date)
    detected = detect_pattern(sorted({phase.effective_date for phase in numbered}))
    if detected is None:
        return None
    base_name = split_series_name(numbered[0].name)[0] or DEFAULT_SERIES_NAME
    return base_name, detected
