"""
Schedule consistency rules for project phases.

Every check returns a result object; business-rule violations are reported, never
raised. Dates are compared at day granularity.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from .models import PhaseAllocation, ValidationResult
from .recurrence import Clock, Expansion, compile_rule, expand

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DateConflict:
    has_conflict: bool
    message: Optional[str] = None
    conflicting_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CascadeResult:
    """Outcome of moving one phase and pushing its successors."""

    phases: Tuple[PhaseAllocation, ...]
    adjusted_ids: Tuple[str, ...] = ()
    shifted_ids: Tuple[str, ...] = ()
    project_end: Optional[date] = None
    warnings: Tuple[str, ...] = ()


@dataclass(frozen=True)
class BudgetCheck:
    is_valid: bool
    total_allocated: float
    budget: float
    remaining: float
    overage: float
    utilization_percentage: float
    recurring_occurrences: int = 0


@dataclass(frozen=True)
class RecurringExclusivity:
    has_recurring_template: bool
    has_split_phases: bool

    @property
    def is_valid(self) -> bool:
        return not (self.has_recurring_template and self.has_split_phases)

    @property
    def message(self) -> Optional[str]:
        if self.is_valid:
            return None
        return "Project already has a recurring template. Delete it first to create split phases."


def _label(phase: PhaseAllocation) -> str:
    return phase.name or phase.id or "Phase"


def validate_timeframe(
    project_start: date,
    project_end: Optional[date],
    phases: Sequence[PhaseAllocation],
    continuous: bool = False,
) -> ValidationResult:
    errors: List[str] = []
    warnings: List[str] = []
    if not continuous:
        if project_end is None:
            errors.append("Project end date is required unless the project is continuous")
        elif project_end <= project_start:
            errors.append("Project end date must be after start date")
    for phase in phases:
        when = phase.effective_date
        if when is None:
            warnings.append(f"{_label(phase)} has no end date")
            continue
        if when < project_start:
            errors.append(f"{_label(phase)}: phase date cannot be before project start date")
        if not continuous and project_end is not None and when > project_end:
            errors.append(f"{_label(phase)}: phase date cannot be after project end date")
    return ValidationResult.from_messages(errors, warnings)


def check_date_conflict(
    candidate: date,
    existing: Sequence[PhaseAllocation],
    exclude_id: Optional[str] = None,
) -> DateConflict:
    """Report phases already dated on the same calendar day as ``candidate``.

    Every phase with an effective date counts, recurring templates included; a
    template that only carries a start date has nothing to clash with.
    """
    target = candidate.date() if isinstance(candidate, datetime) else candidate
    clashes = tuple(
        phase.id
        for phase in existing
        if phase.id != exclude_id
        and phase.effective_date is not None
        and phase.effective_date == target
    )
    if not clashes:
        return DateConflict(has_conflict=False)
    return DateConflict(
        has_conflict=True,
        message="Another phase already exists on this date",
        conflicting_ids=clashes,
    )


def has_date_conflicts(phases: Sequence[PhaseAllocation]) -> bool:
    seen = set()
    for phase in phases:
        if phase.effective_date is None:
            continue
        if phase.effective_date in seen:
            return True
        seen.add(phase.effective_date)
    return False


def calculate_minimum_end_date(phase: PhaseAllocation, today: date) -> date:
    """Earliest end date ``phase`` may legally have on ``today``.

    A phase that still carries hours cannot end in the past.
    """
    end = phase.effective_date
    if end is None:
        return today
    if phase.allocated_hours > 0 and end < today:
        return today
    return end


def validate_phase_end_not_in_past(phase: PhaseAllocation, today: date) -> ValidationResult:
    end = phase.effective_date
    if end is not None and end < today and phase.allocated_hours > 0:
        return ValidationResult.from_messages(
            [f"{_label(phase)}: end date cannot be in the past while {phase.allocated_hours:g}h remain allocated"]
        )
    return ValidationResult(is_valid=True)


def validate_phase_time(hours: float, budget: float) -> ValidationResult:
    errors: List[str] = []
    warnings: List[str] = []
    if hours < 0:
        errors.append("Phase time allocation cannot be negative")
    elif hours == 0:
        warnings.append("Phase has 0h allocated; work will not be distributed until hours are set")
    if hours > budget:
        errors.append(f"Phase allocation ({hours:g}h) exceeds project budget ({budget:g}h)")
    elif hours > budget * 0.5:
        warnings.append("Phase allocation is over 50% of project budget")
    return ValidationResult.from_messages(errors, warnings)


def _shift(phase: PhaseAllocation, delta: timedelta) -> PhaseAllocation:
    return replace(
        phase,
        start_date=phase.start_date + delta if phase.start_date else None,
        end_date=phase.end_date + delta if phase.end_date else None,
        due_date=phase.due_date + delta if phase.due_date else None,
    )


def _series_order(phases: Sequence[PhaseAllocation]) -> List[int]:
    dated = [
        index
        for index, phase in enumerate(phases)
        if not phase.is_recurring_template and phase.effective_date is not None
    ]
    return sorted(
        dated,
        key=lambda index: (phases[index].start_date or phases[index].effective_date, phases[index].effective_date),
    )


def cascade_adjustments(
    phases: Sequence[PhaseAllocation],
    from_id: str,
    new_date: date,
    project_end: Optional[date] = None,
    continuous: bool = False,
) -> CascadeResult:
    """Move ``from_id`` to end on ``new_date`` and push later phases clear of it.

    Later phases keep their duration and move only as far as needed to start no
    earlier than their predecessor's end. Recurring templates are not part of the
    series. When the last phase ends up past ``project_end`` the end is extended and
    a warning is returned.
    """
    updated: List[PhaseAllocation] = list(phases)
    order = _series_order(updated)
    try:
        position = next(pos for pos, index in enumerate(order) if updated[index].id == from_id)
    except StopIteration:
        raise ValueError(f"Unknown phase id: {from_id}") from None

    moved_index = order[position]
    moved = updated[moved_index]
    if moved.start_date is not None and new_date < moved.start_date:
        raise ValueError(f"{_label(moved)}: end date cannot be before its start date")
    if moved.end_date is not None:
        moved = replace(moved, end_date=new_date)
    else:
        moved = replace(moved, due_date=new_date)
    updated[moved_index] = moved

    shifted: List[str] = []
    boundary = new_date
    for index in order[position + 1 :]:
        phase = updated[index]
        begins = phase.start_date or phase.effective_date
        if begins < boundary:
            delta = boundary - begins
            phase = _shift(phase, delta)
            updated[index] = phase
            shifted.append(phase.id)
            LOGGER.debug("Shifted %s forward by %s day(s)", _label(phase), delta.days)
        boundary = max(boundary, phase.effective_date)

    warnings: List[str] = []
    end = project_end
    if not continuous and project_end is not None:
        latest = max(updated[index].effective_date for index in order)
        if latest > project_end:
            end = latest
            warnings.append(f"Project end date extended from {project_end.isoformat()} to {latest.isoformat()}")
            LOGGER.info(warnings[-1])
    return CascadeResult(
        phases=tuple(updated),
        adjusted_ids=(moved.id,),
        shifted_ids=tuple(shifted),
        project_end=end,
        warnings=tuple(warnings),
    )


def adjust_for_today(
    phases: Sequence[PhaseAllocation],
    today: date,
    project_end: Optional[date] = None,
    continuous: bool = False,
) -> CascadeResult:
    """Push every phase that still has hours but ends before ``today`` up to today."""
    current: Tuple[PhaseAllocation, ...] = tuple(phases)
    adjusted: List[str] = []
    shifted: List[str] = []
    end = project_end
    for index in _series_order(current):
        phase = current[index]
        minimum = calculate_minimum_end_date(phase, today)
        if minimum == phase.effective_date:
            continue
        result = cascade_adjustments(current, phase.id, minimum, end, continuous)
        current = result.phases
        end = result.project_end
        adjusted.append(phase.id)
        shifted.extend(item for item in result.shifted_ids if item not in shifted)
    warnings: Tuple[str, ...] = ()
    if end != project_end:
        warnings = (f"Project end date extended from {project_end.isoformat()} to {end.isoformat()}",)
    return CascadeResult(
        phases=current,
        adjusted_ids=tuple(adjusted),
        shifted_ids=tuple(shifted),
        project_end=end,
        warnings=warnings,
    )


def template_occurrences(
    phase: PhaseAllocation,
    project_start: Optional[date],
    project_end: Optional[date],
    continuous: bool = False,
    clock: Clock = datetime.now,
    max_occurrences: Optional[int] = None,
) -> Expansion:
    """Expand a recurring template phase over its project window.

    Bounded projects stop the day before their end date. Continuous projects, or
    projects without an end date, use the rolling window of ``expand``.
    """
    if phase.recurrence is None:
        raise ValueError(f"{_label(phase)} is a recurring template without a recurrence pattern")
    anchor = phase.start_date or project_start or phase.effective_date
    if anchor is None:
        raise ValueError(f"{_label(phase)} needs a start date to expand its recurrence")
    bounded = not continuous and project_end is not None
    rule = compile_rule(phase.recurrence, anchor, continuous=not bounded)
    window_end = project_end - timedelta(days=1) if bounded else None
    if window_end is not None and window_end < anchor:
        return Expansion()
    return expand(rule, anchor, window_end, max_occurrences=max_occurrences, clock=clock)


def check_budget_constraint(
    phases: Sequence[PhaseAllocation],
    budget: float,
    project_start: Optional[date] = None,
    project_end: Optional[date] = None,
    continuous: bool = False,
    clock: Clock = datetime.now,
    max_occurrences: Optional[int] = None,
) -> BudgetCheck:
    """Total allocated hours against ``budget``.

    Recurring templates count once per expanded occurrence. ``is_valid`` holds exactly
    when the total does not exceed the budget; callers decide what that means for a
    continuous project.
    """
    total = 0.0
    occurrences = 0
    for phase in phases:
        if phase.is_recurring_template:
            count = len(
                template_occurrences(
                    phase, project_start, project_end, continuous, clock=clock, max_occurrences=max_occurrences
                )
            )
            occurrences += count
            total += count * phase.allocated_hours
        else:
            total += phase.allocated_hours
    utilization = total * 100 / budget if budget > 0 else 0.0
    return BudgetCheck(
        is_valid=total <= budget,
        total_allocated=total,
        budget=budget,
        remaining=max(0.0, budget - total),
        overage=max(0.0, total - budget),
        utilization_percentage=utilization,
        recurring_occurrences=occurrences,
    )


def check_recurring_exclusivity(phases: Sequence[PhaseAllocation]) -> RecurringExclusivity:
    return RecurringExclusivity(
        has_recurring_template=any(phase.is_recurring_template for phase in phases),
        has_split_phases=any(not phase.is_recurring_template for phase in phases),
    )
