from __future__ import annotations

import logging
import math
from dataclasses import replace
from datetime import date, datetime, time
from typing import Dict, List, Optional, Tuple

import pandas as pd

from .budget import analyze, suggest_adjustment
from .detection import detect_series
from .io_utils import DATE_FMT
from .models import PhaseAllocation, PlanningConfig, RecurrencePattern
from .recurrence import (
    Clock,
    InvalidPatternError,
    LegacyRecurrence,
    MalformedRuleError,
    RuleRecurrence,
    compile_rule,
    describe_pattern,
    pattern_from_source,
    with_rule,
)
from .rules import (
    adjust_for_today,
    check_recurring_exclusivity,
    template_occurrences,
    validate_timeframe,
)

LOGGER = logging.getLogger(__name__)

SCHEDULE_COLUMNS = [
    "id",
    "name",
    "start_date",
    "end_date",
    "allocated_hours",
    "is_recurring_template",
    "original_end_date",
    "adjusted",
    "shifted",
    "recurrence_rule",
    "recurrence",
    "occurrence_count",
    "total_hours",
]
OCCURRENCE_COLUMNS = ["phase_id", "phase_name", "sequence_number", "date", "hours"]


class InvalidTemplateError(RuntimeError):
    def __init__(self, phase: PhaseAllocation, reason: str) -> None:
        super().__init__(f"Phase {phase.id} has an unusable recurrence: {reason}")
        self.phase = phase
        self.reason = reason


def _value(row, name: str):
    value = getattr(row, name, None)
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


def _week_of_month(value: Optional[str]):
    if value is None:
        return None
    return int(value) if value.isdigit() else value


def _structured_pattern(row) -> Optional[RecurrencePattern]:
    structured = ("weekly_day_of_week", "monthly_mode", "day_of_month", "week_of_month", "day_of_week")
    if all(_value(row, name) is None for name in structured):
        return None
    until = _value(row, "recurring_end_date")
    count = _value(row, "recurring_count")
    return RecurrencePattern(
        frequency=str(_value(row, "recurring_type") or "").lower(),
        interval=_value(row, "recurring_interval") or 1,
        weekly_day_of_week=_value(row, "weekly_day_of_week"),
        monthly_mode=_value(row, "monthly_mode"),
        day_of_month=_value(row, "day_of_month"),
        week_of_month=_week_of_month(_value(row, "week_of_month")),
        day_of_week=_value(row, "day_of_week"),
        boundary_mode="until" if until else ("count" if count else "unbounded"),
        until_date=until,
        count=count,
    )


def _recurrence_for_row(row, anchor: Optional[date]) -> Optional[RecurrencePattern]:
    """Resolve whichever recurrence shape the row carries into one pattern."""
    rule = _value(row, "rrule")
    if rule:
        return pattern_from_source(RuleRecurrence(rule), anchor)
    structured = _structured_pattern(row)
    if structured is not None:
        return structured
    recurring_type = _value(row, "recurring_type")
    if recurring_type is None:
        return None
    legacy = LegacyRecurrence(
        type=recurring_type,
        interval=_value(row, "recurring_interval") or 1,
        end_date=_value(row, "recurring_end_date"),
        count=_value(row, "recurring_count"),
    )
    return pattern_from_source(legacy, anchor)


def phases_from_df(
    df: pd.DataFrame, cfg: PlanningConfig
) -> Tuple[List[PhaseAllocation], List[Dict[str, object]]]:
    """Build phase allocations from a loaded frame; unusable recurrences are returned as problems."""
    phases: List[PhaseAllocation] = []
    problems: List[Dict[str, object]] = []
    for row in df.sort_values("input_row").itertuples(index=False):
        phase = PhaseAllocation(
            id=str(row.id),
            name=str(row.name),
            start_date=_value(row, "start_date"),
            end_date=_value(row, "end_date"),
            due_date=_value(row, "due_date"),
            allocated_hours=float(row.allocated_hours),
            is_recurring_template=bool(_value(row, "is_recurring_template")),
        )
        if phase.is_recurring_template:
            anchor = phase.start_date or cfg.project_start
            try:
                phase = replace(phase, recurrence=_recurrence_for_row(row, anchor))
            except (InvalidPatternError, MalformedRuleError) as exc:
                problems.append({"phase": phase, "reason": str(exc)})
        phases.append(phase)
    return phases, problems


def _clock_for(cfg: PlanningConfig, clock: Clock) -> Clock:
    if cfg.today is None:
        return clock
    pinned = datetime.combine(cfg.today, time.min)
    return lambda: pinned


def _skip(skipped: List[Dict[str, object]], phase: PhaseAllocation, reason: str, strict: bool) -> None:
    if strict:
        raise InvalidTemplateError(phase, reason)
    LOGGER.info("Skipping recurring template %s: %s", phase.id, reason)
    skipped.append({"id": phase.id, "name": phase.name, "reason": reason})


def plan(
    phases_df: pd.DataFrame,
    cfg: PlanningConfig,
    *,
    clock: Clock = datetime.now,
    strict: bool = False,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Schedule the project's phases and expand its recurring templates.

    Returns the phase schedule and the expanded occurrences. Budget analysis, skipped
    templates and warnings travel in ``schedule.attrs``.
    """
    clock = _clock_for(cfg, clock)
    today = cfg.today or clock().date()
    phases, problems = phases_from_df(phases_df, cfg)

    skipped: List[Dict[str, object]] = []
    broken = set()
    for problem in problems:
        phase = problem["phase"]
        broken.add(phase.id)
        _skip(skipped, phase, str(problem["reason"]), strict)

    dated = [phase for phase in phases if not phase.is_recurring_template]
    timeframe = validate_timeframe(cfg.project_start, cfg.project_end, dated, cfg.continuous)
    exclusivity = check_recurring_exclusivity(phases)
    warnings: List[str] = list(timeframe.warnings)
    if exclusivity.message:
        warnings.append(exclusivity.message)

    cascade = adjust_for_today(phases, today, cfg.project_end, cfg.continuous)
    warnings.extend(cascade.warnings)
    original_ends = {phase.id: phase.effective_date for phase in phases}
    project_end = cascade.project_end

    schedule_rows: List[Dict[str, object]] = []
    occurrence_rows: List[Dict[str, object]] = []
    analysed: List[PhaseAllocation] = []
    for phase in cascade.phases:
        rule = None
        description = None
        count = None
        total_hours = phase.allocated_hours
        if phase.is_recurring_template:
            if phase.id in broken:
                continue
            if phase.recurrence is None:
                _skip(skipped, phase, "recurring template without recurrence columns", strict)
                continue
            anchor = phase.start_date or cfg.project_start
            bounded = not cfg.continuous and project_end is not None
            try:
                rule = compile_rule(phase.recurrence, anchor, continuous=not bounded)
                phase = replace(phase, recurrence=with_rule(phase.recurrence, rule))
                expansion = template_occurrences(
                    phase,
                    cfg.project_start,
                    project_end,
                    cfg.continuous,
                    clock=clock,
                    max_occurrences=cfg.max_occurrences,
                )
            except InvalidPatternError as exc:
                _skip(skipped, phase, str(exc), strict)
                continue
            if expansion.diagnostic:
                _skip(skipped, phase, expansion.diagnostic, strict)
                continue
            description = describe_pattern(phase.recurrence)
            count = len(expansion)
            total_hours = count * phase.allocated_hours
            for occurrence in expansion:
                occurrence_rows.append(
                    {
                        "phase_id": phase.id,
                        "phase_name": phase.name,
                        "sequence_number": occurrence.sequence_number,
                        "date": occurrence.date.strftime(DATE_FMT),
                        "hours": phase.allocated_hours,
                    }
                )
        analysed.append(phase)
        schedule_rows.append(
            {
                "id": phase.id,
                "name": phase.name,
                "start_date": phase.start_date,
                "end_date": phase.effective_date,
                "allocated_hours": phase.allocated_hours,
                "is_recurring_template": phase.is_recurring_template,
                "original_end_date": original_ends.get(phase.id),
                "adjusted": phase.id in cascade.adjusted_ids,
                "shifted": phase.id in cascade.shifted_ids,
                "recurrence_rule": rule,
                "recurrence": description,
                "occurrence_count": count,
                "total_hours": total_hours,
            }
        )

    analysis = analyze(
        analysed,
        cfg.budget_hours,
        project_start=cfg.project_start,
        project_end=project_end,
        continuous=cfg.continuous,
        clock=clock,
        max_occurrences=cfg.max_occurrences,
    )
    adjustment = suggest_adjustment(
        cfg.budget_hours, analysis.check.total_allocated, cfg.target_utilization
    )
    series = detect_series(phase for phase in analysed if not phase.is_recurring_template)

    schedule = pd.DataFrame(schedule_rows, columns=SCHEDULE_COLUMNS)
    schedule["occurrence_count"] = schedule["occurrence_count"].astype("Int64")
    occurrences = pd.DataFrame(occurrence_rows, columns=OCCURRENCE_COLUMNS)
    schedule.attrs["analysis"] = analysis.to_dict()
    schedule.attrs["adjustment"] = {
        "suggested_budget": adjustment.suggested_budget,
        "adjustment_needed": adjustment.adjustment_needed,
        "reason": adjustment.reason,
    }
    schedule.attrs["errors"] = list(timeframe.errors)
    schedule.attrs["warnings"] = warnings
    schedule.attrs["skipped_templates"] = skipped
    schedule.attrs["project_end"] = project_end.isoformat() if project_end else None
    schedule.attrs["today"] = today.isoformat()
    if series is not None:
        base_name, detected = series
        schedule.attrs["detected_series"] = {
            "name": base_name,
            "recurrence": describe_pattern(detected.pattern),
            "confidence": detected.confidence,
            "consistent": detected.consistent,
        }
    LOGGER.info(
        "Planned %d phase(s), %d occurrence(s); budget status %s",
        len(schedule),
        len(occurrences),
        analysis.status,
    )
    return schedule, occurrences
