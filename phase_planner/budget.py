"""
Budget analysis for a project's phases.

Classifies a project as healthy, warning or critical and produces actionable
recommendations:
- Budget overruns and very high utilization
- Unallocated budget and missing phases
- Phases that dominate the budget or uneven distributions
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional, Sequence

from .models import PhaseAllocation
from .recurrence import Clock
from .rules import BudgetCheck, check_budget_constraint, has_date_conflicts

HIGH_UTILIZATION_THRESHOLD = 0.9
WARNING_UTILIZATION_PERCENT = 95.0
UNALLOCATED_THRESHOLD = 0.3
SINGLE_PHASE_DOMINANCE_THRESHOLD = 0.5
UNDER_UTILIZATION_RATIO = 0.5


@dataclass
class BudgetRecommendation:
    """Recommendation produced from a budget check."""
    kind: str  # "over_budget", "high_utilization", "unallocated", ...
    message: str
    severity: str  # "critical", "high", "medium", "low"


@dataclass
class BudgetAdjustment:
    suggested_budget: float
    adjustment_needed: bool
    reason: str


@dataclass
class BudgetAnalysis:
    status: str  # "healthy", "warning", "critical"
    summary: str
    details: List[str]
    check: BudgetCheck
    recommendations: List[BudgetRecommendation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "status": self.status,
            "summary": self.summary,
            "details": list(self.details),
            "budget": asdict(self.check),
            "recommendations": [_recommendation_to_dict(rec) for rec in self.recommendations],
        }


def _recommendation_to_dict(rec: BudgetRecommendation) -> Dict[str, object]:
    return {"kind": rec.kind, "message": rec.message, "severity": rec.severity}


def _phase_hours(phases: Sequence[PhaseAllocation]) -> List[float]:
    return [phase.allocated_hours for phase in phases]


def budget_recommendations(
    phases: Sequence[PhaseAllocation], budget: float, check: BudgetCheck
) -> List[BudgetRecommendation]:
    recommendations: List[BudgetRecommendation] = []

    if not check.is_valid:
        recommendations.append(BudgetRecommendation(
            kind="over_budget",
            message=(
                f"Budget exceeded by {check.overage:.1f}h. "
                "Consider reducing phase allocations or increasing project budget."
            ),
            severity="critical",
        ))

    if HIGH_UTILIZATION_THRESHOLD * 100 <= check.utilization_percentage < 100:
        recommendations.append(BudgetRecommendation(
            kind="high_utilization",
            message=(
                f"Budget utilization is {check.utilization_percentage:.1f}%. "
                "Consider leaving buffer for unexpected work."
            ),
            severity="medium",
        ))

    if phases and check.remaining > budget * UNALLOCATED_THRESHOLD:
        recommendations.append(BudgetRecommendation(
            kind="unallocated",
            message=(
                f"{check.remaining:.1f}h unallocated. "
                "Consider distributing remaining budget to phases or reducing project scope."
            ),
            severity="low",
        ))

    if not phases and budget > 0:
        recommendations.append(BudgetRecommendation(
            kind="no_phases",
            message=f"No phases defined. Create phases to allocate the {budget:g}h budget.",
            severity="medium",
        ))

    hours = _phase_hours(phases)
    if len(hours) > 1 and max(hours) > budget * SINGLE_PHASE_DOMINANCE_THRESHOLD:
        recommendations.append(BudgetRecommendation(
            kind="dominant_phase",
            message="One phase uses over 50% of budget. Consider breaking down into smaller phases.",
            severity="low",
        ))

    # Population standard deviation
    if len(hours) >= 3:
        average = sum(hours) / len(hours)
        spread = math.sqrt(sum((value - average) ** 2 for value in hours) / len(hours))
        if average > 0 and spread > average * 0.5:
            recommendations.append(BudgetRecommendation(
                kind="uneven_distribution",
                message=(
                    "Phase allocations vary significantly. "
                    "Consider more balanced distribution for predictable workflow."
                ),
                severity="low",
            ))

    return recommendations


def analyze(
    phases: Sequence[PhaseAllocation],
    budget: float,
    project_start: Optional[date] = None,
    project_end: Optional[date] = None,
    continuous: bool = False,
    clock: Clock = datetime.now,
    max_occurrences: Optional[int] = None,
) -> BudgetAnalysis:
    """Classify the project's budget health.

    Over budget is critical for bounded projects. Date conflicts, utilization above
    95% and an empty phase list are warnings. Critical wins when both apply.
    """
    check = check_budget_constraint(
        phases,
        budget,
        project_start=project_start,
        project_end=project_end,
        continuous=continuous,
        clock=clock,
        max_occurrences=max_occurrences,
    )
    critical: List[str] = []
    warnings: List[str] = []
    if not check.is_valid and not continuous:
        critical.append(f"Over budget by {check.overage:g}h")
    if has_date_conflicts(phases):
        warnings.append("Phase date conflicts detected")
    if check.utilization_percentage > WARNING_UTILIZATION_PERCENT:
        warnings.append(f"Very high budget utilization (>{WARNING_UTILIZATION_PERCENT:g}%)")
    if not phases:
        warnings.append("No phases defined")

    details = critical + warnings
    if critical:
        status = "critical"
        summary = "Project has critical issues requiring immediate attention"
    elif warnings:
        status = "warning"
        summary = f"Project needs attention: {len(details)} issue(s) detected"
    else:
        status = "healthy"
        summary = (
            f"Project is well-configured with {len(phases)} phase(s) and "
            f"{check.utilization_percentage:.1f}% budget utilization"
        )
    return BudgetAnalysis(
        status=status,
        summary=summary,
        details=details,
        check=check,
        recommendations=budget_recommendations(phases, budget, check),
    )


def suggest_adjustment(
    current_budget: float, total_allocated: float, target_utilization: float = 0.9
) -> BudgetAdjustment:
    """Budget that would bring utilization to ``target_utilization``.

    Only over-budget projects and projects using less than half of their budget get a
    new figure; everything in between keeps ``current_budget``.
    """
    if not 0 < target_utilization <= 1:
        raise ValueError("target_utilization must be in (0, 1]")
    if total_allocated <= 0:
        return BudgetAdjustment(
            suggested_budget=current_budget,
            adjustment_needed=False,
            reason="No hours allocated yet",
        )
    suggested = float(math.ceil(round(total_allocated / target_utilization, 6)))
    if total_allocated > current_budget:
        return BudgetAdjustment(
            suggested_budget=suggested,
            adjustment_needed=True,
            reason=(
                f"Allocated {total_allocated:g}h exceeds the {current_budget:g}h budget; "
                f"{suggested:g}h gives {target_utilization:.0%} utilization"
            ),
        )
    if total_allocated < current_budget * UNDER_UTILIZATION_RATIO:
        return BudgetAdjustment(
            suggested_budget=suggested,
            adjustment_needed=True,
            reason=(
                f"Only {total_allocated:g}h of {current_budget:g}h allocated; "
                f"{suggested:g}h gives {target_utilization:.0%} utilization"
            ),
        )
    return BudgetAdjustment(
        suggested_budget=current_budget,
        adjustment_needed=False,
        reason="Budget utilization is within the expected range",
    )
