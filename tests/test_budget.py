from datetime import date

import pytest

from phase_planner.budget import analyze, budget_recommendations, suggest_adjustment
from phase_planner.models import PhaseAllocation
from phase_planner.rules import check_budget_constraint


def _phase(phase_id, hours, end):
    return PhaseAllocation(id=phase_id, name=phase_id, end_date=end, allocated_hours=hours)


def test_over_budget_is_critical():
    phases = [_phase("a", 30, date(2025, 2, 1)), _phase("b", 25, date(2025, 3, 1))]

    analysis = analyze(phases, 50)

    assert analysis.status == "critical"
    assert analysis.details[0] == "Over budget by 5h"
    assert analysis.summary == "Project has critical issues requiring immediate attention"


def test_critical_wins_over_warnings():
    phases = [_phase("a", 30, date(2025, 2, 1)), _phase("b", 25, date(2025, 2, 1))]

    analysis = analyze(phases, 50)

    assert analysis.status == "critical"
    assert "Phase date conflicts detected" in analysis.details
    assert "Very high budget utilization (>95%)" in analysis.details


def test_no_phases_is_a_warning():
    analysis = analyze([], 100)

    assert analysis.status == "warning"
    assert analysis.details == ["No phases defined"]
    assert analysis.recommendations[0].kind == "no_phases"


def test_high_utilization_is_a_warning():
    phases = [_phase("a", 48, date(2025, 2, 1)), _phase("b", 48, date(2025, 3, 1))]

    analysis = analyze(phases, 100)

    assert analysis.status == "warning"
    assert analysis.summary == "Project needs attention: 1 issue(s) detected"


def test_healthy_project():
    phases = [_phase("a", 40, date(2025, 2, 1)), _phase("b", 40, date(2025, 3, 1))]

    analysis = analyze(phases, 100)

    assert analysis.status == "healthy"
    assert analysis.details == []
    assert analysis.summary == "Project is well-configured with 2 phase(s) and 80.0% budget utilization"


def test_continuous_project_over_budget_is_not_critical():
    phases = [_phase("a", 60, date(2025, 2, 1)), _phase("b", 60, date(2025, 3, 1))]

    analysis = analyze(phases, 100, continuous=True)

    assert analysis.status == "warning"
    assert not analysis.check.is_valid


def test_analysis_to_dict_is_serialisable():
    payload = analyze([_phase("a", 40, date(2025, 2, 1))], 100).to_dict()

    assert payload["budget"]["total_allocated"] == 40
    assert {"status", "summary", "details", "recommendations"} <= set(payload)


def test_recommendations_cover_spread_and_unallocated_budget():
    phases = [
        _phase("a", 10, date(2025, 2, 1)),
        _phase("b", 10, date(2025, 3, 1)),
        _phase("c", 80, date(2025, 4, 1)),
    ]
    check = check_budget_constraint(phases, 200)

    kinds = [rec.kind for rec in budget_recommendations(phases, 200, check)]

    assert kinds == ["unallocated", "uneven_distribution"]


def test_recommendations_flag_overrun_and_dominant_phase():
    phases = [_phase("a", 70, date(2025, 2, 1)), _phase("b", 40, date(2025, 3, 1))]
    check = check_budget_constraint(phases, 100)

    recommendations = budget_recommendations(phases, 100, check)

    assert recommendations[0].message.startswith("Budget exceeded by 10.0h.")
    assert "dominant_phase" in [rec.kind for rec in recommendations]


def test_suggest_adjustment_when_over_budget():
    adjustment = suggest_adjustment(50, 55)

    assert adjustment.adjustment_needed
    assert adjustment.suggested_budget == 62


def test_suggest_adjustment_when_under_used():
    adjustment = suggest_adjustment(100, 30)

    assert adjustment.adjustment_needed
    assert adjustment.suggested_budget == 34


def test_suggest_adjustment_inside_tolerance_band():
    adjustment = suggest_adjustment(100, 80)

    assert not adjustment.adjustment_needed
    assert adjustment.suggested_budget == 100


def test_suggest_adjustment_rounds_exact_targets():
    assert suggest_adjustment(40, 45).suggested_budget == 50


def test_suggest_adjustment_rejects_bad_target():
    with pytest.raises(ValueError):
        suggest_adjustment(100, 50, target_utilization=0)
