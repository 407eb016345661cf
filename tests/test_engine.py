from datetime import date

import pytest

from phase_planner.engine import InvalidTemplateError, plan
from phase_planner.io_utils import config_from_dict, load_phases

BASE_CONFIG = {
    "project_start": "2025-01-06",
    "project_end": "2025-02-04",
    "budget_hours": 100,
    "today": "2025-01-01",
}


def _load(tmp_path, text):
    path = tmp_path / "phases.csv"
    path.write_text(text.strip() + "\n")
    return load_phases(path)


def test_plan_expands_legacy_template(tmp_path, fixed_clock):
    df = _load(
        tmp_path,
        """
id,name,start_date,end_date,allocated_hours,is_recurring_template,recurring_type
p1,Design,2025-01-06,2025-01-20,40,false,
p2,Standup,2025-01-06,,2,true,weekly
""",
    )

    schedule, occurrences = plan(df, config_from_dict(BASE_CONFIG), clock=fixed_clock)

    assert list(occurrences["date"]) == ["2025-01-06", "2025-01-13", "2025-01-20", "2025-01-27", "2025-02-03"]
    standup = schedule.set_index("id").loc["p2"]
    assert standup["occurrence_count"] == 5
    assert standup["total_hours"] == 10
    assert standup["recurrence"] == "Every week on Monday"
    assert "FREQ=WEEKLY" in standup["recurrence_rule"]
    analysis = schedule.attrs["analysis"]
    assert analysis["budget"]["total_allocated"] == 50
    assert analysis["status"] == "healthy"
    assert any("recurring template" in warning for warning in schedule.attrs["warnings"])


def test_plan_reads_explicit_rule_column(tmp_path, fixed_clock):
    df = _load(
        tmp_path,
        """
id,name,start_date,allocated_hours,is_recurring_template,rrule
t1,Retro,2025-01-01,1,true,FREQ=MONTHLY;BYDAY=-1FR
""",
    )
    cfg = config_from_dict({**BASE_CONFIG, "project_start": "2025-01-01", "project_end": "2025-04-01"})

    schedule, occurrences = plan(df, cfg, clock=fixed_clock)

    assert list(occurrences["date"]) == ["2025-01-31", "2025-02-28", "2025-03-28"]
    assert schedule.loc[0, "recurrence"] == "Every month on the last Friday"


def test_plan_reads_structured_columns(tmp_path, fixed_clock):
    df = _load(
        tmp_path,
        """
id,name,start_date,allocated_hours,is_recurring_template,recurring_type,monthly_mode,week_of_month,day_of_week
t1,Report,2025-01-01,3,true,monthly,nth_weekday,1,1
""",
    )
    cfg = config_from_dict({**BASE_CONFIG, "project_start": "2025-01-01", "project_end": "2025-03-31"})

    _, occurrences = plan(df, cfg, clock=fixed_clock)

    assert list(occurrences["date"]) == ["2025-01-06", "2025-02-03", "2025-03-03"]


def test_plan_moves_past_due_phases_forward(tmp_path, fixed_clock):
    df = _load(
        tmp_path,
        """
id,name,start_date,end_date,allocated_hours
a,Design,2025-01-01,2025-02-01,10
b,Build,2025-02-01,2025-03-01,10
""",
    )
    cfg = config_from_dict(
        {**BASE_CONFIG, "project_start": "2025-01-01", "project_end": "2025-12-31", "today": "2025-06-01"}
    )

    schedule, _ = plan(df, cfg, clock=fixed_clock)

    rows = schedule.set_index("id")
    assert rows.loc["a", "end_date"] == date(2025, 6, 1)
    assert bool(rows.loc["a", "adjusted"])
    assert rows.loc["b", "start_date"] == date(2025, 6, 1)
    assert rows.loc["b", "end_date"] == date(2025, 6, 29)
    assert bool(rows.loc["b", "shifted"])
    assert rows.loc["b", "original_end_date"] == date(2025, 3, 1)


def test_plan_skips_unusable_template(tmp_path, fixed_clock):
    df = _load(
        tmp_path,
        """
id,name,start_date,allocated_hours,is_recurring_template,recurring_type
t1,Mystery,2025-01-06,1,true,fortnightly
""",
    )

    schedule, occurrences = plan(df, config_from_dict(BASE_CONFIG), clock=fixed_clock)

    assert schedule.empty
    assert occurrences.empty
    assert schedule.attrs["skipped_templates"][0]["id"] == "t1"


def test_plan_strict_raises_for_unusable_template(tmp_path, fixed_clock):
    df = _load(
        tmp_path,
        """
id,name,start_date,allocated_hours,is_recurring_template
t1,Mystery,2025-01-06,1,true
""",
    )

    with pytest.raises(InvalidTemplateError):
        plan(df, config_from_dict(BASE_CONFIG), clock=fixed_clock, strict=True)


def test_plan_reports_numbered_series(tmp_path, fixed_clock):
    df = _load(
        tmp_path,
        """
id,name,end_date,allocated_hours
s1,Sync 1,2025-01-06,1
s2,Sync 2,2025-01-13,1
s3,Sync 3,2025-01-20,1
""",
    )

    schedule, _ = plan(df, config_from_dict(BASE_CONFIG), clock=fixed_clock)

    assert schedule.attrs["detected_series"] == {
        "name": "Sync",
        "recurrence": "Every week on Monday",
        "confidence": "high",
        "consistent": True,
    }
