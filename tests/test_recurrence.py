import calendar
from datetime import date, datetime

import pytest

from phase_planner.models import RecurrencePattern, sunday_based_weekday
from phase_planner.recurrence import (
    InvalidPatternError,
    LegacyRecurrence,
    MalformedRuleError,
    RuleRecurrence,
    apply_exceptions,
    compile_rule,
    describe_pattern,
    end_series_before,
    estimate_occurrence_count,
    expand,
    legacy_to_rule,
    parse_rule,
    pattern_from_legacy,
    pattern_from_rule,
    pattern_from_source,
    validate_recurring_config,
    validate_rule,
    with_rule,
)

MONDAY = 1
FRIDAY = 5


def _weekly_monday():
    return RecurrencePattern("weekly", weekly_day_of_week=MONDAY)


def test_weekly_pattern_expands_to_each_monday_in_window():
    rule = compile_rule(_weekly_monday(), date(2025, 1, 6), bound_date=date(2025, 2, 3))

    expansion = expand(rule, date(2025, 1, 6), date(2025, 2, 3))

    assert expansion.dates() == [
        datetime(2025, 1, 6),
        datetime(2025, 1, 13),
        datetime(2025, 1, 20),
        datetime(2025, 1, 27),
        datetime(2025, 2, 3),
    ]
    assert [occ.sequence_number for occ in expansion] == [1, 2, 3, 4, 5]


def test_compiled_rule_is_canonical_text():
    rule = compile_rule(_weekly_monday(), date(2025, 1, 6), bound_date=date(2025, 2, 3))

    assert rule.startswith("DTSTART:20250106T000000\nRRULE:")
    assert "FREQ=WEEKLY" in rule
    assert "BYDAY=MO" in rule
    assert "UNTIL=20250203T235959" in rule
    assert "INTERVAL" not in rule


def test_last_friday_resolves_against_each_month():
    pattern = RecurrencePattern(
        "monthly", monthly_mode="nth_weekday", week_of_month="last", day_of_week=FRIDAY
    )
    rule = compile_rule(pattern, date(2025, 1, 1), bound_date=date(2025, 3, 31))

    assert "BYDAY=-1FR" in rule
    assert expand(rule, date(2025, 1, 1), date(2025, 3, 31)).dates() == [
        datetime(2025, 1, 31),
        datetime(2025, 2, 28),
        datetime(2025, 3, 28),
    ]


def test_second_last_weekday():
    pattern = RecurrencePattern(
        "monthly", monthly_mode="nth_weekday", week_of_month="second_last", day_of_week=FRIDAY
    )
    rule = compile_rule(pattern, date(2025, 1, 1), bound_date=date(2025, 2, 28))

    assert expand(rule, date(2025, 1, 1), date(2025, 2, 28)).dates() == [
        datetime(2025, 1, 24),
        datetime(2025, 2, 21),
    ]


def test_fixed_date_skips_short_months():
    pattern = RecurrencePattern("monthly", monthly_mode="fixed_date", day_of_month=31)
    rule = compile_rule(pattern, date(2025, 1, 31), bound_date=date(2025, 5, 31))

    assert expand(rule, date(2025, 1, 31), date(2025, 5, 31)).dates() == [
        datetime(2025, 1, 31),
        datetime(2025, 3, 31),
        datetime(2025, 5, 31),
    ]


def test_count_boundary_from_pattern():
    pattern = RecurrencePattern("daily", interval=2, boundary_mode="count", count=3)
    rule = compile_rule(pattern, date(2025, 1, 1))

    assert "COUNT=3" in rule
    assert expand(rule, date(2025, 1, 1), date(2025, 12, 31)).dates() == [
        datetime(2025, 1, 1),
        datetime(2025, 1, 3),
        datetime(2025, 1, 5),
    ]


def test_continuous_daily_series_is_capped(fixed_clock):
    rule = compile_rule(RecurrencePattern("daily"), date(2025, 1, 1), continuous=True)

    expansion = expand(rule, date(2025, 1, 1), max_occurrences=10, clock=fixed_clock)

    assert len(expansion) == 10
    assert all(value >= datetime(2025, 1, 1) for value in expansion.dates())
    assert expansion[0].date == datetime(2025, 1, 1)


def test_continuous_window_rolls_with_the_clock():
    rule = compile_rule(RecurrencePattern("daily"), date(2020, 1, 1), continuous=True)

    expansion = expand(rule, date(2020, 1, 1), max_occurrences=5, clock=lambda: datetime(2030, 1, 1))

    assert expansion[0].date == datetime(2029, 1, 1)


def test_continuous_window_falls_back_to_first_occurrences():
    rule = "DTSTART:20200101T000000\nRRULE:FREQ=DAILY;COUNT=3"

    expansion = expand(rule, date(2020, 1, 1), clock=lambda: datetime(2025, 6, 1))

    assert expansion.dates() == [datetime(2020, 1, 1), datetime(2020, 1, 2), datetime(2020, 1, 3)]


def test_expansion_is_strictly_ascending_and_respects_cap():
    rule = compile_rule(RecurrencePattern("daily"), date(2025, 1, 1), continuous=True)

    expansion = expand(rule, date(2025, 1, 1), date(2030, 1, 1), max_occurrences=50)

    dates = expansion.dates()
    assert len(dates) == 50
    assert all(earlier < later for earlier, later in zip(dates, dates[1:]))


ROUND_TRIP_PATTERNS = [
    RecurrencePattern("daily"),
    RecurrencePattern("daily", interval=3),
    RecurrencePattern("weekly", weekly_day_of_week=3),
    RecurrencePattern("weekly", interval=2, weekly_day_of_week=FRIDAY),
    RecurrencePattern("monthly", monthly_mode="fixed_date", day_of_month=15),
    RecurrencePattern("monthly", interval=3, monthly_mode="fixed_date", day_of_month=10),
    RecurrencePattern("monthly", monthly_mode="nth_weekday", week_of_month=2, day_of_week=2),
    RecurrencePattern("monthly", interval=2, monthly_mode="nth_weekday", week_of_month="last", day_of_week=FRIDAY),
    RecurrencePattern("monthly", monthly_mode="nth_weekday", week_of_month="second_last", day_of_week=MONDAY),
    RecurrencePattern("yearly"),
    RecurrencePattern("yearly", interval=2),
]


def _month_index(value):
    return value.year * 12 + value.month


def _week_slot_matches(value, week_of_month):
    last_day = calendar.monthrange(value.year, value.month)[1]
    if week_of_month == "last":
        return value.day + 7 > last_day
    if week_of_month == "second_last":
        return value.day + 7 <= last_day < value.day + 14
    return (value.day - 1) // 7 + 1 == week_of_month


@pytest.mark.parametrize("pattern", ROUND_TRIP_PATTERNS, ids=describe_pattern)
def test_expanded_dates_follow_the_compiled_pattern(pattern):
    anchor = date(2025, 3, 10) if pattern.frequency == "yearly" else date(2025, 1, 1)
    rule = compile_rule(pattern, anchor)

    dates = [value.date() for value in expand(rule, anchor, date(2075, 12, 31), max_occurrences=12).dates()]

    assert len(dates) == 12
    assert dates[0] >= anchor
    pairs = list(zip(dates, dates[1:]))
    assert all(earlier < later for earlier, later in pairs)
    if pattern.frequency == "daily":
        assert all((later - earlier).days == pattern.interval for earlier, later in pairs)
    elif pattern.frequency == "weekly":
        assert all((later - earlier).days == 7 * pattern.interval for earlier, later in pairs)
        assert {sunday_based_weekday(value) for value in dates} == {pattern.weekly_day_of_week}
    elif pattern.frequency == "monthly":
        assert all(_month_index(later) - _month_index(earlier) == pattern.interval for earlier, later in pairs)
        if pattern.monthly_mode == "fixed_date":
            assert {value.day for value in dates} == {pattern.day_of_month}
        else:
            assert {sunday_based_weekday(value) for value in dates} == {pattern.day_of_week}
            assert all(_week_slot_matches(value, pattern.week_of_month) for value in dates)
    else:
        assert all(later.year - earlier.year == pattern.interval for earlier, later in pairs)
        assert {(value.month, value.day) for value in dates} == {(anchor.month, anchor.day)}


def test_bounded_expansion_defaults_to_365_occurrences():
    rule = compile_rule(RecurrencePattern("daily"), date(2025, 1, 1), continuous=True)

    assert len(expand(rule, date(2025, 1, 1), date(2030, 1, 1))) == 365


def test_non_positive_cap_is_rejected():
    with pytest.raises(ValueError):
        expand("FREQ=DAILY", date(2025, 1, 1), date(2025, 2, 1), max_occurrences=0)


def test_continuous_compile_strips_stale_until_and_is_idempotent():
    stale = "DTSTART:20250106T000000\nRRULE:FREQ=WEEKLY;UNTIL=20250203T235959;BYDAY=MO"
    pattern = with_rule(_weekly_monday(), stale)

    first = compile_rule(pattern, date(2025, 1, 6), continuous=True)
    second = compile_rule(pattern, date(2025, 1, 6), continuous=True)

    assert "UNTIL" not in first
    assert first == second
    assert compile_rule(with_rule(pattern, first), date(2025, 1, 6), continuous=True) == first


def test_existing_rule_reused_when_bound_state_matches():
    existing = "DTSTART:20250106T000000\nRRULE:FREQ=WEEKLY;UNTIL=20250203T235959;BYDAY=MO"
    pattern = with_rule(_weekly_monday(), existing)

    assert compile_rule(pattern, date(2025, 1, 6), bound_date=date(2025, 3, 1)) == existing


def test_unparseable_cached_rule_is_regenerated():
    pattern = with_rule(_weekly_monday(), "garbage")

    rule = compile_rule(pattern, date(2025, 1, 6), continuous=True)

    assert "FREQ=WEEKLY" in rule


@pytest.mark.parametrize(
    "pattern",
    [
        RecurrencePattern("weekly"),
        RecurrencePattern("monthly"),
        RecurrencePattern("monthly", monthly_mode="fixed_date"),
        RecurrencePattern("monthly", monthly_mode="nth_weekday", week_of_month=2),
        RecurrencePattern("daily", interval=0),
        RecurrencePattern("hourly"),
    ],
)
def test_missing_or_invalid_fields_raise(pattern):
    with pytest.raises(InvalidPatternError) as excinfo:
        compile_rule(pattern, date(2025, 1, 6))
    assert excinfo.value.errors


def test_until_before_anchor_is_rejected():
    with pytest.raises(InvalidPatternError):
        compile_rule(_weekly_monday(), date(2025, 1, 6), bound_date=date(2024, 12, 1))


def test_malformed_rule_expands_to_empty_with_diagnostic(caplog):
    expansion = expand("not a rule", date(2025, 1, 1), date(2025, 2, 1))

    assert len(expansion) == 0
    assert expansion.diagnostic
    assert "cannot parse recurrence rule" in caplog.text


def test_parse_rule_raises_for_empty_rule():
    with pytest.raises(MalformedRuleError):
        parse_rule("   ")


def test_validate_rule():
    assert validate_rule("FREQ=WEEKLY;BYDAY=MO").is_valid
    result = validate_rule("FREQ=SOMETIMES")
    assert not result.is_valid
    assert result.errors[0].startswith("Invalid RRule format")


def test_legacy_row_converts_to_rule():
    rule = legacy_to_rule(LegacyRecurrence("weekly", interval=2, count=4), date(2025, 1, 6))

    assert expand(rule, date(2025, 1, 6), date(2025, 12, 31)).dates() == [
        datetime(2025, 1, 6),
        datetime(2025, 1, 20),
        datetime(2025, 2, 3),
        datetime(2025, 2, 17),
    ]


def test_legacy_monthly_takes_day_from_anchor():
    pattern = pattern_from_legacy(LegacyRecurrence("monthly"), date(2025, 1, 15))

    assert pattern.monthly_mode == "fixed_date"
    assert pattern.day_of_month == 15


def test_legacy_rejects_end_date_and_count_together():
    with pytest.raises(InvalidPatternError):
        pattern_from_legacy(LegacyRecurrence("daily", end_date=date(2025, 2, 1), count=3), date(2025, 1, 1))


def test_pattern_from_rule_reads_nth_weekday():
    pattern = pattern_from_rule("DTSTART:20250101T000000\nRRULE:FREQ=MONTHLY;BYDAY=-1FR")

    assert pattern.frequency == "monthly"
    assert pattern.monthly_mode == "nth_weekday"
    assert pattern.week_of_month == "last"
    assert pattern.day_of_week == FRIDAY


def test_pattern_from_rule_reads_bysetpos():
    pattern = pattern_from_rule("FREQ=MONTHLY;BYDAY=FR;BYSETPOS=-2", anchor=date(2025, 1, 1))

    assert pattern.week_of_month == "second_last"


def test_pattern_from_rule_takes_weekday_from_dtstart():
    pattern = pattern_from_rule("DTSTART:20250108T000000\nRRULE:FREQ=WEEKLY;INTERVAL=2;COUNT=5")

    assert pattern.weekly_day_of_week == 3
    assert pattern.interval == 2
    assert pattern.boundary_mode == "count"
    assert pattern.count == 5


def test_pattern_from_source_accepts_both_shapes():
    anchor = date(2025, 1, 6)
    from_rule = pattern_from_source(RuleRecurrence("FREQ=WEEKLY;BYDAY=MO"), anchor)
    from_legacy = pattern_from_source(LegacyRecurrence("weekly"), anchor)

    assert from_rule.weekly_day_of_week == from_legacy.weekly_day_of_week == MONDAY


def test_end_series_before_replaces_count_with_until():
    rule = "DTSTART:20250106T000000\nRRULE:FREQ=WEEKLY;COUNT=10;BYDAY=MO"

    truncated = end_series_before(rule, date(2025, 1, 20))

    assert "COUNT" not in truncated
    assert "UNTIL=20250119T235959" in truncated
    assert expand(truncated, date(2025, 1, 6), date(2025, 12, 31)).dates() == [
        datetime(2025, 1, 6),
        datetime(2025, 1, 13),
    ]


def test_apply_exceptions_drops_and_renumbers():
    rule = compile_rule(_weekly_monday(), date(2025, 1, 6), bound_date=date(2025, 2, 3))
    expansion = expand(rule, date(2025, 1, 6), date(2025, 2, 3))

    kept = apply_exceptions(expansion, [date(2025, 1, 13)])

    assert len(kept) == 4
    assert [occ.sequence_number for occ in kept] == [1, 2, 3, 4]
    assert datetime(2025, 1, 13) not in kept.dates()


def test_describe_pattern():
    assert describe_pattern(RecurrencePattern("daily")) == "Every day"
    assert describe_pattern(RecurrencePattern("weekly", 2, weekly_day_of_week=MONDAY)) == "Every 2 weeks on Monday"
    assert (
        describe_pattern(
            RecurrencePattern("monthly", monthly_mode="nth_weekday", week_of_month="last", day_of_week=FRIDAY)
        )
        == "Every month on the last Friday"
    )
    assert describe_pattern(RecurrencePattern("monthly", monthly_mode="fixed_date", day_of_month=22)) == (
        "Every month on the 22nd"
    )


def test_estimate_occurrence_count():
    assert estimate_occurrence_count(_weekly_monday(), 70) == 10
    assert estimate_occurrence_count(RecurrencePattern("daily", interval=3), 10) == 3
    assert estimate_occurrence_count(RecurrencePattern("daily"), 0) == 0


def test_validate_recurring_config():
    bad = RecurrencePattern("monthly", monthly_mode="nth_weekday", week_of_month=5, day_of_week=1)

    result = validate_recurring_config(bad, 0)

    assert not result.is_valid
    assert "Monthly week of month must be 1-4, second_last or last" in result.errors
    assert "Recurring phase must have positive time allocation per occurrence" in result.errors
    assert validate_recurring_config(_weekly_monday(), 1.5).is_valid
    assert not validate_recurring_config(None, 1).is_valid
