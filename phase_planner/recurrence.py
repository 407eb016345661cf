"""
Recurrence rules for recurring phases, calendar events and work hours.

Patterns are compiled to RFC 5545 rule strings with ``dateutil.rrule`` and expanded
back into dated occurrences. Two stored shapes are accepted at the boundary:

- legacy rows with discrete ``type/interval/end_date/count`` fields
- rows carrying an explicit rule string

Both are turned into a single ``RecurrencePattern``; the compiled rule string is the
form written back going forward.

Monthly fixed-date rules skip months that do not have the requested day (day 31 has
no February occurrence). They are never clamped to the month end.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta
from itertools import islice, takewhile
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from dateutil import parser as dateparser
from dateutil.rrule import DAILY, FR, MO, MONTHLY, SA, SU, TH, TU, WE, WEEKLY, YEARLY, rrule, rrulestr

from .models import (
    DAY_NAMES,
    FREQUENCIES,
    Occurrence,
    RecurrencePattern,
    ValidationResult,
    sunday_based_weekday,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_BOUNDED_LIMIT = 365
DEFAULT_CONTINUOUS_LIMIT = 200
CONTINUOUS_LOOKBACK = timedelta(days=365)
CONTINUOUS_LOOKAHEAD = timedelta(days=730)

Clock = Callable[[], datetime]
DateLike = Union[date, datetime]

_FREQ_TO_RRULE: Dict[str, int] = {
    "daily": DAILY,
    "weekly": WEEKLY,
    "monthly": MONTHLY,
    "yearly": YEARLY,
}
# Indexed by Sunday-based weekday.
_RRULE_WEEKDAYS = (SU, MO, TU, WE, TH, FR, SA)
_DAY_CODES = ("SU", "MO", "TU", "WE", "TH", "FR", "SA")
_WEEK_ORDINALS: Dict[object, int] = {1: 1, 2: 2, 3: 3, 4: 4, "second_last": -2, "last": -1}
_ORDINAL_TO_WEEK: Dict[int, object] = {value: key for key, value in _WEEK_ORDINALS.items()}
_WEEK_LABELS: Dict[object, str] = {
    1: "1st",
    2: "2nd",
    3: "3rd",
    4: "4th",
    "second_last": "second-to-last",
    "last": "last",
}
_APPROX_DAYS = {"daily": 1, "weekly": 7, "monthly": 30, "yearly": 365}
_UNIT_NAMES = {"daily": "day", "weekly": "week", "monthly": "month", "yearly": "year"}

_BOUND_RE = re.compile(r"(?:^|[;:\s])(UNTIL|COUNT)=", re.IGNORECASE)
_BYDAY_RE = re.compile(r"^([+-]?\d+)?(MO|TU|WE|TH|FR|SA|SU)$")


class InvalidPatternError(ValueError):
    """Structured pattern is missing or has out-of-range required fields."""

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors = tuple(errors)
        super().__init__("; ".join(self.errors) or "invalid recurrence pattern")


class MalformedRuleError(ValueError):
    """Rule string supplied from outside cannot be parsed."""

    def __init__(self, rule: object, reason: str) -> None:
        super().__init__(f"cannot parse recurrence rule {rule!r}: {reason}")
        self.rule = rule
        self.reason = reason


@dataclass(frozen=True)
class Expansion:
    occurrences: Tuple[Occurrence, ...] = ()
    diagnostic: Optional[str] = None

    def __iter__(self):
        return iter(self.occurrences)

    def __len__(self) -> int:
        return len(self.occurrences)

    def __getitem__(self, index: int) -> Occurrence:
        return self.occurrences[index]

    def dates(self) -> List[datetime]:
        return [occurrence.date for occurrence in self.occurrences]


@dataclass(frozen=True)
class LegacyRecurrence:
    """Discrete recurrence columns stored by older rows."""

    type: str
    interval: int = 1
    end_date: Optional[date] = None
    count: Optional[int] = None


@dataclass(frozen=True)
class RuleRecurrence:
    rule: str


RecurrenceSource = Union[LegacyRecurrence, RuleRecurrence]


def _as_datetime(value: DateLike) -> datetime:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    return datetime.combine(value, time.min)


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def _inclusive_end(value: DateLike) -> datetime:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    return datetime.combine(value, time(23, 59, 59))


def _pattern_errors(pattern: RecurrencePattern) -> List[str]:
    errors: List[str] = []
    if pattern.frequency not in FREQUENCIES:
        errors.append(
            f"Invalid recurrence type: {pattern.frequency}. Must be one of {', '.join(FREQUENCIES)}"
        )
    if not isinstance(pattern.interval, int) or pattern.interval < 1:
        errors.append("Recurrence interval must be at least 1")
    if pattern.frequency == "weekly":
        if pattern.weekly_day_of_week is None:
            errors.append("Weekly recurrence must specify day of week (0-6)")
        elif not 0 <= pattern.weekly_day_of_week <= 6:
            errors.append("Weekly day of week must be between 0 (Sunday) and 6 (Saturday)")
    if pattern.frequency == "monthly":
        if pattern.monthly_mode is None:
            errors.append("Monthly recurrence must specify pattern (fixed_date or nth_weekday)")
        elif pattern.monthly_mode == "fixed_date":
            if pattern.day_of_month is None:
                errors.append("Monthly date pattern must specify date (1-31)")
            elif not 1 <= pattern.day_of_month <= 31:
                errors.append("Monthly date must be between 1 and 31")
        elif pattern.monthly_mode == "nth_weekday":
            if pattern.week_of_month is None or pattern.day_of_week is None:
                errors.append("Monthly nth_weekday pattern must specify week of month and day of week")
            else:
                if pattern.week_of_month not in _WEEK_ORDINALS:
                    errors.append("Monthly week of month must be 1-4, second_last or last")
                if not 0 <= pattern.day_of_week <= 6:
                    errors.append("Monthly day of week must be between 0 (Sunday) and 6 (Saturday)")
        else:
            errors.append(f"Unsupported monthly pattern: {pattern.monthly_mode}")
    if pattern.boundary_mode == "until" and pattern.until_date is None:
        errors.append("Recurrence bounded by date must specify an end date")
    if pattern.boundary_mode == "count" and (not isinstance(pattern.count, int) or pattern.count <= 0):
        errors.append("Recurrence count must be a positive integer")
    return errors


def parse_rule(rule: str, default_start: Optional[DateLike] = None):
    """Parse ``rule`` with ``rrulestr``; ``default_start`` applies when it has no DTSTART."""
    if not isinstance(rule, str) or not rule.strip():
        raise MalformedRuleError(rule, "empty rule")
    kwargs: Dict[str, object] = {"ignoretz": True}
    if default_start is not None:
        kwargs["dtstart"] = _as_datetime(default_start)
    try:
        return rrulestr(rule.strip(), **kwargs)
    except (ValueError, TypeError, IndexError) as exc:
        raise MalformedRuleError(rule, str(exc)) from exc


def validate_rule(rule: str) -> ValidationResult:
    try:
        parse_rule(rule)
    except MalformedRuleError as exc:
        return ValidationResult.from_messages([f"Invalid RRule format: {exc.reason}"])
    return ValidationResult(is_valid=True)


def rule_has_bound(rule: str) -> bool:
    return bool(_BOUND_RE.search(rule))


def compile_rule(
    pattern: RecurrencePattern,
    anchor: DateLike,
    bound_date: Optional[DateLike] = None,
    continuous: bool = False,
) -> str:
    """Compile ``pattern`` into a canonical ``DTSTART``/``RRULE`` string.

    A bounded series carries an inclusive ``UNTIL`` at the end of the bound day (or a
    ``COUNT`` taken from the pattern). Continuous series never carry a bound, so any
    stale one in ``pattern.explicit_rule`` forces a regeneration.
    """
    bound: Optional[DateLike] = None
    count: Optional[int] = None
    if not continuous:
        if bound_date is not None:
            bound = bound_date
        elif pattern.boundary_mode == "until":
            bound = pattern.until_date
        elif pattern.boundary_mode == "count":
            count = pattern.count
    should_be_bounded = bound is not None or count is not None

    if pattern.explicit_rule:
        try:
            parse_rule(pattern.explicit_rule, default_start=anchor)
        except MalformedRuleError as exc:
            LOGGER.debug("Regenerating recurrence rule: %s", exc)
        else:
            if rule_has_bound(pattern.explicit_rule) == should_be_bounded:
                return pattern.explicit_rule

    errors = _pattern_errors(pattern)
    if errors:
        raise InvalidPatternError(errors)

    dtstart = _as_datetime(anchor)
    options: Dict[str, object] = {"dtstart": dtstart, "interval": pattern.interval}
    if bound is not None:
        until = _inclusive_end(bound)
        if until < dtstart:
            raise InvalidPatternError(["Recurrence end date cannot be before the series start"])
        options["until"] = until
    elif count is not None:
        options["count"] = count

    if pattern.frequency == "weekly":
        options["byweekday"] = (_RRULE_WEEKDAYS[pattern.weekly_day_of_week],)
    elif pattern.frequency == "monthly":
        if pattern.monthly_mode == "fixed_date":
            options["bymonthday"] = pattern.day_of_month
        else:
            ordinal = _WEEK_ORDINALS[pattern.week_of_month]
            options["byweekday"] = (_RRULE_WEEKDAYS[pattern.day_of_week](ordinal),)

    return str(rrule(_FREQ_TO_RRULE[pattern.frequency], **options))


def _take_between(parsed, start: datetime, end: datetime, limit: int) -> List[datetime]:
    if end < start:
        return []
    upcoming = takewhile(lambda value: value <= end, parsed.xafter(start, inc=True))
    return list(islice(upcoming, limit))


def expand(
    rule: str,
    window_start: DateLike,
    window_end: Optional[DateLike] = None,
    max_occurrences: Optional[int] = None,
    clock: Clock = datetime.now,
) -> Expansion:
    """Expand ``rule`` into ordered occurrences.

    With ``window_end`` every occurrence in the inclusive window is returned, capped at
    ``max_occurrences`` (365 by default). Without it the series is treated as
    continuous: occurrences are taken from max(window_start, now - 1 year) through
    now + 2 years, capped at 200 by default, falling back to the first occurrences from
    ``window_start`` when that window is empty. ``now`` comes from ``clock``.

    A rule that cannot be parsed yields an empty expansion with a diagnostic.
    """
    if max_occurrences is not None and max_occurrences <= 0:
        raise ValueError("max_occurrences must be positive")
    start = _as_datetime(window_start)
    try:
        parsed = parse_rule(rule, default_start=start)
    except MalformedRuleError as exc:
        LOGGER.warning("%s; treating the series as empty", exc)
        return Expansion(diagnostic=str(exc))

    if window_end is not None:
        limit = max_occurrences or DEFAULT_BOUNDED_LIMIT
        dates = _take_between(parsed, start, _inclusive_end(window_end), limit)
    else:
        limit = max_occurrences or DEFAULT_CONTINUOUS_LIMIT
        now = _as_datetime(clock())
        dates = _take_between(
            parsed, max(start, now - CONTINUOUS_LOOKBACK), now + CONTINUOUS_LOOKAHEAD, limit
        )
        if not dates:
            dates = list(islice(parsed.xafter(start, inc=True), limit))
    return Expansion(
        occurrences=tuple(Occurrence(index, value) for index, value in enumerate(dates, start=1))
    )


def apply_exceptions(expansion: Expansion, skipped_dates: Iterable[DateLike]) -> Expansion:
    """Drop occurrences falling on ``skipped_dates`` and renumber the rest."""
    skipped = {_as_date(value) for value in skipped_dates}
    kept = [occ.date for occ in expansion if occ.date.date() not in skipped]
    return Expansion(
        occurrences=tuple(Occurrence(index, value) for index, value in enumerate(kept, start=1)),
        diagnostic=expansion.diagnostic,
    )


def end_series_before(rule: str, from_date: DateLike) -> str:
    """Bound ``rule`` so its last occurrence falls before ``from_date``.

    Any ``COUNT`` or older ``UNTIL`` is replaced by an ``UNTIL`` at the end of the
    previous day; every other rule part is kept as written.
    """
    parse_rule(rule)
    last_day = _as_date(from_date) - timedelta(days=1)
    until_part = _inclusive_end(last_day).strftime("UNTIL=%Y%m%dT%H%M%S")
    lines: List[str] = []
    for line in rule.strip().splitlines():
        if "FREQ=" not in line.upper():
            lines.append(line)
            continue
        prefix, _, body = line.rpartition(":")
        parts = [
            part
            for part in body.split(";")
            if part and part.split("=", 1)[0].strip().upper() not in {"UNTIL", "COUNT"}
        ]
        parts.append(until_part)
        lines.append(f"{prefix}:{';'.join(parts)}" if prefix else ";".join(parts))
    truncated = "\n".join(lines)
    parse_rule(truncated)
    return truncated


def _rule_parts(rule: str) -> Dict[str, str]:
    parts: Dict[str, str] = {}
    for line in rule.strip().splitlines():
        name, sep, value = line.partition(":")
        if sep and name.split(";")[0].strip().upper() == "DTSTART":
            parts["DTSTART"] = value.strip()
            continue
        body = value if sep and "FREQ=" not in name.upper() else line
        for part in body.split(";"):
            key, sep, item = part.partition("=")
            if sep:
                parts[key.strip().upper()] = item.strip().upper()
    return parts


def _parse_rule_datetime(value: str) -> datetime:
    return dateparser.isoparse(value).replace(tzinfo=None)


def pattern_from_rule(rule: str, anchor: Optional[DateLike] = None) -> RecurrencePattern:
    """Read structured pattern fields back out of a rule string.

    Fields the rule leaves implicit (weekday, day of month) come from its DTSTART, or
    from ``anchor`` when the rule has none.
    """
    parse_rule(rule, default_start=anchor)
    parts = _rule_parts(rule)
    freq_name = parts.get("FREQ", "").lower()
    if freq_name not in FREQUENCIES:
        raise InvalidPatternError([f"Unsupported recurrence frequency: {parts.get('FREQ')}"])

    start: Optional[date] = None
    if "DTSTART" in parts:
        try:
            start = _parse_rule_datetime(parts["DTSTART"]).date()
        except ValueError as exc:
            raise MalformedRuleError(rule, f"invalid DTSTART: {parts['DTSTART']}") from exc
    elif anchor is not None:
        start = _as_date(anchor)

    fields: Dict[str, object] = {
        "frequency": freq_name,
        "interval": int(parts.get("INTERVAL", "1")),
        "explicit_rule": rule,
    }
    byday = [token for token in parts.get("BYDAY", "").split(",") if token]
    matches = [_BYDAY_RE.match(token) for token in byday]
    if any(match is None for match in matches):
        raise MalformedRuleError(rule, f"invalid BYDAY: {parts.get('BYDAY')}")
    if len(matches) > 1:
        raise InvalidPatternError(["Rules with more than one weekday cannot be represented as a pattern"])

    if freq_name == "weekly":
        if matches:
            fields["weekly_day_of_week"] = _DAY_CODES.index(matches[0].group(2))
        elif start is not None:
            fields["weekly_day_of_week"] = sunday_based_weekday(start)
    elif freq_name == "monthly":
        if matches:
            ordinal_text = matches[0].group(1) or parts.get("BYSETPOS")
            if not ordinal_text or int(ordinal_text) not in _ORDINAL_TO_WEEK:
                raise InvalidPatternError(["Monthly weekday rules need a position of 1-4, -2 or -1"])
            fields["monthly_mode"] = "nth_weekday"
            fields["week_of_month"] = _ORDINAL_TO_WEEK[int(ordinal_text)]
            fields["day_of_week"] = _DAY_CODES.index(matches[0].group(2))
        else:
            fields["monthly_mode"] = "fixed_date"
            if "BYMONTHDAY" in parts:
                fields["day_of_month"] = int(parts["BYMONTHDAY"].split(",")[0])
            elif start is not None:
                fields["day_of_month"] = start.day

    if "UNTIL" in parts:
        fields["boundary_mode"] = "until"
        fields["until_date"] = _parse_rule_datetime(parts["UNTIL"]).date()
    elif "COUNT" in parts:
        fields["boundary_mode"] = "count"
        fields["count"] = int(parts["COUNT"])
    return RecurrencePattern(**fields)


def pattern_from_legacy(legacy: LegacyRecurrence, anchor: DateLike) -> RecurrencePattern:
    frequency = (legacy.type or "").strip().lower()
    if frequency not in FREQUENCIES:
        raise InvalidPatternError([f"Invalid recurrence type: {legacy.type}"])
    if legacy.end_date is not None and legacy.count:
        raise InvalidPatternError(["Cannot specify both end date and count"])
    anchor_day = _as_date(anchor)
    fields: Dict[str, object] = {"frequency": frequency, "interval": legacy.interval or 1}
    if frequency == "weekly":
        fields["weekly_day_of_week"] = sunday_based_weekday(anchor_day)
    elif frequency == "monthly":
        fields["monthly_mode"] = "fixed_date"
        fields["day_of_month"] = anchor_day.day
    if legacy.end_date is not None:
        fields["boundary_mode"] = "until"
        fields["until_date"] = _as_date(legacy.end_date)
    elif legacy.count:
        fields["boundary_mode"] = "count"
        fields["count"] = legacy.count
    return RecurrencePattern(**fields)


def pattern_from_source(source: RecurrenceSource, anchor: DateLike) -> RecurrencePattern:
    if isinstance(source, RuleRecurrence):
        return pattern_from_rule(source.rule, anchor)
    if isinstance(source, LegacyRecurrence):
        return pattern_from_legacy(source, anchor)
    raise TypeError(f"unsupported recurrence source: {type(source).__name__}")


def legacy_to_rule(legacy: LegacyRecurrence, anchor: DateLike) -> str:
    """Canonical rule string for a legacy row."""
    pattern = pattern_from_legacy(legacy, anchor)
    return compile_rule(pattern, anchor)


def validate_recurring_config(
    pattern: Optional[RecurrencePattern], hours_per_occurrence: float
) -> ValidationResult:
    if pattern is None:
        return ValidationResult.from_messages(["Recurring phase must have recurrence configuration"])
    if pattern.explicit_rule:
        errors = list(validate_rule(pattern.explicit_rule).errors)
    else:
        errors = _pattern_errors(pattern)
    if hours_per_occurrence <= 0:
        errors.append("Recurring phase must have positive time allocation per occurrence")
    return ValidationResult.from_messages(errors)


def _plural(unit: str, interval: int) -> str:
    if interval == 1:
        return unit
    return f"{interval} {unit}s"


def describe_pattern(pattern: RecurrencePattern) -> str:
    every = f"Every {_plural(_UNIT_NAMES.get(pattern.frequency, 'period'), pattern.interval)}"
    if pattern.frequency == "weekly" and pattern.weekly_day_of_week is not None:
        return f"{every} on {DAY_NAMES[pattern.weekly_day_of_week]}"
    if pattern.frequency == "monthly":
        if pattern.monthly_mode == "fixed_date" and pattern.day_of_month:
            return f"{every} on the {pattern.day_of_month}{_ordinal_suffix(pattern.day_of_month)}"
        if (
            pattern.monthly_mode == "nth_weekday"
            and pattern.week_of_month in _WEEK_LABELS
            and pattern.day_of_week is not None
        ):
            week = _WEEK_LABELS[pattern.week_of_month]
            return f"{every} on the {week} {DAY_NAMES[pattern.day_of_week]}"
    return every


def _ordinal_suffix(number: int) -> str:
    if number % 100 in (11, 12, 13):
        return "th"
    return {1: "st", 2: "nd", 3: "rd"}.get(number % 10, "th")


def estimate_occurrence_count(pattern: RecurrencePattern, duration_days: int) -> int:
    """Rough occurrence count for previews, without expanding the rule."""
    unit = _APPROX_DAYS.get(pattern.frequency)
    if unit is None or pattern.interval < 1 or duration_days <= 0:
        return 0
    return int(math.floor(duration_days / (unit * pattern.interval)))


def with_rule(pattern: RecurrencePattern, rule: str) -> RecurrencePattern:
    """Copy of ``pattern`` caching ``rule`` as its explicit rule."""
    return replace(pattern, explicit_rule=rule)
