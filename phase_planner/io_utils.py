from __future__ import annotations

import json
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, Optional

import pandas as pd
from dateutil import parser as dateparser

from .models import PlanningConfig

DATE_FMT = "%Y-%m-%d"

_PHASE_REQUIRED_COLUMNS = {"id", "name", "allocated_hours"}
_DATE_COLUMNS = ("start_date", "end_date", "due_date", "recurring_end_date")
_INT_COLUMNS = (
    "recurring_interval",
    "recurring_count",
    "weekly_day_of_week",
    "day_of_month",
    "day_of_week",
)
_TEXT_COLUMNS = ("recurring_type", "rrule", "monthly_mode", "week_of_month")


def _require_columns(df: pd.DataFrame, required: Iterable[str], source: str) -> None:
    missing = sorted(col for col in required if col not in df.columns)
    if missing:
        raise ValueError(f"{source} missing required columns: {', '.join(missing)}")


def _is_blank(value: object) -> bool:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return True
    return isinstance(value, str) and value.strip() == ""


def _parse_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if _is_blank(value):
        return False
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "t", "1", "yes", "y"}:
            return True
        if lowered in {"false", "f", "0", "no", "n"}:
            return False
    raise ValueError(f"cannot interpret boolean value '{value}'")


def _parse_optional_date(value: object, field_name: str) -> Optional[date]:
    if _is_blank(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return dateparser.isoparse(str(value).strip()).date()
    except (ValueError, TypeError) as exc:
        raise ValueError(f"invalid date in '{field_name}': {value}") from exc


def _parse_optional_int(value: object, field_name: str) -> Optional[int]:
    if _is_blank(value):
        return None
    try:
        number = float(value)
    except (ValueError, TypeError) as exc:
        raise ValueError(f"invalid integer in '{field_name}': {value}") from exc
    if not number.is_integer():
        raise ValueError(f"invalid integer in '{field_name}': {value}")
    return int(number)


def _parse_optional_text(value: object) -> Optional[str]:
    if _is_blank(value):
        return None
    text = str(value).strip()
    # Numeric week_of_month values come back from pandas as floats
    if text.endswith(".0") and text[:-2].isdigit():
        return text[:-2]
    return text


def _object_column(df: pd.DataFrame, column: str, parse) -> pd.Series:
    # Object dtype keeps missing values as None
    values = df[column] if column in df.columns else [None] * len(df)
    return pd.Series([parse(value) for value in values], index=df.index, dtype=object)


def load_phases(path: str | Path) -> pd.DataFrame:
    """Read phases.csv into a frame of parsed Python values.

    Recurrence columns are optional: ``recurring_type``/``recurring_interval``/
    ``recurring_end_date``/``recurring_count`` (legacy shape), ``rrule`` (explicit rule)
    and the structured fields ``weekly_day_of_week``, ``monthly_mode``,
    ``day_of_month``, ``week_of_month`` and ``day_of_week``.
    """
    df = pd.read_csv(path)
    _require_columns(df, _PHASE_REQUIRED_COLUMNS, "phases.csv")
    if df.empty:
        return df.assign(input_row=pd.Series(dtype=int))
    try:
        df["allocated_hours"] = pd.to_numeric(df["allocated_hours"])
    except ValueError as exc:
        raise ValueError("invalid numeric value in column 'allocated_hours'") from exc
    if df["allocated_hours"].isna().any():
        raise ValueError("column 'allocated_hours' contains missing values")
    if (df["allocated_hours"] < 0).any():
        raise ValueError("column 'allocated_hours' contains negative values")
    if df["id"].isna().any():
        raise ValueError("column 'id' contains missing values")
    df["id"] = df["id"].map(lambda value: str(value).strip())
    if df["id"].duplicated().any():
        duplicates = sorted(set(df.loc[df["id"].duplicated(), "id"]))
        raise ValueError(f"duplicate phase ids: {', '.join(duplicates)}")
    df["name"] = df["name"].map(lambda value: "" if _is_blank(value) else str(value).strip())

    for column in _DATE_COLUMNS:
        df[column] = _object_column(df, column, lambda value, field=column: _parse_optional_date(value, field))
    for row_number, (phase_id, start, end, due) in enumerate(
        zip(df["id"], df["start_date"], df["end_date"], df["due_date"]), start=1
    ):
        effective = end or due
        if start is not None and effective is not None and start > effective:
            raise ValueError(
                f"phases.csv row {row_number} ({phase_id}): start_date {start.isoformat()} "
                f"is after end date {effective.isoformat()}"
            )
    for column in _INT_COLUMNS:
        df[column] = _object_column(df, column, lambda value, field=column: _parse_optional_int(value, field))
    for column in _TEXT_COLUMNS:
        df[column] = _object_column(df, column, _parse_optional_text)
    if "is_recurring_template" not in df.columns:
        df["is_recurring_template"] = False
    df["is_recurring_template"] = df["is_recurring_template"].map(_parse_bool)
    df["input_row"] = df.index + 1
    return df


def load_config(path: str | Path) -> PlanningConfig:
    try:
        data = json.loads(Path(path).read_text())
    except json.JSONDecodeError as exc:
        raise ValueError(f"config file is not valid JSON: {exc}") from exc
    return config_from_dict(data)


def config_from_dict(data: object) -> PlanningConfig:
    if not isinstance(data, dict):
        raise ValueError("config must be a JSON object")
    try:
        project_start = dateparser.isoparse(data["project_start"]).date()
    except (KeyError, ValueError, TypeError) as exc:
        raise ValueError("project_start must be a valid ISO date string") from exc

    continuous = data.get("continuous", False)
    if not isinstance(continuous, bool):
        raise ValueError("continuous must be a boolean")

    project_end_raw = data.get("project_end")
    project_end: Optional[date]
    if project_end_raw is None:
        if not continuous:
            raise ValueError("project_end may only be null for continuous projects")
        project_end = None
    else:
        try:
            project_end = dateparser.isoparse(project_end_raw).date()
        except (ValueError, TypeError) as exc:
            raise ValueError("project_end must be null or an ISO date string") from exc
        if project_end <= project_start:
            raise ValueError("project_end must be after project_start")

    budget_hours = data.get("budget_hours")
    if isinstance(budget_hours, bool) or not isinstance(budget_hours, (int, float)):
        raise ValueError("budget_hours must be a number")
    if budget_hours < 0:
        raise ValueError("budget_hours must not be negative")

    today_raw = data.get("today")
    today: Optional[date] = None
    if today_raw is not None:
        try:
            today = dateparser.isoparse(today_raw).date()
        except (ValueError, TypeError) as exc:
            raise ValueError("today must be null or an ISO date string") from exc

    max_occurrences = data.get("max_occurrences")
    if max_occurrences is not None and (
        isinstance(max_occurrences, bool) or not isinstance(max_occurrences, int) or max_occurrences <= 0
    ):
        raise ValueError("max_occurrences must be a positive integer if provided")

    target_utilization = data.get("target_utilization", 0.9)
    if isinstance(target_utilization, bool) or not isinstance(target_utilization, (int, float)):
        raise ValueError("target_utilization must be a number")
    target_utilization = float(target_utilization)
    if not (0 < target_utilization <= 1):
        raise ValueError("target_utilization must be in (0, 1]")

    logging_level = data.get("logging_level", "INFO")

    return PlanningConfig(
        project_start=project_start,
        project_end=project_end,
        budget_hours=float(budget_hours),
        continuous=continuous,
        today=today,
        max_occurrences=max_occurrences,
        target_utilization=target_utilization,
        logging_level=str(logging_level),
        project_name=str(data.get("project_name", "") or ""),
    )


def ensure_directory(path: str | Path) -> Path:
    target = Path(path)
    target.mkdir(parents=True, exist_ok=True)
    return target


def write_csv(df: pd.DataFrame, path: str | Path) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False, date_format=DATE_FMT)
