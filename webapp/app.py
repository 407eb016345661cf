from __future__ import annotations

import os
from dataclasses import asdict, replace
from datetime import date, datetime
from pathlib import Path
from typing import Dict, List, Optional

from dateutil import parser as dateparser
from flask import Flask, jsonify, request

from phase_planner.budget import analyze, suggest_adjustment
from phase_planner.detection import detect_pattern
from phase_planner.io_utils import config_from_dict
from phase_planner.models import PhaseAllocation, PlanningConfig, RecurrencePattern
from phase_planner.recurrence import (
    Clock,
    InvalidPatternError,
    LegacyRecurrence,
    RuleRecurrence,
    apply_exceptions,
    compile_rule,
    describe_pattern,
    expand,
    pattern_from_source,
    validate_recurring_config,
)
from phase_planner.rules import (
    adjust_for_today,
    cascade_adjustments,
    check_recurring_exclusivity,
    template_occurrences,
    validate_timeframe,
)

from .store import ProjectRecord, ProjectStore

_PATTERN_FIELDS = (
    "interval",
    "weekly_day_of_week",
    "monthly_mode",
    "day_of_month",
    "week_of_month",
    "day_of_week",
    "explicit_rule",
    "boundary_mode",
    "count",
)


def _resolve_data_root() -> Optional[Path]:
    env_value = os.getenv("PHASE_PLANNER_DATA")
    if env_value:
        return Path(env_value).expanduser().resolve()
    return None


def _parse_date(value: object, field_name: str) -> date:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    try:
        return dateparser.isoparse(str(value)).date()
    except (ValueError, TypeError) as exc:
        raise ValueError(f"{field_name} must be an ISO date string") from exc


def _optional_date(data: Dict[str, object], field_name: str) -> Optional[date]:
    value = data.get(field_name)
    if value in (None, ""):
        return None
    return _parse_date(value, field_name)


def _require_object(value: object, label: str) -> Dict[str, object]:
    if not isinstance(value, dict):
        raise ValueError(f"{label} must be an object")
    return value


def _json_body() -> Dict[str, object]:
    return _require_object(request.get_json(silent=True) or {}, "request body")


def _pattern_from_json(data: object, anchor: Optional[date] = None) -> RecurrencePattern:
    """Accept a structured pattern, ``{"rule": ...}`` or a legacy ``{"type": ...}`` object."""
    data = _require_object(data, "pattern")
    if data.get("rule"):
        if anchor is None:
            anchor = _optional_date(data, "anchor")
        return pattern_from_source(RuleRecurrence(str(data["rule"])), anchor)
    if data.get("type"):
        if anchor is None:
            raise ValueError("legacy recurrence needs an anchor date")
        legacy = LegacyRecurrence(
            type=str(data["type"]),
            interval=int(data.get("interval") or 1),
            end_date=_optional_date(data, "end_date"),
            count=data.get("count"),
        )
        return pattern_from_source(legacy, anchor)
    if not data.get("frequency"):
        raise ValueError("pattern.frequency is required")
    fields = {name: data[name] for name in _PATTERN_FIELDS if data.get(name) is not None}
    until = _optional_date(data, "until_date")
    if until is not None:
        fields["until_date"] = until
        fields.setdefault("boundary_mode", "until")
    elif data.get("count") is not None:
        fields.setdefault("boundary_mode", "count")
    return RecurrencePattern(frequency=str(data["frequency"]), **fields)


def _pattern_to_json(pattern: RecurrencePattern) -> Dict[str, object]:
    payload = asdict(pattern)
    if pattern.until_date is not None:
        payload["until_date"] = pattern.until_date.isoformat()
    payload["description"] = describe_pattern(pattern)
    return payload


def _phase_from_json(data: object, cfg: PlanningConfig) -> PhaseAllocation:
    data = _require_object(data, "phase")
    if not data.get("id"):
        raise ValueError("phase.id is required")
    hours = data.get("allocated_hours", 0)
    if isinstance(hours, bool) or not isinstance(hours, (int, float)) or hours < 0:
        raise ValueError(f"phase {data['id']}: allocated_hours must be a non-negative number")
    phase = PhaseAllocation(
        id=str(data["id"]),
        name=str(data.get("name") or ""),
        start_date=_optional_date(data, "start_date"),
        end_date=_optional_date(data, "end_date"),
        due_date=_optional_date(data, "due_date"),
        allocated_hours=float(hours),
        is_recurring_template=bool(data.get("is_recurring_template", False)),
    )
    if phase.start_date and phase.effective_date and phase.start_date > phase.effective_date:
        raise ValueError(f"phase {phase.id}: start_date is after its end date")
    if data.get("recurrence") is not None:
        anchor = phase.start_date or cfg.project_start
        phase = replace(phase, recurrence=_pattern_from_json(data["recurrence"], anchor))
    if phase.is_recurring_template:
        check = validate_recurring_config(phase.recurrence, phase.allocated_hours)
        if not check.is_valid:
            raise InvalidPatternError(f"phase {phase.id}: {message}" for message in check.errors)
    return phase


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _phase_to_json(phase: PhaseAllocation) -> Dict[str, object]:
    return {
        "id": phase.id,
        "name": phase.name,
        "start_date": _iso(phase.start_date),
        "end_date": _iso(phase.end_date),
        "due_date": _iso(phase.due_date),
        "allocated_hours": phase.allocated_hours,
        "is_recurring_template": phase.is_recurring_template,
        "recurrence": _pattern_to_json(phase.recurrence) if phase.recurrence else None,
    }


def _config_to_json(cfg: PlanningConfig) -> Dict[str, object]:
    return {
        "project_name": cfg.project_name,
        "project_start": cfg.project_start.isoformat(),
        "project_end": _iso(cfg.project_end),
        "continuous": cfg.continuous,
        "budget_hours": cfg.budget_hours,
        "today": _iso(cfg.today),
        "max_occurrences": cfg.max_occurrences,
        "target_utilization": cfg.target_utilization,
    }


def _record_to_json(record: ProjectRecord) -> Dict[str, object]:
    return {
        "id": record.id,
        "config": _config_to_json(record.config),
        "phases": [_phase_to_json(phase) for phase in record.phases],
        "updated_at": record.updated_at,
    }


def _occurrences_to_json(expansion) -> List[Dict[str, object]]:
    return [
        {"sequence_number": occ.sequence_number, "date": occ.date.date().isoformat()}
        for occ in expansion
    ]


def _error(exc: ValueError):
    payload: Dict[str, object] = {"error": str(exc)}
    if isinstance(exc, InvalidPatternError):
        payload["errors"] = list(exc.errors)
    return jsonify(payload), 400


def create_app(store: Optional[ProjectStore] = None, clock: Optional[Clock] = None) -> Flask:
    app = Flask(__name__)
    if store is None:
        store = ProjectStore()
        data_root = _resolve_data_root()
        if data_root is not None:
            store.seed_from(data_root)
    clock = clock or datetime.now
    app.config["PROJECT_STORE"] = store
    app.config["CLOCK"] = clock

    def _today(cfg: PlanningConfig) -> date:
        return cfg.today or clock().date()

    @app.post("/api/rules/compile")
    def compile_pattern():
        try:
            data = _json_body()
            anchor = _parse_date(data.get("anchor"), "anchor")
            pattern = _pattern_from_json(data.get("pattern"), anchor)
            rule = compile_rule(
                pattern,
                anchor,
                bound_date=_optional_date(data, "bound_date"),
                continuous=bool(data.get("continuous", False)),
            )
        except ValueError as exc:
            return _error(exc)
        return jsonify({"rule": rule, "description": describe_pattern(pattern)})

    @app.post("/api/rules/expand")
    def expand_rule():
        try:
            data = _json_body()
            window_start = _parse_date(data.get("window_start"), "window_start")
            window_end = _optional_date(data, "window_end")
            max_occurrences = data.get("max_occurrences")
            if max_occurrences is not None and not isinstance(max_occurrences, int):
                raise ValueError("max_occurrences must be an integer")
            skipped = [_parse_date(value, "skip_dates") for value in data.get("skip_dates") or []]
            expansion = expand(
                str(data.get("rule") or ""),
                window_start,
                window_end,
                max_occurrences=max_occurrences,
                clock=clock,
            )
        except ValueError as exc:
            return _error(exc)
        if skipped:
            expansion = apply_exceptions(expansion, skipped)
        return jsonify(
            {"occurrences": _occurrences_to_json(expansion), "diagnostic": expansion.diagnostic}
        )

    @app.post("/api/patterns/detect")
    def detect():
        try:
            raw_dates = _json_body().get("dates")
            if not isinstance(raw_dates, list):
                raise ValueError("dates must be an array")
            dates = sorted({_parse_date(value, "dates") for value in raw_dates})
        except ValueError as exc:
            return _error(exc)
        detected = detect_pattern(dates)
        if detected is None:
            return jsonify({"pattern": None})
        return jsonify(
            {
                "pattern": _pattern_to_json(detected.pattern),
                "confidence": detected.confidence,
                "consistent": detected.consistent,
                "sample_size": detected.sample_size,
            }
        )

    @app.get("/api/projects")
    def list_projects():
        return jsonify({"projects": [_record_to_json(record) for record in store.list_projects()]})

    @app.put("/api/projects/<project_id>")
    def save_project(project_id: str):
        data = request.get_json(silent=True)
        try:
            data = _require_object(data, "request body")
            cfg = config_from_dict(data.get("config"))
            raw_phases = data.get("phases") or []
            if not isinstance(raw_phases, list):
                raise ValueError("phases must be an array")
            phases = [_phase_from_json(item, cfg) for item in raw_phases]
        except ValueError as exc:
            return _error(exc)
        ids = [phase.id for phase in phases]
        if len(ids) != len(set(ids)):
            return jsonify({"error": "phase ids must be unique"}), 400
        record = store.put(project_id, cfg, phases)
        return jsonify(_record_to_json(record))

    @app.get("/api/projects/<project_id>")
    def get_project(project_id: str):
        record = store.get(project_id)
        if record is None:
            return jsonify({"error": "project not found"}), 404
        return jsonify(_record_to_json(record))

    @app.delete("/api/projects/<project_id>")
    def delete_project(project_id: str):
        if not store.delete(project_id):
            return jsonify({"error": "project not found"}), 404
        return "", 204

    @app.get("/api/projects/<project_id>/analysis")
    def project_analysis(project_id: str):
        record = store.get(project_id)
        if record is None:
            return jsonify({"error": "project not found"}), 404
        cfg = record.config
        try:
            analysis = analyze(
                record.phases,
                cfg.budget_hours,
                project_start=cfg.project_start,
                project_end=cfg.project_end,
                continuous=cfg.continuous,
                clock=clock,
                max_occurrences=cfg.max_occurrences,
            )
        except ValueError as exc:
            return _error(exc)
        timeframe = validate_timeframe(
            cfg.project_start,
            cfg.project_end,
            [phase for phase in record.phases if not phase.is_recurring_template],
            cfg.continuous,
        )
        exclusivity = check_recurring_exclusivity(record.phases)
        adjustment = suggest_adjustment(
            cfg.budget_hours, analysis.check.total_allocated, cfg.target_utilization
        )
        payload = analysis.to_dict()
        payload["timeframe"] = asdict(timeframe)
        payload["exclusivity"] = {
            "has_recurring_template": exclusivity.has_recurring_template,
            "has_split_phases": exclusivity.has_split_phases,
            "message": exclusivity.message,
        }
        payload["adjustment"] = asdict(adjustment)
        return jsonify(payload)

    @app.get("/api/projects/<project_id>/occurrences")
    def project_occurrences(project_id: str):
        record = store.get(project_id)
        if record is None:
            return jsonify({"error": "project not found"}), 404
        cfg = record.config
        results = []
        try:
            for phase in record.phases:
                if not phase.is_recurring_template:
                    continue
                expansion = template_occurrences(
                    phase,
                    cfg.project_start,
                    cfg.project_end,
                    cfg.continuous,
                    clock=clock,
                    max_occurrences=cfg.max_occurrences,
                )
                results.append(
                    {
                        "phase_id": phase.id,
                        "description": describe_pattern(phase.recurrence),
                        "occurrences": _occurrences_to_json(expansion),
                        "diagnostic": expansion.diagnostic,
                    }
                )
        except ValueError as exc:
            return _error(exc)
        return jsonify({"templates": results})

    @app.post("/api/projects/<project_id>/cascade")
    def cascade(project_id: str):
        """Move one phase's end date (or every past-due phase when no id is given)."""
        record = store.get(project_id)
        if record is None:
            return jsonify({"error": "project not found"}), 404
        cfg = record.config
        try:
            data = _json_body()
            if data.get("phase_id"):
                result = cascade_adjustments(
                    record.phases,
                    str(data["phase_id"]),
                    _parse_date(data.get("new_date"), "new_date"),
                    cfg.project_end,
                    cfg.continuous,
                )
            else:
                result = adjust_for_today(record.phases, _today(cfg), cfg.project_end, cfg.continuous)
        except ValueError as exc:
            return _error(exc)
        if result.project_end != cfg.project_end:
            cfg = replace(cfg, project_end=result.project_end)
        updated = store.put(project_id, cfg, list(result.phases))
        payload = _record_to_json(updated)
        payload["adjusted_ids"] = list(result.adjusted_ids)
        payload["shifted_ids"] = list(result.shifted_ids)
        payload["warnings"] = list(result.warnings)
        return jsonify(payload)

    return app


if __name__ == "__main__":
    create_app().run(debug=True)
