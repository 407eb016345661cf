from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd
from dateutil import parser as dateparser

from . import engine
from .engine import InvalidTemplateError
from .io_utils import ensure_directory, load_config, load_phases, write_csv


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Phase planning batch tool: recurring phases, schedule rules and budget checks (CSV in/out)."
    )
    parser.add_argument(
        "--project-dir",
        help="Project directory containing input/ and output/ subfolders",
    )
    parser.add_argument("--phases", help="Path to phases CSV input (overrides project-dir default)")
    parser.add_argument("--config", help="Path to configuration JSON file (overrides project-dir default)")
    parser.add_argument(
        "--outdir",
        default=None,
        help="Output directory for generated files (default: <project-dir>/output or ./out)",
    )
    parser.add_argument("--today", help="ISO date used as today (overrides config.today)")
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Fail if any recurring template cannot be expanded",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Plan and print summary without writing output files",
    )
    return parser.parse_args(argv)


def _resolve_io_paths(args: argparse.Namespace) -> Tuple[Path, Path, Path]:
    project_dir = Path(args.project_dir).resolve() if args.project_dir else None
    if project_dir and not project_dir.exists():
        raise ValueError(f"project directory not found: {project_dir}")
    input_dir = project_dir / "input" if project_dir else None

    def _pick(path_value: Optional[str], default_name: str) -> Optional[Path]:
        if path_value:
            return Path(path_value)
        if input_dir:
            return input_dir / default_name
        return None

    phases_path = _pick(args.phases, "phases.csv")
    config_path = _pick(args.config, "config.json")

    missing = [name for name, value in (("phases", phases_path), ("config", config_path)) if value is None]
    if missing:
        joined = ", ".join(f"--{name}" for name in missing)
        raise ValueError(f"missing required input paths: {joined} (or provide --project-dir)")

    for label, path in (("phases", phases_path), ("config", config_path)):
        if not path.exists():
            raise ValueError(f"{label} file not found at {path}")

    if args.outdir:
        outdir = Path(args.outdir)
    elif project_dir:
        outdir = project_dir / "output"
    else:
        outdir = Path("out")

    return phases_path, config_path, outdir


def _configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(levelname)s %(message)s")


def _print_dry_run_summary(schedule: pd.DataFrame, occurrences: pd.DataFrame) -> None:
    analysis = schedule.attrs.get("analysis", {})
    if schedule.empty:
        print("No phases scheduled.")
    else:
        print("Phases:")
        for row in schedule.itertuples(index=False):
            if row.is_recurring_template:
                print(f"- {row.id} {row.name}: {row.recurrence} ({row.occurrence_count} occurrences)")
                continue
            marker = " (moved)" if row.adjusted or row.shifted else ""
            print(f"- {row.id} {row.name}: {row.start_date or '?'} → {row.end_date}{marker}")
    print(f"\nOccurrences: {len(occurrences)}")
    print(f"Budget status: {analysis.get('status', 'unknown')} - {analysis.get('summary', '')}")
    skipped = schedule.attrs.get("skipped_templates", [])
    if skipped:
        print("\nSkipped templates:")
        for item in skipped:
            print(f"- {item['id']} {item['name']}: {item['reason']}")


def _bullets(lines: List[str], items: Sequence[str], empty: str) -> None:
    if not items:
        lines.append(empty)
    for item in items:
        lines.append(f"- {item}")
    lines.append("")


def _write_budget_markdown(schedule: pd.DataFrame, outdir: Path, title: str) -> Path:
    path = outdir / "budget_report.md"
    attrs: Dict[str, object] = schedule.attrs
    analysis = attrs.get("analysis", {})
    budget = analysis.get("budget", {})
    lines: List[str] = [f"# Budget Report{': ' + title if title else ''}", ""]
    lines.append(f"**Status:** {analysis.get('status', 'unknown')}")
    lines.append("")
    lines.append(str(analysis.get("summary", "")))
    lines.append("")
    lines.append("| Metric | Value |")
    lines.append("| --- | --- |")
    lines.append(f"| Budget | {budget.get('budget', 0):.1f}h |")
    lines.append(f"| Allocated | {budget.get('total_allocated', 0):.1f}h |")
    lines.append(f"| Remaining | {budget.get('remaining', 0):.1f}h |")
    lines.append(f"| Overage | {budget.get('overage', 0):.1f}h |")
    lines.append(f"| Utilization | {budget.get('utilization_percentage', 0):.1f}% |")
    lines.append(f"| Recurring occurrences | {budget.get('recurring_occurrences', 0)} |")
    if attrs.get("project_end"):
        lines.append(f"| Project end | {attrs['project_end']} |")
    lines.append("")

    lines.append("## Issues")
    _bullets(lines, list(analysis.get("details", [])) + list(attrs.get("errors", [])), "None.")
    lines.append("## Warnings")
    _bullets(lines, list(attrs.get("warnings", [])), "None.")
    lines.append("## Recommendations")
    _bullets(
        lines,
        [f"**{rec['severity']}** {rec['message']}" for rec in analysis.get("recommendations", [])],
        "None.",
    )
    adjustment = attrs.get("adjustment")
    if isinstance(adjustment, dict) and adjustment.get("adjustment_needed"):
        lines.append("## Suggested Budget")
        lines.append(f"- {adjustment['suggested_budget']:g}h: {adjustment['reason']}")
        lines.append("")
    skipped = attrs.get("skipped_templates", [])
    if skipped:
        lines.append("## Skipped Recurring Templates")
        for item in skipped:
            lines.append(f"- **{item['id']} – {item['name']}**: {item['reason']}")
        lines.append("")
    series = attrs.get("detected_series")
    if isinstance(series, dict):
        lines.append("## Numbered Series")
        lines.append(
            f"- {series['name']}: {series['recurrence']} "
            f"(confidence {series['confidence']}{'' if series['consistent'] else ', inconsistent gaps'})"
        )
        lines.append("")
    path.write_text("\n".join(lines).strip() + "\n")
    return path


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = _parse_args(argv)
    try:
        phases_path, config_path, outdir = _resolve_io_paths(args)
        phases_df = load_phases(phases_path)
        cfg = load_config(config_path)
        if args.today:
            cfg = replace(cfg, today=dateparser.isoparse(args.today).date())
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(2)

    _configure_logging(cfg.logging_level)
    try:
        schedule_df, occurrences_df = engine.plan(phases_df, cfg, strict=args.strict)
    except InvalidTemplateError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    if args.dry_run:
        _print_dry_run_summary(schedule_df, occurrences_df)
        return

    outdir_path = ensure_directory(outdir)
    schedule_path = outdir_path / "phase_schedule.csv"
    occurrences_path = outdir_path / "occurrences.csv"
    write_csv(schedule_df, schedule_path)
    write_csv(occurrences_df, occurrences_path)
    report_path = _write_budget_markdown(schedule_df, outdir_path, cfg.project_name)
    print(f"Wrote {schedule_path}")
    print(f"Wrote {occurrences_path}")
    print(f"Wrote {report_path}")
    skipped = schedule_df.attrs.get("skipped_templates", [])
    if skipped:
        print("Skipped templates:")
        for item in skipped:
            print(f"- {item['id']} {item['name']}: {item['reason']}")


if __name__ == "__main__":
    main()
