from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

import pytest

FIXED_NOW = datetime(2025, 6, 1, 9, 30)


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


@pytest.fixture
def make_project(tmp_path):
    """Write input/phases.csv and input/config.json under a fresh project dir."""

    def _make(phases_csv: str, config: dict, name: str = "demo") -> Path:
        project_dir = tmp_path / name
        input_dir = project_dir / "input"
        input_dir.mkdir(parents=True)
        (input_dir / "phases.csv").write_text(phases_csv.strip() + "\n")
        (input_dir / "config.json").write_text(json.dumps(config))
        return project_dir

    return _make
