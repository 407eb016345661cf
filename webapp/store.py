from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from phase_planner.engine import phases_from_df
from phase_planner.io_utils import load_config, load_phases
from phase_planner.models import PhaseAllocation, PlanningConfig

LOGGER = logging.getLogger(__name__)

REQUIRED_INPUT_FILES = ("phases.csv", "config.json")


def _now_iso() -> str:
    """Return current UTC timestamp as ISO string with second precision."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass
class ProjectRecord:
    id: str
    config: PlanningConfig
    phases: List[PhaseAllocation] = field(default_factory=list)
    updated_at: str = field(default_factory=_now_iso)


class ProjectStore:
    """Minimal in-memory project registry keyed by project id."""

    def __init__(self) -> None:
        self._projects: Dict[str, ProjectRecord] = {}
        self._lock = threading.Lock()

    def put(self, project_id: str, config: PlanningConfig, phases: List[PhaseAllocation]) -> ProjectRecord:
        record = ProjectRecord(id=project_id, config=config, phases=list(phases))
        with self._lock:
            self._projects[project_id] = record
            return copy.deepcopy(record)

    def get(self, project_id: str) -> Optional[ProjectRecord]:
        with self._lock:
            record = self._projects.get(project_id)
            return copy.deepcopy(record) if record else None

    def delete(self, project_id: str) -> bool:
        with self._lock:
            return self._projects.pop(project_id, None) is not None

    def list_projects(self) -> List[ProjectRecord]:
        with self._lock:
            records = list(self._projects.values())
        records.sort(key=lambda r: r.id)
        return [copy.deepcopy(record) for record in records]

    def seed_from(self, root: Path) -> List[str]:
        """Load every ``<root>/<project>/input`` directory holding phases.csv and config.json."""
        loaded: List[str] = []
        if not root.is_dir():
            LOGGER.warning("Seed directory %s not found", root)
            return loaded
        for child in sorted(root.iterdir()):
            input_dir = child / "input"
            if not all((input_dir / name).is_file() for name in REQUIRED_INPUT_FILES):
                continue
            try:
                cfg = load_config(input_dir / "config.json")
                phases, problems = phases_from_df(load_phases(input_dir / "phases.csv"), cfg)
            except ValueError as exc:
                LOGGER.warning("Skipping seed project %s: %s", child.name, exc)
                continue
            for problem in problems:
                LOGGER.warning("Seed project %s: %s", child.name, problem["reason"])
            self.put(child.name, cfg, phases)
            loaded.append(child.name)
        return loaded
