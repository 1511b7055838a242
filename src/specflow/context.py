"""Feature directory resolution and artifact presence."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from specflow.config import specs_dir
from specflow.state import get_state_value

_FEATURE_DIR_RE = re.compile(r"^(\d{4})-")
_PHASE_NUMBER_RE = re.compile(r"^\d{4}$")

REQUIRED_ARTIFACTS: tuple[str, ...] = ("spec", "plan", "tasks")


@dataclass
class FeatureArtifacts:
    discovery: bool = False
    spec: bool = False
    requirements: bool = False
    ui_design: bool = False
    plan: bool = False
    tasks: bool = False
    checklists: tuple[str, ...] = ()

    @property
    def has_min_artifacts(self) -> bool:
        return self.spec and self.plan and self.tasks

    def to_dict(self) -> dict[str, Any]:
        return {
            "discovery": self.discovery,
            "spec": self.spec,
            "requirements": self.requirements,
            "uiDesign": self.ui_design,
            "plan": self.plan,
            "tasks": self.tasks,
            "checklists": list(self.checklists),
        }


def phase_number_of(feature_dir: Path) -> str | None:
    m = _FEATURE_DIR_RE.match(feature_dir.name)
    return m.group(1) if m else None


def list_feature_dirs(root: Path) -> list[Path]:
    """``specs/NNNN-*`` directories, sorted by name."""
    base = specs_dir(root)
    if not base.is_dir():
        return []
    return sorted(p for p in base.iterdir() if p.is_dir() and _FEATURE_DIR_RE.match(p.name))


def find_feature_dir_by_number(root: Path, number: str) -> Path | None:
    return next((p for p in list_feature_dirs(root) if p.name.startswith(f"{number}-")), None)


def resolve_feature_dir(
    root: Path,
    identifier: str | None = None,
    state: dict[str, Any] | None = None,
) -> Path | None:
    """Find a feature directory.

    *identifier* may be the full directory name, a 4-digit phase number, or
    the name part after the number. Without one, the state's phase wins, then
    the highest-numbered directory.
    """
    base = specs_dir(root)
    if not base.is_dir():
        return None

    if identifier:
        exact = base / identifier
        if exact.is_dir():
            return exact
        if _PHASE_NUMBER_RE.match(identifier):
            found = find_feature_dir_by_number(root, identifier)
            if found is not None:
                return found
        return next((p for p in list_feature_dirs(root) if p.name.endswith(f"-{identifier}")), None)

    number = get_state_value(state, "orchestration.phase.number") if state else None
    if number:
        name = get_state_value(state, "orchestration.phase.name")
        if name and (base / f"{number}-{name}").is_dir():
            return base / f"{number}-{name}"
        found = find_feature_dir_by_number(root, str(number))
        if found is not None:
            return found

    dirs = list_feature_dirs(root)
    return dirs[-1] if dirs else None


def feature_artifacts(feature_dir: Path) -> FeatureArtifacts:
    checklist_dir = feature_dir / "checklists"
    checklists = tuple(sorted(p.stem for p in checklist_dir.glob("*.md"))) if checklist_dir.is_dir() else ()
    return FeatureArtifacts(
        discovery=(feature_dir / "discovery.md").is_file(),
        spec=(feature_dir / "spec.md").is_file(),
        requirements=(feature_dir / "requirements.md").is_file(),
        ui_design=(feature_dir / "ui-design.md").is_file(),
        plan=(feature_dir / "plan.md").is_file(),
        tasks=(feature_dir / "tasks.md").is_file(),
        checklists=checklists,
    )


def missing_artifacts(artifacts: FeatureArtifacts) -> list[str]:
    return [f"{name}.md" for name in REQUIRED_ARTIFACTS if not getattr(artifacts, name)]
