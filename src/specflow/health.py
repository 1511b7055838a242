"""Project health check and auto-repair."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from specflow import log
from specflow.backlog import ensure_backlog
from specflow.config import SCHEMA_VERSION, backlog_path, history_path, memory_dir, roadmap_path, state_path
from specflow.context import feature_artifacts, missing_artifacts, resolve_feature_dir
from specflow.errors import NotFoundError, StateError
from specflow.history import ensure_history
from specflow.roadmap import PhaseStatus, get_phase_by_number, read_roadmap
from specflow.state import (
    PHASE_STATUSES,
    STEP_INDEX,
    STEP_NAMES,
    STEP_STATUSES,
    get_state_value,
    read_raw_state,
    set_state_value,
    validate_state,
    write_state,
)
from specflow.tasks.parser import read_tasks


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass
class HealthIssue:
    code: str
    severity: Severity
    message: str
    fix: str = ""
    auto_fixable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "severity": self.severity.value,
            "message": self.message,
            "fix": self.fix,
            "autoFixable": self.auto_fixable,
        }


@dataclass
class HealthReport:
    issues: list[HealthIssue] = field(default_factory=list)

    def count(self, severity: Severity) -> int:
        return sum(1 for i in self.issues if i.severity == severity)

    @property
    def status(self) -> str:
        if self.count(Severity.ERROR):
            return "error"
        if self.count(Severity.WARNING):
            return "warning"
        return "ready"

    @property
    def next_action(self) -> str | None:
        if self.status == "error":
            first = next(i for i in self.issues if i.severity == Severity.ERROR)
            return "run_check_fix" if first.auto_fixable else "fix_errors"
        if self.status == "warning":
            fixable = any(i.severity == Severity.WARNING and i.auto_fixable for i in self.issues)
            return "run_check_fix" if fixable else "review_warnings"
        return None

    def codes(self) -> list[str]:
        return [i.code for i in self.issues]

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "issues": [i.to_dict() for i in self.issues],
            "summary": {
                "errors": self.count(Severity.ERROR),
                "warnings": self.count(Severity.WARNING),
                "info": self.count(Severity.INFO),
            },
            "nextAction": self.next_action,
        }


_FIX = 'Run "specflow check --fix"'


def _state_issues(state: dict[str, Any]) -> list[HealthIssue]:
    issues: list[HealthIssue] = []

    version = state.get("schema_version")
    if version != SCHEMA_VERSION:
        issues.append(HealthIssue(
            "SCHEMA_VERSION_OUTDATED", Severity.ERROR,
            f'schema_version is "{version}", expected "{SCHEMA_VERSION}"', _FIX, True,
        ))

    index = get_state_value(state, "orchestration.step.index")
    if index is not None and (isinstance(index, bool) or not isinstance(index, (int, float))):
        issues.append(HealthIssue(
            "STEP_INDEX_TYPE_ERROR", Severity.ERROR,
            f'step.index is {type(index).__name__} ("{index}"), must be a number', _FIX, True,
        ))

    current = get_state_value(state, "orchestration.step.current")
    if current is not None and current not in STEP_NAMES:
        issues.append(HealthIssue(
            "STEP_CURRENT_INVALID", Severity.ERROR,
            f'step.current is "{current}", must be one of: {", ".join(STEP_NAMES)} (or null)', _FIX, True,
        ))

    step_status = get_state_value(state, "orchestration.step.status")
    if step_status is not None and step_status not in STEP_STATUSES:
        issues.append(HealthIssue(
            "STEP_STATUS_INVALID", Severity.ERROR,
            f'step.status is "{step_status}", must be one of: {", ".join(STEP_STATUSES)}', _FIX, True,
        ))

    phase_status = get_state_value(state, "orchestration.phase.status")
    if phase_status is not None and phase_status not in PHASE_STATUSES:
        issues.append(HealthIssue(
            "PHASE_STATUS_INVALID", Severity.ERROR,
            f'phase.status is "{phase_status}", must be one of: {", ".join(PHASE_STATUSES)}', _FIX, True,
        ))

    if current in STEP_INDEX and isinstance(index, int) and not isinstance(index, bool):
        expected = STEP_INDEX[current]
        if index != expected:
            issues.append(HealthIssue(
                "STEP_INDEX_MISMATCH", Severity.WARNING,
                f'step.index is {index} but step.current is "{current}" (expected index {expected})', _FIX, True,
            ))
    return issues


def _roadmap_issues(root: Path, state: dict[str, Any]) -> list[HealthIssue]:
    if not roadmap_path(root).is_file():
        return [HealthIssue(
            "NO_ROADMAP", Severity.WARNING, "No ROADMAP.md found", "Create ROADMAP.md with phase definitions",
        )]
    number = get_state_value(state, "orchestration.phase.number")
    if not number:
        return []
    try:
        roadmap = read_roadmap(root)
    except StateError as exc:
        return [HealthIssue("ROADMAP_UNREADABLE", Severity.ERROR, exc.message, exc.hint)]
    phase = get_phase_by_number(roadmap, str(number))
    if phase is None:
        return [HealthIssue(
            "PHASE_NOT_IN_ROADMAP", Severity.WARNING,
            f"State references phase {number} but it's not in ROADMAP.md",
            'Add the phase with "specflow phase add" or update state with "specflow state set"',
        )]
    if get_state_value(state, "orchestration.phase.status") == "in_progress" and phase.status == PhaseStatus.COMPLETE:
        return [HealthIssue(
            "STATE_ROADMAP_DRIFT", Severity.WARNING,
            "State shows phase in progress but ROADMAP shows complete",
            'Run "specflow phase close" to close the completed phase',
        )]
    return []


def _feature_issues(root: Path, state: dict[str, Any]) -> list[HealthIssue]:
    if not get_state_value(state, "orchestration.phase.number"):
        return []
    feature_dir = resolve_feature_dir(root, state=state)
    if feature_dir is None:
        return []
    issues: list[HealthIssue] = []
    artifacts = feature_artifacts(feature_dir)
    missing = missing_artifacts(artifacts)
    index = get_state_value(state, "orchestration.step.index", 0)
    try:
        past_design = int(index or 0) > 0
    except (TypeError, ValueError):
        past_design = False
    if past_design and missing:
        issues.append(HealthIssue(
            "MISSING_ARTIFACTS", Severity.WARNING,
            f"Missing design artifacts: {', '.join(missing)}", "Re-run the design step to generate them",
        ))
    if not artifacts.tasks:
        return issues
    try:
        doc = read_tasks(feature_dir)
    except (StateError, NotFoundError) as exc:
        issues.append(HealthIssue("TASKS_UNREADABLE", Severity.ERROR, exc.message, exc.hint))
        return issues
    if not doc.tasks:
        issues.append(HealthIssue(
            "TASKS_FORMAT_ERROR", Severity.WARNING,
            "tasks.md exists but no tasks found (likely format issue)",
            "Expected format: '- [ ] T001 Description'. The task ID must follow the checkbox.",
        ))
    return issues


def run_health_check(root: Path | None) -> HealthReport:
    """Collect every detectable problem with the project at *root*."""
    report = HealthReport()
    if root is None:
        report.issues.append(HealthIssue(
            "NO_PROJECT", Severity.ERROR, "Not in a SpecFlow project directory",
            'Run "specflow state init" in the project root',
        ))
        return report

    if not state_path(root).is_file():
        report.issues.append(HealthIssue(
            "NO_STATE", Severity.ERROR, "No state file found", 'Run "specflow state init"',
        ))
        return report

    try:
        state = read_raw_state(root)
    except (StateError, NotFoundError) as exc:
        report.issues.append(HealthIssue("STATE_INVALID", Severity.ERROR, exc.message, exc.hint))
        return report
    errors = validate_state(state)
    if errors:
        for message in errors[:5]:
            report.issues.append(HealthIssue(
                "STATE_INVALID", Severity.ERROR, message, "Repair .specflow/orchestration-state.json by hand",
            ))
        return report

    report.issues += _state_issues(state)

    if not backlog_path(root).is_file():
        report.issues.append(HealthIssue("NO_BACKLOG", Severity.INFO, "No BACKLOG.md found", _FIX, True))
    if not history_path(root).is_file():
        report.issues.append(HealthIssue(
            "NO_HISTORY", Severity.INFO, "No .specify/history/HISTORY.md found", _FIX, True,
        ))

    report.issues += _roadmap_issues(root, state)

    if not memory_dir(root).is_dir():
        report.issues.append(HealthIssue(
            "NO_MEMORY", Severity.INFO, "No memory directory found", "Create .specify/memory/ with project memory documents",
        ))

    report.issues += _feature_issues(root, state)

    step_status = get_state_value(state, "orchestration.step.status")
    if step_status in ("blocked", "failed"):
        report.issues.append(HealthIssue(
            "STEP_BLOCKED", Severity.WARNING, f"Current step is {step_status}",
            'Review blockers, then run "specflow state set orchestration.step.status=in_progress"',
        ))
    return report


def apply_fixes(root: Path, issues: list[HealthIssue]) -> list[str]:
    """Repair the auto-fixable *issues*. Returns the codes fixed."""
    fixed: list[str] = []
    codes = {i.code for i in issues if i.auto_fixable}

    if "NO_BACKLOG" in codes and ensure_backlog(root):
        fixed.append("NO_BACKLOG")
    if "NO_HISTORY" in codes and ensure_history(root):
        fixed.append("NO_HISTORY")

    state_codes = {
        "SCHEMA_VERSION_OUTDATED",
        "STEP_INDEX_TYPE_ERROR",
        "STEP_CURRENT_INVALID",
        "STEP_STATUS_INVALID",
        "PHASE_STATUS_INVALID",
        "STEP_INDEX_MISMATCH",
        "TASKS_COMPLETE_STEP_IMPLEMENT",
    } & codes
    if not state_codes:
        return fixed

    state = read_raw_state(root)
    if "SCHEMA_VERSION_OUTDATED" in state_codes:
        state = set_state_value(state, "schema_version", SCHEMA_VERSION)
    if "STEP_CURRENT_INVALID" in state_codes:
        state = set_state_value(state, "orchestration.step.current", "design")
    if "STEP_STATUS_INVALID" in state_codes:
        state = set_state_value(state, "orchestration.step.status", "not_started")
    if "PHASE_STATUS_INVALID" in state_codes:
        has_phase = bool(get_state_value(state, "orchestration.phase.number"))
        state = set_state_value(state, "orchestration.phase.status", "in_progress" if has_phase else "not_started")
    if "TASKS_COMPLETE_STEP_IMPLEMENT" in state_codes:
        state = set_state_value(state, "orchestration.step.current", "verify")
        state = set_state_value(state, "orchestration.step.status", "in_progress")
    if state_codes & {"STEP_INDEX_TYPE_ERROR", "STEP_INDEX_MISMATCH", "STEP_CURRENT_INVALID", "TASKS_COMPLETE_STEP_IMPLEMENT"}:
        current = get_state_value(state, "orchestration.step.current")
        state = set_state_value(state, "orchestration.step.index", STEP_INDEX.get(current, 0))

    write_state(state, root)
    for code in sorted(state_codes):
        log.debug(f"Fixed {code}")
    return fixed + sorted(state_codes)
