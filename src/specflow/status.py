"""Project status snapshot and the next-action decision table."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from specflow.context import feature_artifacts, resolve_feature_dir
from specflow.errors import SpecflowError
from specflow.health import HealthReport, Severity, run_health_check
from specflow.roadmap import get_phase_by_number, read_roadmap
from specflow.state import get_state_value, read_state
from specflow.tasks.model import percent
from specflow.tasks.parser import read_tasks

START_PHASE = "start_phase"
RUN_DESIGN = "run_design"
RUN_ANALYZE = "run_analyze"
CONTINUE_IMPLEMENT = "continue_implement"
RUN_VERIFY = "run_verify"
READY_TO_MERGE = "ready_to_merge"
FIX_HEALTH = "fix_health"
AWAITING_USER_GATE = "awaiting_user_gate"
ARCHIVE_PHASE = "archive_phase"


def determine_next_action(
    phase_status: str | None,
    step: str | None,
    step_status: str | None,
    health_status: str,
    all_tasks_done: bool,
    has_min_artifacts: bool,
    has_user_gate: bool,
) -> str:
    """First matching rule wins. Unknown steps fall back to ``continue_implement``."""
    if health_status == "error":
        return FIX_HEALTH
    if phase_status in (None, "not_started"):
        return START_PHASE
    if phase_status == "awaiting_user_gate":
        return AWAITING_USER_GATE
    if phase_status == "complete":
        return ARCHIVE_PHASE
    if step is None:
        return RUN_DESIGN
    if step == "design":
        return RUN_ANALYZE if has_min_artifacts else RUN_DESIGN
    if step == "analyze":
        return RUN_ANALYZE
    if step == "implement":
        return RUN_VERIFY if all_tasks_done else CONTINUE_IMPLEMENT
    if step == "verify" and all_tasks_done:
        return AWAITING_USER_GATE if has_user_gate else READY_TO_MERGE
    return CONTINUE_IMPLEMENT


@dataclass
class StatusSnapshot:
    phase: dict[str, Any] = field(default_factory=lambda: {
        "number": None, "name": None, "branch": None, "status": None, "hasUserGate": False,
    })
    step: dict[str, Any] = field(default_factory=lambda: {"current": None, "index": 0, "status": None})
    progress: dict[str, int] = field(default_factory=lambda: {
        "tasksCompleted": 0, "tasksTotal": 0, "tasksBlocked": 0, "percentage": 0,
    })
    health: dict[str, Any] = field(default_factory=lambda: {"status": "ready", "issues": []})
    next_action: str = START_PHASE
    blockers: list[str] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=lambda: {
        "featureDir": None, "hasSpec": False, "hasPlan": False, "hasTasks": False,
    })

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "step": self.step,
            "progress": self.progress,
            "health": self.health,
            "nextAction": self.next_action,
            "blockers": list(self.blockers),
            "context": self.context,
        }


def _error_snapshot(code: str, message: str, blocker: str) -> StatusSnapshot:
    return StatusSnapshot(
        health={"status": "error", "issues": [{"code": code, "severity": "error", "message": message}]},
        next_action=FIX_HEALTH,
        blockers=[blocker],
    )


def _health_summary(report: HealthReport) -> dict[str, Any]:
    return {
        "status": report.status,
        "issues": [
            {"code": i.code, "severity": i.severity.value, "message": i.message} for i in report.issues
        ],
    }


def get_status(root: Path | None) -> StatusSnapshot:
    """Aggregate state, roadmap, tasks and health into one snapshot.

    Never raises for a broken project: the snapshot reports it instead.
    """
    if root is None:
        return _error_snapshot("NO_PROJECT", "Not in a SpecFlow project", "Not in a SpecFlow project directory")
    try:
        state = read_state(root)
    except SpecflowError as exc:
        code = "NO_STATE" if exc.code == "NOT_FOUND" else "STATE_INVALID"
        blocker = 'No state file - run "specflow state init"' if code == "NO_STATE" else exc.message
        return _error_snapshot(code, exc.message, blocker)

    snap = StatusSnapshot()
    number = get_state_value(state, "orchestration.phase.number")
    phase_status = get_state_value(state, "orchestration.phase.status")
    snap.phase = {
        "number": number,
        "name": get_state_value(state, "orchestration.phase.name"),
        "branch": get_state_value(state, "orchestration.phase.branch"),
        "status": phase_status,
        "hasUserGate": bool(get_state_value(state, "orchestration.phase.hasUserGate", False)),
    }
    if number:
        try:
            phase = get_phase_by_number(read_roadmap(root), str(number))
        except SpecflowError:
            phase = None
        if phase is not None:
            snap.phase["hasUserGate"] = phase.has_user_gate

    step_current = get_state_value(state, "orchestration.step.current")
    step_status = get_state_value(state, "orchestration.step.status")
    try:
        step_index = int(get_state_value(state, "orchestration.step.index", 0) or 0)
    except (TypeError, ValueError):
        step_index = 0
    snap.step = {"current": step_current, "index": step_index, "status": step_status}

    has_min_artifacts = False
    if number and phase_status and phase_status != "not_started":
        feature_dir = resolve_feature_dir(root, state=state)
        if feature_dir is not None:
            artifacts = feature_artifacts(feature_dir)
            has_min_artifacts = artifacts.has_min_artifacts
            snap.context = {
                "featureDir": str(feature_dir),
                "hasSpec": artifacts.spec,
                "hasPlan": artifacts.plan,
                "hasTasks": artifacts.tasks,
            }
            try:
                progress = read_tasks(feature_dir).progress if artifacts.tasks else None
            except SpecflowError:
                # the health check reports the unreadable file
                progress = None
            if progress is not None:
                snap.progress = {
                    "tasksCompleted": progress.completed,
                    "tasksTotal": progress.total,
                    "tasksBlocked": progress.blocked,
                    "percentage": percent(progress.completed, progress.total),
                }

    try:
        report = run_health_check(root)
    except SpecflowError as exc:
        return _error_snapshot("HEALTH_CHECK_FAILED", exc.message, exc.message)
    snap.health = _health_summary(report)

    if step_status == "blocked":
        snap.blockers.append("Current step is blocked")
    elif step_status == "failed":
        snap.blockers.append("Current step failed")
    snap.blockers += [i.message for i in report.issues if i.severity == Severity.ERROR]

    total, completed = snap.progress["tasksTotal"], snap.progress["tasksCompleted"]
    snap.next_action = determine_next_action(
        phase_status,
        step_current,
        step_status,
        report.status,
        total > 0 and completed == total,
        has_min_artifacts,
        snap.phase["hasUserGate"],
    )
    return snap
