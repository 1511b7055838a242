"""Workflow gates and the combined ``check`` result."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from specflow.checklist import (
    ChecklistStatus,
    are_all_checklists_complete,
    checklist_type_for,
    read_feature_checklists,
)
from specflow.config import memory_dir
from specflow.context import feature_artifacts, missing_artifacts, resolve_feature_dir
from specflow.errors import SpecflowError
from specflow.evidence import has_evidence, read_evidence
from specflow.health import HealthIssue, Severity, apply_fixes, run_health_check
from specflow.io_utils import read_markdown
from specflow.state import get_state_value, read_raw_state
from specflow.tasks.parser import detect_circular_dependencies, read_tasks

GATES: tuple[str, ...] = ("design", "implement", "verify", "memory")

_PLACEHOLDER_RE = re.compile(r"\b(TODO|TBD|TKTK)\b|\?\?\?|<placeholder>", re.IGNORECASE)
_AGENT_DIRECTIVE_RE = re.compile(r"^>\s*\*\*Agents?\*\*:", re.MULTILINE)
RECOMMENDED_MEMORY_DOCS: tuple[str, ...] = ("tech-stack.md", "coding-standards.md")


@dataclass
class GateResult:
    passed: bool
    reason: str | None = None
    checks: dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"passed": self.passed, "reason": self.reason, "checks": dict(self.checks)}


def _no_feature() -> GateResult:
    return GateResult(False, "No active feature", {"feature_exists": False})


def _all_checks(checks: dict[str, bool], reason: str) -> GateResult:
    passed = all(checks.values())
    return GateResult(passed, None if passed else reason, checks)


def check_design_gate(feature_dir: Path | None) -> GateResult:
    if feature_dir is None:
        return _no_feature()
    artifacts = feature_artifacts(feature_dir)
    types = {checklist_type_for(name) for name in artifacts.checklists}
    return _all_checks(
        {
            "spec_exists": artifacts.spec,
            "plan_exists": artifacts.plan,
            "tasks_exist": artifacts.tasks,
            "checklists_exist": {"implementation", "verification"} <= types,
        },
        "Missing design artifacts",
    )


def check_implement_gate(feature_dir: Path | None) -> GateResult:
    if feature_dir is None:
        return _no_feature()
    if not (feature_dir / "tasks.md").is_file():
        return GateResult(False, "Cannot read tasks", {"tasks_readable": False})
    try:
        progress = read_tasks(feature_dir).progress
    except SpecflowError:
        return GateResult(False, "Cannot read tasks", {"tasks_readable": False})
    checks = {
        "tasks_complete": progress.completed == progress.total,
        "no_blocked_tasks": progress.blocked == 0,
    }
    if not checks["tasks_complete"]:
        return GateResult(False, f"{progress.total - progress.completed} tasks incomplete", checks)
    return _all_checks(checks, "Blocked tasks remain")


def check_verify_gate(feature_dir: Path | None, implement: GateResult) -> GateResult:
    """Implementation done, checklists closed, and evidence present where tracked.

    Evidence is only required once the feature keeps a ledger; without one
    nothing is required and the check passes.
    """
    if feature_dir is None:
        return _no_feature()
    checklists = read_feature_checklists(feature_dir)
    evidence = read_evidence(feature_dir)
    required: list[str] = []
    if evidence is not None and checklists.verification is not None:
        required = [i.id for i in checklists.verification.items if i.status == ChecklistStatus.DONE]
    return _all_checks(
        {
            "implementation_gate": implement.passed,
            "checklists_complete": are_all_checklists_complete(checklists),
            "evidence_complete": has_evidence(evidence, required).complete,
        },
        "Verification requirements not met",
    )


def check_memory_gate(root: Path) -> GateResult:
    directory = memory_dir(root)
    if not directory.is_dir():
        return GateResult(False, "No memory directory", {"memory_dir_exists": False})
    checks = {"memory_dir_exists": True}
    constitution = directory / "constitution.md"
    checks["constitution_exists"] = constitution.is_file()
    if checks["constitution_exists"]:
        content = read_markdown(constitution)
        checks["no_placeholders"] = _PLACEHOLDER_RE.search(content) is None
        checks["has_agent_directive"] = _AGENT_DIRECTIVE_RE.search(content) is not None
    checks["has_recommended_docs"] = any((directory / doc).is_file() for doc in RECOMMENDED_MEMORY_DOCS)
    # recommended docs are advisory only
    passed = (
        checks["constitution_exists"]
        and checks.get("no_placeholders", True)
        and checks.get("has_agent_directive", True)
    )
    return GateResult(passed, None if passed else "Memory documents need attention", checks)


def workflow_issues(feature_dir: Path | None, state: dict[str, Any] | None) -> list[HealthIssue]:
    """Issues that compare the state's step with what is on disk."""
    if state is None or feature_dir is None:
        return []
    issues: list[HealthIssue] = []
    current = get_state_value(state, "orchestration.step.current")
    try:
        index = int(get_state_value(state, "orchestration.step.index", 0) or 0)
    except (TypeError, ValueError):
        index = 0

    missing = missing_artifacts(feature_artifacts(feature_dir))
    if index >= 2 and missing:
        issues.append(HealthIssue(
            "STEP_ARTIFACT_MISMATCH", Severity.WARNING,
            f"In implement step but missing: {', '.join(missing)}",
            "Create the missing artifacts, or reset the step",
        ))

    if not (feature_dir / "tasks.md").is_file():
        return issues
    try:
        doc = read_tasks(feature_dir)
    except SpecflowError:
        # reported as TASKS_UNREADABLE by the health check
        return issues
    if doc.all_done and current == "implement":
        issues.append(HealthIssue(
            "TASKS_COMPLETE_STEP_IMPLEMENT", Severity.INFO,
            "All tasks complete but step is still implement",
            "Run: specflow state set orchestration.step.current=verify", True,
        ))
    cycles = detect_circular_dependencies(doc)
    if cycles:
        issues.append(HealthIssue(
            "CIRCULAR_DEPENDENCIES", Severity.ERROR, f"Circular dependencies found: {'; '.join(cycles)}",
        ))
    return issues


@dataclass
class CheckResult:
    passed: bool
    gates: dict[str, GateResult]
    issues: list[HealthIssue] = field(default_factory=list)
    fixed: list[str] = field(default_factory=list)
    suggested_action: str | None = None

    def count(self, severity: Severity) -> int:
        return sum(1 for i in self.issues if i.severity == severity)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "passed": self.passed,
            "summary": {
                "errors": self.count(Severity.ERROR),
                "warnings": self.count(Severity.WARNING),
                "info": self.count(Severity.INFO),
            },
            "gates": {name: gate.to_dict() for name, gate in self.gates.items()},
            "issues": [i.to_dict() for i in self.issues],
            "autoFixableCount": sum(1 for i in self.issues if i.auto_fixable),
            "suggestedAction": self.suggested_action,
        }
        if self.fixed:
            data["fixed"] = list(self.fixed)
        return data


def suggest_action(issues: list[HealthIssue], gates: dict[str, GateResult]) -> str:
    if any(i.severity == Severity.ERROR for i in issues):
        return "fix_errors"
    if any(i.auto_fixable for i in issues):
        return "run_check_fix"
    if not gates["design"].passed:
        return "run_design"
    if not gates["implement"].passed:
        return "complete_tasks"
    if not gates["verify"].passed:
        return "complete_verification"
    return "ready_to_merge"


def _load_state(root: Path) -> dict[str, Any] | None:
    try:
        return read_raw_state(root)
    except SpecflowError:
        return None


def _collect(root: Path, feature_dir: Path | None) -> list[HealthIssue]:
    issues = list(run_health_check(root).issues)
    return issues + workflow_issues(feature_dir, _load_state(root))


def run_check(root: Path, *, fix: bool = False, gate: str | None = None) -> CheckResult:
    """Health issues plus gate results; ``fix`` repairs what can be repaired first."""
    state = _load_state(root)
    feature_dir = resolve_feature_dir(root, state=state)

    issues = _collect(root, feature_dir)
    fixed: list[str] = []
    if fix:
        fixed = apply_fixes(root, issues)
        if fixed:
            issues = _collect(root, feature_dir)

    design = check_design_gate(feature_dir)
    implement = check_implement_gate(feature_dir)
    gates = {
        "design": design,
        "implement": implement,
        "verify": check_verify_gate(feature_dir, implement),
        "memory": check_memory_gate(root),
    }

    if gate is not None:
        selected = gates[gate]
        gate_issues = [] if selected.passed else [HealthIssue(
            f"{gate.upper()}_GATE_FAILED", Severity.ERROR, selected.reason or f"{gate} gate not passed",
        )]
        return CheckResult(
            passed=selected.passed,
            gates=gates,
            issues=gate_issues,
            fixed=fixed,
            suggested_action=suggest_action(gate_issues, gates),
        )

    errors = sum(1 for i in issues if i.severity == Severity.ERROR)
    return CheckResult(
        passed=errors == 0 and design.passed and implement.passed,
        gates=gates,
        issues=issues,
        fixed=fixed,
        suggested_action=suggest_action(issues, gates),
    )
