"""Phase lifecycle: open, close, add, archive, defer, and state/roadmap sync.

Each operation reads the files it needs, validates, then writes. Dry runs
compute the same result without touching disk.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from specflow import log
from specflow.backlog import DeferredItem, add_to_backlog, scan_deferred_items
from specflow.config import roadmap_path
from specflow.context import find_feature_dir_by_number
from specflow.errors import NotFoundError, ValidationError
from specflow.history import (
    archive_phase,
    archive_phase_specs,
    count_files,
    create_phase_detail_file,
    is_phase_archived,
)
from specflow.io_utils import slugify, today, utc_timestamp
from specflow.roadmap import (
    USER_GATE_MARKER,
    Phase,
    PhaseStatus,
    calculate_next_hotfix,
    get_phase_by_number,
    insert_phase_row,
    read_roadmap,
    update_phase_status,
)
from specflow.state import (
    append_history,
    completed_phase_numbers,
    get_state_value,
    history_entries,
    read_state,
    reset_phase,
    set_state_value,
    start_phase,
    write_state,
)
from specflow.tasks.parser import read_tasks

_PHASE_NUMBER_RE = re.compile(r"^\d{4}$")


def branch_name(number: str, name: str) -> str:
    return f"{number}-{slugify(name)}"


def validate_phase_number(number: str) -> str:
    if not _PHASE_NUMBER_RE.match(number):
        raise ValidationError(
            f"Invalid phase number: {number}",
            "Phase numbers are 4 digits, e.g. 0010",
        )
    return number


def _phase_ref(phase: Phase | None) -> dict[str, str] | None:
    return {"number": phase.number, "name": phase.name} if phase else None


# ── Open ─────────────────────────────────────────────────────────────


@dataclass
class PhaseOpened:
    number: str
    name: str
    branch: str
    is_hotfix: bool = False
    detail_file: Path | None = None

    @property
    def message(self) -> str:
        if self.is_hotfix:
            return f"Hotfix phase {self.number} created and started"
        return f"Phase {self.number} started"

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": "created" if self.is_hotfix else "opened",
            "phase": {"number": self.number, "name": self.name, "branch": self.branch},
            "isHotfix": self.is_hotfix,
            "detailFile": str(self.detail_file) if self.detail_file else None,
            "message": self.message,
        }


def _ensure_no_active_phase(state: dict[str, Any]) -> None:
    number = get_state_value(state, "orchestration.phase.number")
    if number and get_state_value(state, "orchestration.phase.status") == "in_progress":
        raise ValidationError(
            f"Phase {number} is still in progress",
            'Use "specflow phase close" to complete it first',
        )


def open_phase(root: Path, number: str | None = None) -> PhaseOpened:
    """Start *number*, or the roadmap's next not-started phase."""
    roadmap = read_roadmap(root)
    state = read_state(root)
    _ensure_no_active_phase(state)

    if number:
        phase = get_phase_by_number(roadmap, validate_phase_number(number))
        if phase is None:
            raise NotFoundError(
                f"Phase {number}",
                f"Available phases: {', '.join(p.number for p in roadmap.phases) or '(none)'}",
            )
    else:
        phase = roadmap.next_phase
        if phase is None:
            raise ValidationError(
                "No pending phases",
                "All phases are complete or in progress. Use --hotfix to create a new phase.",
            )
    if phase.status == PhaseStatus.IN_PROGRESS:
        raise ValidationError(
            f"Phase {phase.number} is already in progress",
            'Use "specflow phase close" to complete it first',
        )

    branch = branch_name(phase.number, phase.name)
    state = start_phase(state, phase.number, phase.name, branch=branch, has_user_gate=phase.has_user_gate)
    write_state(state, root)
    update_phase_status(roadmap_path(root), phase.number, PhaseStatus.IN_PROGRESS)
    log.debug(f"Opened phase {phase.number} on branch {branch}")
    return PhaseOpened(number=phase.number, name=phase.name, branch=branch)


def open_hotfix(root: Path, title: str | None = None) -> PhaseOpened:
    """Insert the next free hotfix slot as an in-progress phase and start it."""
    roadmap = read_roadmap(root)
    state = read_state(root)
    number = calculate_next_hotfix(roadmap)
    if number is None:
        raise ValidationError(
            "Cannot create hotfix",
            "No phases found in ROADMAP.md, or all nine hotfix slots are used",
        )
    name = title or f"Hotfix {today().replace('-', '')}"

    inserted = insert_phase_row(roadmap_path(root), number, name, PhaseStatus.IN_PROGRESS)
    if not inserted.inserted:
        raise ValidationError("Failed to insert phase", "Could not find the phase table in ROADMAP.md")
    detail = create_phase_detail_file(root, number, name, status="In Progress")

    branch = branch_name(number, name)
    write_state(start_phase(state, number, name, branch=branch), root)
    return PhaseOpened(number=number, name=name, branch=branch, is_hotfix=True, detail_file=detail)


# ── Close ────────────────────────────────────────────────────────────


@dataclass
class PhaseClosed:
    number: str
    name: str
    dry_run: bool = False
    archived: bool = False
    deferred: dict[str, int] = field(default_factory=dict)
    backlog_added: int = 0
    next_phase: dict[str, str] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": "dry_run" if self.dry_run else "closed",
            "phase": {"number": self.number, "name": self.name},
            "archived": self.archived,
            "deferredItems": dict(self.deferred),
            "backlogAdded": self.backlog_added,
            "nextPhase": self.next_phase,
            "message": f"Would close Phase {self.number}" if self.dry_run else f"Phase {self.number} complete",
        }


def close_phase(root: Path, *, dry_run: bool = False) -> PhaseClosed:
    """Mark the active phase complete, archive it, push deferred items to the backlog."""
    state = read_state(root)
    number = get_state_value(state, "orchestration.phase.number")
    name = get_state_value(state, "orchestration.phase.name")
    if not number or not name:
        raise ValidationError("No active phase", 'Use "specflow phase open" to start a phase first')
    if get_state_value(state, "orchestration.phase.status") == "complete":
        raise ValidationError(
            f"Phase {number} is already complete",
            'Use "specflow phase open" to start the next phase',
        )

    roadmap = read_roadmap(root)
    nxt = next(
        (p for p in roadmap.phases if p.status == PhaseStatus.NOT_STARTED and p.number != number),
        None,
    )
    deferred = scan_deferred_items(root, number, name)
    result = PhaseClosed(
        number=number,
        name=name,
        dry_run=dry_run,
        deferred={"count": deferred.count, "withTarget": deferred.with_target, "toBacklog": deferred.to_backlog},
        next_phase=_phase_ref(nxt),
    )
    if dry_run:
        return result

    update_phase_status(roadmap_path(root), number, PhaseStatus.COMPLETE)
    result.archived = archive_phase(root, number, name).archived
    result.backlog_added = add_to_backlog(
        root, [i for i in deferred.items if i.goes_to_backlog], source_phase=number
    )

    state = append_history(state, {
        "type": "phase_completed",
        "phase_number": number,
        "phase_name": name,
        "branch": get_state_value(state, "orchestration.phase.branch"),
        "completed_at": utc_timestamp(),
        "tasks_completed": get_state_value(state, "orchestration.progress.tasks_completed", 0),
        "tasks_total": get_state_value(state, "orchestration.progress.tasks_total", 0),
    })
    write_state(reset_phase(state, result.next_phase), root)
    return result


# ── Add ──────────────────────────────────────────────────────────────


def add_phase(
    root: Path,
    number: str,
    name: str,
    *,
    gate: str | None = None,
    user_gate: bool = False,
) -> dict[str, Any]:
    validate_phase_number(number)
    if not name.strip():
        raise ValidationError("Phase name cannot be empty", "Pass a short kebab-case name, e.g. core-engine")
    roadmap = read_roadmap(root)
    existing = get_phase_by_number(roadmap, number)
    if existing is not None:
        raise ValidationError(f"Phase {number} already exists: {existing.name}", "Choose an unused phase number")

    verification = gate or ""
    if user_gate:
        verification = f"**{USER_GATE_MARKER}**: {gate}" if gate else f"**{USER_GATE_MARKER}**"

    inserted = insert_phase_row(roadmap_path(root), number, name, PhaseStatus.NOT_STARTED, verification)
    if not inserted.inserted:
        raise ValidationError("Failed to insert phase into ROADMAP.md", "Check that ROADMAP.md has a phase table")
    return {
        "success": True,
        "phase": {
            "number": number,
            "name": name,
            "status": PhaseStatus.NOT_STARTED.value,
            "verificationGate": verification or None,
        },
        "filePath": str(inserted.file_path),
        "line": inserted.line,
    }


# ── Archive ──────────────────────────────────────────────────────────


def archive_completed_phase(
    root: Path,
    number: str,
    *,
    dry_run: bool = False,
    force: bool = False,
) -> dict[str, Any]:
    """Put a completed phase into HISTORY.md and move its specs under ``.specify/archive``."""
    validate_phase_number(number)
    roadmap = read_roadmap(root)
    phase = get_phase_by_number(roadmap, number)
    if phase is None:
        raise NotFoundError(
            f"Phase {number}",
            f"Available phases: {', '.join(p.number for p in roadmap.phases) or '(none)'}",
        )
    if phase.status != PhaseStatus.COMPLETE and not force:
        raise ValidationError(
            f"Phase {number} is not complete (status: {phase.status.value})",
            "Use --force to archive anyway",
        )

    in_history = is_phase_archived(root, number)
    feature_dir = find_feature_dir_by_number(root, number)
    tasks = {"found": False, "total": 0, "completed": 0, "incomplete": 0}
    if feature_dir is not None and (feature_dir / "tasks.md").is_file():
        progress = read_tasks(feature_dir).progress
        tasks = {
            "found": True,
            "total": progress.total,
            "completed": progress.completed,
            "incomplete": progress.total - progress.completed - progress.deferred,
        }

    result: dict[str, Any] = {
        "phase": {"number": phase.number, "name": phase.name},
        "history": {"alreadyArchived": in_history, "archived": False},
        "specs": {
            "found": feature_dir is not None,
            "fileCount": count_files(feature_dir) if feature_dir else 0,
            "archived": False,
            "archivePath": None,
        },
        "tasks": tasks,
    }
    if in_history and feature_dir is None:
        result.update(action="skipped", message=f"Phase {number} already fully archived")
        return result
    if dry_run:
        result.update(action="dry_run", message=f"Would archive Phase {number}")
        return result

    if not in_history:
        result["history"]["archived"] = archive_phase(root, number, phase.name).archived
    target = archive_phase_specs(root, number)
    if target is not None:
        result["specs"].update(archived=True, archivePath=str(target))
    result.update(action="archived", message=f"Phase {number} archived")
    return result


# ── Defer ────────────────────────────────────────────────────────────


def defer_items(
    root: Path,
    descriptions: list[str],
    *,
    reason: str | None = None,
    priority: str = "P2",
) -> dict[str, Any]:
    items = [d.strip() for d in descriptions if d.strip()]
    if not items:
        raise ValidationError("Nothing to defer", 'Pass one or more item descriptions, e.g. "Dark mode"')
    source = None
    try:
        source = get_state_value(read_state(root), "orchestration.phase.number")
    except NotFoundError:
        pass
    added = add_to_backlog(
        root,
        [DeferredItem(description=d, source="Manual", reason=reason) for d in items],
        source_phase=source,
        priority=priority,
    )
    return {"added": added, "priority": priority, "items": items, "sourcePhase": source}


# ── Sync ─────────────────────────────────────────────────────────────


@dataclass
class SyncResult:
    dry_run: bool = False
    changes: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "warning" if self.warnings else "success"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "command": "state sync",
            "dryRun": self.dry_run,
            "changes": list(self.changes),
            "warnings": list(self.warnings),
        }


def sync_state(root: Path, *, dry_run: bool = False) -> SyncResult:
    """Bring the state in line with ROADMAP.md.

    Completed roadmap phases missing from ``actions.history`` are added, and a
    roadmap in-progress phase is adopted when the state has no active phase.
    """
    result = SyncResult(dry_run=dry_run)
    state = read_state(root)
    if not roadmap_path(root).is_file():
        result.warnings.append("ROADMAP.md not found")
        return result
    roadmap = read_roadmap(root)
    verb = "Would add" if dry_run else "Added"

    known = completed_phase_numbers(state)
    missing = [p for p in roadmap.phases if p.status == PhaseStatus.COMPLETE and p.number not in known]
    if missing:
        entries = [
            {
                "type": "phase_completed",
                "phase_number": p.number,
                "phase_name": p.name,
                "branch": branch_name(p.number, p.name),
                "completed_at": utc_timestamp(),
                "tasks_completed": 0,
                "tasks_total": 0,
            }
            for p in missing
        ]
        state = set_state_value(state, "actions.history", history_entries(state) + entries)
        for p in missing:
            result.changes.append({
                "type": "history_added",
                "description": f"{verb}: {p.number} - {p.name}",
                "details": {"phaseNumber": p.number, "phaseName": p.name},
            })

    active = roadmap.active_phase
    if active is not None and not get_state_value(state, "orchestration.phase.number"):
        state = start_phase(
            state, active.number, active.name,
            branch=branch_name(active.number, active.name), has_user_gate=active.has_user_gate,
        )
        verb = "Would adopt" if dry_run else "Adopted"
        result.changes.append({
            "type": "phase_synced",
            "description": f"{verb} active phase {active.number} - {active.name}",
            "details": {"phaseNumber": active.number, "phaseName": active.name},
        })

    if result.changes and not dry_run:
        write_state(state, root)
    return result
