"""ROADMAP.md phase table: parsing, in-place row edits, hotfix numbering.

Expected table::

    | Phase | Name | Status | Verification Gate |
    |-------|------|--------|-------------------|
    | 0010  | Setup | Complete | All tests pass |
    | 0020  | Auth  | In Progress | USER GATE: manual review |
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from specflow import log
from specflow.config import roadmap_path
from specflow.errors import NotFoundError, ValidationError
from specflow.io_utils import atomic_write_text, read_markdown
from specflow.tasks.model import percent


class PhaseStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    AWAITING_USER = "awaiting_user"
    BLOCKED = "blocked"


STATUS_TEXT: dict[PhaseStatus, str] = {
    PhaseStatus.NOT_STARTED: "Not Started",
    PhaseStatus.IN_PROGRESS: "In Progress",
    PhaseStatus.COMPLETE: "Complete",
    PhaseStatus.AWAITING_USER: "Awaiting User",
    PhaseStatus.BLOCKED: "Blocked",
}

# Checked in order; the first hit wins.
_STATUS_SYNONYMS: tuple[tuple[PhaseStatus, tuple[str, ...]], ...] = (
    (PhaseStatus.COMPLETE, ("✅", "complete", "done")),
    (PhaseStatus.IN_PROGRESS, ("🔄", "in progress", "active")),
    (PhaseStatus.AWAITING_USER, ("⏳", "awaiting", "waiting")),
    (PhaseStatus.BLOCKED, ("🚫", "blocked")),
    (PhaseStatus.NOT_STARTED, ("⬜", "not started", "pending")),
)

USER_GATE_MARKER = "USER GATE"

_PHASE_NUMBER_RE = re.compile(r"(\d{4})")
_SEPARATOR_RE = re.compile(r"^\|[-:\s|]+\|$")
_PROJECT_RE = re.compile(r"^\*\*Project\*\*:\s*(.+)")
_SCHEMA_RE = re.compile(r"^\*\*Schema Version\*\*:\s*(.+)")


@dataclass
class Phase:
    number: str
    name: str = ""
    status: PhaseStatus = PhaseStatus.NOT_STARTED
    has_user_gate: bool = False
    verification_gate: str | None = None
    line: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "name": self.name,
            "status": self.status.value,
            "hasUserGate": self.has_user_gate,
            "verificationGate": self.verification_gate,
            "line": self.line,
        }


@dataclass
class Roadmap:
    file_path: Path | None = None
    project_name: str | None = None
    schema_version: str | None = None
    phases: list[Phase] = field(default_factory=list)

    @property
    def active_phase(self) -> Phase | None:
        return next((p for p in self.phases if p.status == PhaseStatus.IN_PROGRESS), None)

    @property
    def next_phase(self) -> Phase | None:
        return select_next_phase(self)

    @property
    def progress(self) -> dict[str, int]:
        total = len(self.phases)
        completed = sum(1 for p in self.phases if p.status == PhaseStatus.COMPLETE)
        return {"total": total, "completed": completed, "percentage": percent(completed, total)}

    def to_dict(self) -> dict[str, Any]:
        active, nxt = self.active_phase, self.next_phase
        return {
            "filePath": str(self.file_path) if self.file_path else None,
            "projectName": self.project_name,
            "schemaVersion": self.schema_version,
            "phases": [p.to_dict() for p in self.phases],
            "activePhase": active.to_dict() if active else None,
            "nextPhase": nxt.to_dict() if nxt else None,
            "progress": self.progress,
        }


# ── Parsing ──────────────────────────────────────────────────────────


def parse_phase_status(cell: str) -> PhaseStatus:
    """Map free status text (emoji, synonyms, any case) to the canonical status."""
    lower = cell.lower().replace("_", " ")
    for status, tokens in _STATUS_SYNONYMS:
        if any(token in lower for token in tokens):
            return status
    return PhaseStatus.NOT_STARTED


def coerce_phase_status(value: str) -> PhaseStatus:
    """Accept an enum value (``in_progress``) or any display synonym."""
    try:
        return PhaseStatus(value)
    except ValueError:
        pass
    if not value.strip():
        raise ValidationError("Empty phase status", f"Use one of: {', '.join(s.value for s in PhaseStatus)}")
    return parse_phase_status(value)


def has_user_gate(text: str) -> bool:
    return USER_GATE_MARKER in text.upper()


def _split_row(row: str) -> list[str]:
    inner = row.strip()
    if inner.startswith("|"):
        inner = inner[1:]
    if inner.endswith("|"):
        inner = inner[:-1]
    return [c.strip() for c in inner.split("|")]


def _is_header(line: str) -> bool:
    return "|" in line and "Phase" in line and "Status" in line


def parse_table_row(row: str, line_number: int) -> Phase | None:
    cells = _split_row(row)
    if len(cells) < 3:
        return None
    m = _PHASE_NUMBER_RE.search(cells[0])
    if not m:
        return None
    status_cell = cells[2]
    gate_cell = cells[3] if len(cells) > 3 else ""
    return Phase(
        number=m.group(1),
        name=cells[1],
        status=parse_phase_status(status_cell),
        has_user_gate=has_user_gate(gate_cell) or has_user_gate(status_cell),
        verification_gate=gate_cell or None,
        line=line_number,
    )


def parse_roadmap(content: str, source_path: Path | str | None = None) -> Roadmap:
    """Parse ROADMAP.md *content*. Never raises on malformed tables."""
    roadmap = Roadmap(file_path=Path(source_path) if source_path else None)
    in_table = False
    header_seen = False

    for idx, raw in enumerate(content.split("\n")):
        line = raw.rstrip("\r")

        m = _PROJECT_RE.match(line)
        if m:
            roadmap.project_name = m.group(1).strip()
            continue
        m = _SCHEMA_RE.match(line)
        if m:
            roadmap.schema_version = m.group(1).strip()
            continue

        if _is_header(line):
            in_table, header_seen = True, False
            continue
        if in_table and _SEPARATOR_RE.match(line.strip()):
            header_seen = True
            continue
        if in_table and header_seen and line.startswith("|"):
            phase = parse_table_row(line, idx + 1)
            if phase is not None:
                roadmap.phases.append(phase)
            continue
        if in_table and header_seen and line.strip():
            in_table = header_seen = False

    return roadmap


def read_roadmap(root: Path) -> Roadmap:
    path = roadmap_path(root)
    if not path.is_file():
        raise NotFoundError("ROADMAP.md", f"No roadmap file found at {path}")
    return parse_roadmap(read_markdown(path), path)


# ── Queries ──────────────────────────────────────────────────────────


def select_next_phase(
    roadmap: Roadmap,
    key: Callable[[Phase], Any] | None = None,
) -> Phase | None:
    """First not-started phase. Document order unless *key* gives another ordering."""
    pending = [p for p in roadmap.phases if p.status == PhaseStatus.NOT_STARTED]
    if key is not None:
        pending = sorted(pending, key=key)
    return pending[0] if pending else None


def get_phase_by_number(roadmap: Roadmap, number: str) -> Phase | None:
    return next((p for p in roadmap.phases if p.number == number), None)


def get_phases_by_status(roadmap: Roadmap, status: PhaseStatus) -> list[Phase]:
    return [p for p in roadmap.phases if p.status == status]


def has_pending_user_gates(roadmap: Roadmap) -> bool:
    return any(
        p.has_user_gate and p.status in (PhaseStatus.IN_PROGRESS, PhaseStatus.AWAITING_USER)
        for p in roadmap.phases
    )


def calculate_next_hotfix(roadmap: Roadmap) -> str | None:
    """Lowest free hotfix slot (base+1..base+9) for the active or last phase.

    ``base`` is the phase number rounded down to a multiple of ten. Returns
    ``None`` when the roadmap is empty or all nine slots are taken.
    """
    if not roadmap.phases:
        return None
    anchor = roadmap.active_phase or roadmap.phases[-1]
    base = int(anchor.number) // 10 * 10
    taken = {p.number for p in roadmap.phases}
    for offset in range(1, 10):
        candidate = f"{base + offset:04d}"
        if candidate not in taken:
            return candidate
    return None


# ── Mutation ─────────────────────────────────────────────────────────


@dataclass
class RowInsert:
    inserted: bool
    file_path: Path
    line: int = -1

    def to_dict(self) -> dict[str, Any]:
        return {"inserted": self.inserted, "filePath": str(self.file_path), "line": self.line}


@dataclass
class StatusUpdate:
    updated: bool
    file_path: Path

    def to_dict(self) -> dict[str, Any]:
        return {"updated": self.updated, "filePath": str(self.file_path)}


def format_phase_row(number: str, name: str, status: PhaseStatus, gate: str = "") -> str:
    return f"| {number} | {name} | {STATUS_TEXT[status]} | {gate} |"


def _table_bounds(lines: list[str]) -> tuple[int, int] | None:
    """(header index, index of the last row) of the first phase table."""
    for idx, raw in enumerate(lines):
        if not _is_header(raw.rstrip("\r")):
            continue
        last = idx
        for j in range(idx + 1, len(lines)):
            if lines[j].startswith("|"):
                last = j
            else:
                break
        return idx, last
    return None


def insert_phase_row(
    path: Path,
    number: str,
    name: str,
    status: PhaseStatus = PhaseStatus.NOT_STARTED,
    gate: str = "",
) -> RowInsert:
    """Add a row after the last phase sharing *number*'s 3-digit base, else at the table end.

    Nothing is written when the table is missing or *number* already exists.
    """
    if not path.is_file():
        raise NotFoundError("ROADMAP.md", f"No roadmap file found at {path}")
    content = read_markdown(path, keep_newlines=True)
    roadmap = parse_roadmap(content, path)
    lines = content.split("\n")

    bounds = _table_bounds(lines)
    if bounds is None or get_phase_by_number(roadmap, number) is not None:
        return RowInsert(inserted=False, file_path=path)

    _, last_row = bounds
    same_base = [p for p in roadmap.phases if p.number[:3] == number[:3] and p.line - 1 <= last_row]
    insert_after = same_base[-1].line - 1 if same_base else last_row

    eol = "\r" if lines[insert_after].endswith("\r") else ""
    lines.insert(insert_after + 1, format_phase_row(number, name, status, gate) + eol)
    atomic_write_text(path, "\n".join(lines))
    log.debug(f"Inserted phase {number} into {path} at line {insert_after + 2}")
    return RowInsert(inserted=True, file_path=path, line=insert_after + 2)


def update_phase_status(path: Path, number: str, status: PhaseStatus) -> StatusUpdate:
    """Rewrite only the Status cell of phase *number*.

    Returns ``updated=False`` without writing when the phase is not present.
    """
    if not path.is_file():
        raise NotFoundError("ROADMAP.md", f"No roadmap file found at {path}")
    content = read_markdown(path, keep_newlines=True)
    phase = get_phase_by_number(parse_roadmap(content, path), number)
    if phase is None:
        return StatusUpdate(updated=False, file_path=path)

    lines = content.split("\n")
    idx = phase.line - 1
    parts = lines[idx].split("|")
    # parts[0] is whatever precedes the first pipe; the status cell is the third cell
    parts[3] = f" {STATUS_TEXT[status]} "
    lines[idx] = "|".join(parts)
    atomic_write_text(path, "\n".join(lines))
    log.debug(f"Phase {number} -> {STATUS_TEXT[status]} in {path}")
    return StatusUpdate(updated=True, file_path=path)


# ── Serialization ────────────────────────────────────────────────────


def render_roadmap(roadmap: Roadmap) -> str:
    out: list[str] = []
    if roadmap.project_name:
        out.append(f"**Project**: {roadmap.project_name}")
    if roadmap.schema_version:
        out.append(f"**Schema Version**: {roadmap.schema_version}")
    if out:
        out.append("")
    out += [
        "| Phase | Name | Status | Verification Gate |",
        "|-------|------|--------|-------------------|",
    ]
    for p in roadmap.phases:
        gate = p.verification_gate or ""
        status_text = STATUS_TEXT[p.status]
        if p.has_user_gate and not has_user_gate(gate):
            status_text = f"{status_text} ({USER_GATE_MARKER})"
        out.append(f"| {p.number} | {p.name} | {status_text} | {gate} |")
    out.append("")
    return "\n".join(out)
