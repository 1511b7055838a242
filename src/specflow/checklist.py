"""Feature checklists under ``<feature>/checklists/*.md``.

Item IDs are taken from the item text when authored (``V-001``, ``V-UI1``),
otherwise generated from the checklist type and position (``V-001``).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from specflow import log
from specflow.config import CHECKLISTS_DIR
from specflow.errors import NotFoundError, ValidationError
from specflow.io_utils import atomic_write_text, read_markdown
from specflow.tasks.model import MarkResult, SectionStatus, percent
from specflow.tasks.mutate import MARK_COMPLETE, MARK_INCOMPLETE, set_checkbox_glyph


class ChecklistStatus(str, Enum):
    TODO = "todo"
    DONE = "done"
    SKIPPED = "skipped"


CHECKLIST_TYPES: tuple[str, ...] = ("verification", "implementation", "deferred", "other")

_TYPE_PREFIX = {"verification": "V", "implementation": "I", "deferred": "D", "other": "C"}

CHECKLIST_ID_RE = re.compile(r"^[VICD]-[A-Z0-9]+$", re.IGNORECASE)

_ITEM_RE = re.compile(r"^\s*-\s*\[([xX ~\-])\]\s*(.+)$")
_AUTHORED_ID_RE = re.compile(r"^([A-Z]-[A-Z0-9]+)\b", re.IGNORECASE)
_SECTION_RE = re.compile(r"^(#{2,4})\s+(.+)")

_GLYPH_STATUS = {
    "x": ChecklistStatus.DONE,
    "X": ChecklistStatus.DONE,
    " ": ChecklistStatus.TODO,
    "~": ChecklistStatus.SKIPPED,
    "-": ChecklistStatus.SKIPPED,
}


@dataclass
class ChecklistItem:
    id: str
    description: str
    status: ChecklistStatus = ChecklistStatus.TODO
    section: str | None = None
    line: int = 0

    @property
    def is_closed(self) -> bool:
        return self.status in (ChecklistStatus.DONE, ChecklistStatus.SKIPPED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "status": self.status.value,
            "section": self.section,
            "line": self.line,
        }


@dataclass
class ChecklistSection:
    name: str
    items: list[ChecklistItem] = field(default_factory=list)
    is_complete: bool = False
    start_line: int = 0
    end_line: int = 0


@dataclass
class ChecklistDocument:
    name: str
    file_path: Path
    type: str = "other"
    title: str | None = None
    sections: list[ChecklistSection] = field(default_factory=list)
    items: list[ChecklistItem] = field(default_factory=list)

    @property
    def completed(self) -> int:
        return sum(1 for i in self.items if i.status == ChecklistStatus.DONE)

    @property
    def skipped(self) -> int:
        return sum(1 for i in self.items if i.status == ChecklistStatus.SKIPPED)

    @property
    def is_complete(self) -> bool:
        return all(i.is_closed for i in self.items)

    def progress(self) -> dict[str, int]:
        total = len(self.items)
        return {
            "total": total,
            "completed": self.completed,
            "skipped": self.skipped,
            "percentage": percent(self.completed, total),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "filePath": str(self.file_path),
            "type": self.type,
            "title": self.title,
            "items": [i.to_dict() for i in self.items],
            "progress": self.progress(),
        }


@dataclass
class FeatureChecklists:
    feature_dir: Path
    verification: ChecklistDocument | None = None
    implementation: ChecklistDocument | None = None
    deferred: ChecklistDocument | None = None
    other: list[ChecklistDocument] = field(default_factory=list)

    def gating(self) -> list[ChecklistDocument]:
        """Checklists that must be closed before a phase can close (deferred excluded)."""
        return [c for c in (self.verification, self.implementation, *self.other) if c is not None]

    def all(self) -> list[ChecklistDocument]:
        return [c for c in (self.verification, self.implementation, self.deferred, *self.other) if c is not None]


def checklist_type_for(filename: str) -> str:
    lower = filename.lower()
    if "verification" in lower or "verify" in lower:
        return "verification"
    if "implementation" in lower or "implement" in lower:
        return "implementation"
    if "deferred" in lower or "defer" in lower:
        return "deferred"
    return "other"


def _close(section: ChecklistSection, end_line: int) -> None:
    section.end_line = end_line
    section.is_complete = all(i.is_closed for i in section.items)


def parse_checklist(content: str, path: Path | str, type: str | None = None) -> ChecklistDocument:
    path = Path(path)
    doc = ChecklistDocument(name=path.stem, file_path=path, type=type or checklist_type_for(path.name))
    prefix = _TYPE_PREFIX[doc.type]
    auto_index = 1
    current: ChecklistSection | None = None
    lines = content.split("\n")

    for idx, raw in enumerate(lines):
        line = raw.rstrip("\r")
        line_number = idx + 1

        if doc.title is None and line.startswith("# "):
            doc.title = line[2:].strip()
            continue

        heading = _SECTION_RE.match(line)
        if heading:
            # deeper headings stay inside the current section
            if len(heading.group(1)) == 2:
                if current is not None:
                    _close(current, line_number - 1)
                    doc.sections.append(current)
                current = ChecklistSection(name=heading.group(2).strip(), start_line=line_number)
            continue

        m = _ITEM_RE.match(line)
        if not m:
            continue
        description = m.group(2).strip()
        authored = _AUTHORED_ID_RE.match(description)
        if authored:
            item_id = authored.group(1).upper()
        else:
            item_id = f"{prefix}-{auto_index:03d}"
            auto_index += 1
        item = ChecklistItem(
            id=item_id,
            description=description,
            status=_GLYPH_STATUS[m.group(1)],
            section=current.name if current else None,
            line=line_number,
        )
        if current is not None:
            current.items.append(item)
        doc.items.append(item)

    if current is not None:
        _close(current, len(lines))
        doc.sections.append(current)
    return doc


def read_checklist(path: Path) -> ChecklistDocument:
    if not path.is_file():
        raise NotFoundError("Checklist", f"No checklist file found at {path}")
    return parse_checklist(read_markdown(path), path)


def read_feature_checklists(feature_dir: Path) -> FeatureChecklists:
    result = FeatureChecklists(feature_dir=feature_dir)
    directory = feature_dir / CHECKLISTS_DIR
    if not directory.is_dir():
        return result
    for path in sorted(directory.glob("*.md")):
        doc = read_checklist(path)
        if doc.type == "other":
            result.other.append(doc)
        else:
            setattr(result, doc.type, doc)
    return result


def find_next_checklist_item(doc: ChecklistDocument) -> ChecklistItem | None:
    return next((i for i in doc.items if i.status == ChecklistStatus.TODO), None)


def get_checklist_item_by_id(doc: ChecklistDocument, item_id: str) -> ChecklistItem | None:
    return next((i for i in doc.items if i.id == item_id), None)


def are_all_checklists_complete(checklists: FeatureChecklists) -> bool:
    return all(c.is_complete for c in checklists.gating())


def is_checklist_id(token: str) -> bool:
    return bool(CHECKLIST_ID_RE.match(token))


def _locate(checklists: FeatureChecklists, item_id: str) -> tuple[ChecklistDocument, ChecklistItem] | None:
    for doc in checklists.all():
        item = get_checklist_item_by_id(doc, item_id)
        if item is not None:
            return doc, item
    return None


def mark_checklist_items(feature_dir: Path, ids: list[str], status: str = MARK_COMPLETE) -> MarkResult:
    """Check or uncheck checklist items, one atomic write per touched file.

    An unknown ID fails the whole batch before any file is written.
    """
    if status not in (MARK_COMPLETE, MARK_INCOMPLETE):
        raise ValidationError(f"Checklist items cannot be marked {status}", "Use complete or --incomplete")
    if not ids:
        raise ValidationError("No checklist item IDs provided", "Use format: V-001, I-001, V-UI1")
    ids = [i.upper() for i in ids]

    checklists = read_feature_checklists(feature_dir)
    by_file: dict[Path, list[ChecklistItem]] = {}
    unknown: list[str] = []
    for item_id in ids:
        found = _locate(checklists, item_id)
        if found is None:
            unknown.append(item_id)
        else:
            by_file.setdefault(found[0].file_path, []).append(found[1])
    if unknown:
        raise ValidationError(
            f"Unknown checklist item IDs: {', '.join(unknown)}",
            "Valid IDs are in format: V-001, I-001, C-001, D-001, V-UI1",
        )

    glyph = "x" if status == MARK_COMPLETE else " "
    for path, items in by_file.items():
        lines = read_markdown(path, keep_newlines=True).split("\n")
        for item in items:
            idx = item.line - 1
            eol = "\r" if lines[idx].endswith("\r") else ""
            lines[idx] = set_checkbox_glyph(lines[idx].rstrip("\r"), glyph) + eol
        atomic_write_text(path, "\n".join(lines))
        log.debug(f"Marked {', '.join(i.id for i in items)} as {status} in {path}")

    updated = read_feature_checklists(feature_dir)
    gating = updated.gating()
    total = sum(len(c.items) for c in gating)
    completed = sum(c.completed for c in gating)
    all_done = are_all_checklists_complete(updated)

    result = MarkResult(
        marked=ids,
        item_type="checklist",
        new_status=status,
        completed=completed,
        total=total,
        percentage=percent(completed, total),
        step_complete=all_done,
    )
    first = _locate(updated, ids[0])
    if first is not None and first[1].section:
        doc, item = first
        in_section = [i for i in doc.items if i.section == item.section]
        done = sum(1 for i in in_section if i.status == ChecklistStatus.DONE)
        result.section_status = SectionStatus(
            name=item.section, completed=done, total=len(in_section), is_complete=done == len(in_section)
        )
    for doc in gating:
        nxt = find_next_checklist_item(doc)
        if nxt is not None:
            result.next_item = {"id": nxt.id, "description": nxt.description}
            break
    if all_done:
        result.next_action = "ready_to_close"
        result.message = "All checklists complete! Ready to close phase."
    return result
