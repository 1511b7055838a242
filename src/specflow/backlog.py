"""Deferred items and the project BACKLOG.md."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from specflow import log
from specflow.config import backlog_path, specs_dir
from specflow.context import find_feature_dir_by_number
from specflow.errors import ValidationError
from specflow.io_utils import atomic_write_text, read_markdown, slugify, today

PRIORITIES: tuple[str, ...] = ("P1", "P2", "P3")

_PRIORITY_TITLES = {"P1": "High Priority", "P2": "Medium Priority", "P3": "Low Priority"}

_SEPARATOR_RE = re.compile(r"^\|[-:\s|]+\|$")
_LAST_UPDATED_RE = re.compile(r"^\*\*Last Updated\*\*:.*$", re.MULTILINE)

TABLE_HEADER = "| Item | Source | Reason Deferred | Notes |"
TABLE_SEPARATOR = "|------|--------|-----------------|-------|"


@dataclass
class DeferredItem:
    description: str
    source: str = ""
    reason: str | None = None
    target_phase: str | None = None

    @property
    def goes_to_backlog(self) -> bool:
        return not self.target_phase or self.target_phase.lower() == "backlog"

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "source": self.source,
            "reason": self.reason,
            "targetPhase": self.target_phase,
        }


@dataclass
class DeferredSummary:
    count: int = 0
    with_target: int = 0
    to_backlog: int = 0
    items: list[DeferredItem] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "withTarget": self.with_target,
            "toBacklog": self.to_backlog,
            "items": [i.to_dict() for i in self.items],
        }


def _cells(row: str) -> list[str]:
    inner = row.strip()
    inner = inner[1:] if inner.startswith("|") else inner
    inner = inner[:-1] if inner.endswith("|") else inner
    return [c.strip() for c in inner.split("|")]


def parse_deferred_file(content: str) -> list[DeferredItem]:
    """Rows of the ``| Item | Source | Reason | Target Phase |`` table.

    Template placeholder rows (``[ITEM ...]``) are skipped.
    """
    items: list[DeferredItem] = []
    in_table = False
    for raw in content.split("\n"):
        line = raw.rstrip("\r")
        if "|" in line and "Item" in line and "Source" in line:
            in_table = True
            continue
        if not in_table:
            continue
        if _SEPARATOR_RE.match(line.strip()):
            continue
        if line.startswith("|"):
            cells = _cells(line)
            if len(cells) >= 2 and cells[0] and "[ITEM" not in cells[0]:
                items.append(
                    DeferredItem(
                        description=cells[0],
                        source=cells[1],
                        reason=cells[2] if len(cells) > 2 and cells[2] else None,
                        target_phase=cells[3] if len(cells) > 3 and cells[3] else None,
                    )
                )
        elif not line.strip():
            in_table = False
    return items


def deferred_file_for(root: Path, number: str, name: str) -> Path:
    feature_dir = find_feature_dir_by_number(root, number) or specs_dir(root) / f"{number}-{slugify(name)}"
    return feature_dir / "checklists" / "deferred.md"


def scan_deferred_items(root: Path, number: str, name: str) -> DeferredSummary:
    path = deferred_file_for(root, number, name)
    items = parse_deferred_file(read_markdown(path)) if path.is_file() else []
    backlog_items = [i for i in items if i.goes_to_backlog]
    return DeferredSummary(
        count=len(items),
        with_target=len(items) - len(backlog_items),
        to_backlog=len(backlog_items),
        items=items,
    )


def backlog_template(date: str | None = None) -> str:
    date = date or today()
    sections = []
    for priority in PRIORITIES:
        sections += [
            f"### {priority} - {_PRIORITY_TITLES[priority]}",
            "",
            TABLE_HEADER,
            TABLE_SEPARATOR,
            "",
        ]
    return "\n".join(
        [
            "# Project Backlog",
            "",
            "> Items deferred from phases without a specific target phase assignment.",
            "> Review periodically to schedule into upcoming phases.",
            "",
            f"**Created**: {date}",
            f"**Last Updated**: {date}",
            "",
            "---",
            "",
            "## Priority Legend",
            "",
            "| Priority | Meaning | Criteria |",
            "|----------|---------|----------|",
            "| **P1** | High | Core functionality, significant user value |",
            "| **P2** | Medium | Nice-to-have, quality of life improvements |",
            "| **P3** | Low | Future considerations, can wait indefinitely |",
            "",
            "---",
            "",
            "## Backlog Items",
            "",
            *sections,
            "---",
            "",
        ]
    )


def ensure_backlog(root: Path) -> bool:
    """Create BACKLOG.md from the template. Returns False if it already existed."""
    path = backlog_path(root)
    if path.is_file():
        return False
    atomic_write_text(path, backlog_template())
    return True


def format_backlog_row(item: DeferredItem, source_phase: str | None) -> str:
    source = f"Phase {source_phase}" if source_phase else (item.source or "Manual")
    return f"| {item.description} | {source} | {item.reason or 'Deferred'} | - |"


def add_to_backlog(
    root: Path,
    items: list[DeferredItem],
    source_phase: str | None = None,
    priority: str = "P2",
) -> int:
    """Append *items* to the *priority* table of BACKLOG.md. Returns rows added.

    The file is created from the template when missing; a missing priority
    section is appended at the end.
    """
    if priority not in PRIORITIES:
        raise ValidationError(f"Unknown priority: {priority}", f"Use one of: {', '.join(PRIORITIES)}")
    if not items:
        return 0

    path = backlog_path(root)
    content = read_markdown(path, keep_newlines=True) if path.is_file() else backlog_template()
    lines = content.split("\n")
    rows = [format_backlog_row(item, source_phase) for item in items]

    heading = next((i for i, line in enumerate(lines) if line.startswith(f"### {priority}")), None)
    table = None
    if heading is not None:
        table = next(
            (i for i in range(heading + 1, len(lines)) if lines[i].startswith("| Item")),
            None,
        )
    if table is None:
        if lines and lines[-1] == "":
            lines.pop()
        lines += ["", f"### {priority} - {_PRIORITY_TITLES[priority]}", "", TABLE_HEADER, TABLE_SEPARATOR, *rows, ""]
    else:
        end = table + 1
        while end < len(lines) and lines[end].startswith("|"):
            end += 1
        lines[end:end] = rows

    updated = _LAST_UPDATED_RE.sub(f"**Last Updated**: {today()}", "\n".join(lines), count=1)
    atomic_write_text(path, updated)
    log.debug(f"Added {len(rows)} item(s) to {path} under {priority}")
    return len(rows)


def parse_backlog(content: str) -> dict[str, list[DeferredItem]]:
    """Backlog rows grouped by priority."""
    grouped: dict[str, list[DeferredItem]] = {p: [] for p in PRIORITIES}
    current: str | None = None
    for raw in content.split("\n"):
        line = raw.rstrip("\r")
        if line.startswith("### "):
            current = next((p for p in PRIORITIES if line.startswith(f"### {p}")), None)
            continue
        if current is None or not line.startswith("|") or line.startswith("| Item"):
            continue
        if _SEPARATOR_RE.match(line.strip()):
            continue
        cells = _cells(line)
        if cells and cells[0]:
            grouped[current].append(
                DeferredItem(
                    description=cells[0],
                    source=cells[1] if len(cells) > 1 else "",
                    reason=cells[2] if len(cells) > 2 and cells[2] else None,
                )
            )
    return grouped
