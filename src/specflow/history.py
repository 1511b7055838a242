"""Completed-phase archive: HISTORY.md, phase detail files, archived spec directories."""

from __future__ import annotations

import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from specflow import log
from specflow.config import archive_dir, history_path, phases_dir
from specflow.context import find_feature_dir_by_number, phase_number_of
from specflow.io_utils import atomic_write_text, read_markdown, slugify, today
from specflow.tasks.model import Task
from specflow.tasks.parser import read_tasks

HISTORY_TEMPLATE = """# Completed Phases

> Archive of completed development phases. Newest first.

---

"""

_FRONTMATTER_RE = re.compile(r"\A---\r?\n.*?\r?\n---\r?\n?", re.DOTALL)
_RULE_RE = re.compile(r"^---(\r?\n)", re.MULTILINE)


@dataclass
class HistoryArchive:
    archived: bool
    history_path: Path
    already_archived: bool = False
    used_detail_file: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "archived": self.archived,
            "historyPath": str(self.history_path),
            "alreadyArchived": self.already_archived,
            "usedDetailFile": self.used_detail_file,
        }


@dataclass
class ArchivedPhaseScan:
    number: str
    name: str
    directory: Path
    incomplete: list[Task] = field(default_factory=list)

    @property
    def suggestions(self) -> list[str]:
        return [f"{t.id} {t.description}".strip() for t in self.incomplete]

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "name": self.name,
            "directory": str(self.directory),
            "incompleteTasks": [t.to_dict() for t in self.incomplete],
            "backlogSuggestions": self.suggestions,
        }


def phase_slug(name: str) -> str:
    return slugify(name) or "phase"


def phase_detail_path(root: Path, number: str, name: str) -> Path:
    return phases_dir(root) / f"{number}-{phase_slug(name)}.md"


def find_phase_detail_file(root: Path, number: str) -> Path | None:
    directory = phases_dir(root)
    if not directory.is_dir():
        return None
    return next(iter(sorted(directory.glob(f"{number}-*.md"))), None)


def create_phase_detail_file(
    root: Path,
    number: str,
    name: str,
    *,
    status: str = "Not Started",
    goals: list[str] | None = None,
    gate: str = "",
) -> Path:
    """Write ``.specify/phases/NNNN-slug.md``; an existing file is kept as is."""
    path = phase_detail_path(root, number, name)
    if path.exists():
        return path
    goal_lines = [f"- {g}" for g in goals] if goals else ["- [Define goals for this phase]"]
    body = [
        "---",
        f"phase: {number}",
        f"name: {phase_slug(name)}",
        f"status: {status}",
        f"created: {today()}",
        "---",
        "",
        f"# Phase {number}: {name}",
        "",
        "## Goals",
        "",
        *goal_lines,
        "",
        "## Verification Gate",
        "",
        gate or "[Define how completion is verified]",
        "",
    ]
    atomic_write_text(path, "\n".join(body))
    log.debug(f"Created phase detail file {path}")
    return path


def ensure_history(root: Path) -> bool:
    """Create HISTORY.md from the template. Returns False if it already existed."""
    path = history_path(root)
    if path.is_file():
        return False
    atomic_write_text(path, HISTORY_TEMPLATE)
    return True


def is_phase_archived(root: Path, number: str) -> bool:
    path = history_path(root)
    if not path.is_file():
        return False
    return re.search(rf"^## {re.escape(number)}\s*-", read_markdown(path), re.MULTILINE) is not None


def format_history_entry(number: str, name: str, body: str | None, date: str | None = None) -> str:
    date = date or today()
    text = body.strip() if body and body.strip() else "Phase completed without detailed phase file."
    return f"## {number} - {name}\n\n**Completed**: {date}\n\n{text}\n\n---\n\n"


def archive_phase(root: Path, number: str, name: str) -> HistoryArchive:
    """Record phase *number* in HISTORY.md, newest entry first.

    The phase detail file supplies the entry body (front matter removed) and
    is deleted afterwards. A phase already in the history is not added twice.
    """
    path = history_path(root)
    if is_phase_archived(root, number):
        return HistoryArchive(archived=False, history_path=path, already_archived=True)

    detail = find_phase_detail_file(root, number)
    body = _FRONTMATTER_RE.sub("", read_markdown(detail)) if detail else None
    entry = format_history_entry(number, name, body)

    content = read_markdown(path, keep_newlines=True) if path.is_file() else HISTORY_TEMPLATE
    rule = _RULE_RE.search(content)
    if rule is None:
        content = content.rstrip("\n") + "\n\n---\n\n" + entry
    else:
        eol = rule.group(1)
        content = content[:rule.end()] + eol + entry.replace("\n", eol) + content[rule.end():].lstrip("\r\n")
    atomic_write_text(path, content)

    if detail is not None:
        detail.unlink()
    log.debug(f"Archived phase {number} to {path}")
    return HistoryArchive(archived=True, history_path=path, used_detail_file=detail is not None)


def archive_phase_specs(root: Path, number: str) -> Path | None:
    """Move ``specs/NNNN-*`` under ``.specify/archive/``. Returns the new path.

    A date suffix is added when the destination already exists.
    """
    source = find_feature_dir_by_number(root, number)
    if source is None:
        return None
    target = archive_dir(root) / source.name
    if target.exists():
        target = archive_dir(root) / f"{source.name}-{today()}"
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(source), str(target))
    log.debug(f"Moved {source} -> {target}")
    return target


def count_files(directory: Path) -> int:
    return sum(1 for p in directory.rglob("*") if p.is_file())


def scan_archives(root: Path) -> list[ArchivedPhaseScan]:
    """Todo and blocked tasks left behind in each archived phase."""
    base = archive_dir(root)
    if not base.is_dir():
        return []
    results: list[ArchivedPhaseScan] = []
    for directory in sorted(p for p in base.iterdir() if p.is_dir()):
        number = phase_number_of(directory)
        if number is None:
            continue
        name = directory.name[len(number) + 1 :]
        scan = ArchivedPhaseScan(number=number, name=name, directory=directory)
        if (directory / "tasks.md").is_file():
            doc = read_tasks(directory)
            scan.incomplete = [t for t in doc.tasks if t.is_open]
        results.append(scan)
    return results
