"""Checkbox mutation for tasks.md.

Edits are same-line substitutions located through the parser's ID -> line
side-table, so every other byte of the document is preserved.
"""

from __future__ import annotations

import re
from pathlib import Path

from specflow import log
from specflow.errors import NotFoundError, ValidationError
from specflow.io_utils import atomic_write_text, read_markdown
from specflow.tasks.model import MarkResult, SectionStatus, TaskStatus, TasksDocument
from specflow.tasks.parser import find_next_task, parse_tasks, tasks_file_for

MARK_COMPLETE = "complete"
MARK_INCOMPLETE = "incomplete"
MARK_BLOCKED = "blocked"
MARK_STATUSES: tuple[str, ...] = (MARK_COMPLETE, MARK_INCOMPLETE, MARK_BLOCKED)

_SINGLE_ID_RE = re.compile(r"^T\d{3}[a-z]?$")
_RANGE_RE = re.compile(r"^T(\d{3})\.\.T(\d{3})$")
_CHECKBOX_RE = re.compile(r"^(\s*-\s*\[).(\])")
_BLOCKED_NOTE_RE = re.compile(r"\s*[\[(]blocked:\s*[^\])]+[\])]", re.IGNORECASE)

_MARK_GLYPH = {MARK_COMPLETE: "x", MARK_INCOMPLETE: " ", MARK_BLOCKED: "b"}


def expand_task_ids(tokens: list[str] | tuple[str, ...]) -> list[str]:
    """Expand IDs and inclusive ``T001..T005`` ranges, de-duplicated in order.

    Raises :class:`ValidationError` for malformed tokens and reversed ranges.
    """
    ids: list[str] = []
    for token in tokens:
        token = token.strip()
        if ".." in token:
            m = _RANGE_RE.match(token)
            if not m:
                raise ValidationError(
                    f"Malformed task range: {token}",
                    "Use the form T001..T005 (sub-lettered IDs cannot be ranged)",
                )
            start, end = int(m.group(1)), int(m.group(2))
            if start > end:
                raise ValidationError(
                    f"Reversed task range: {token}",
                    f"Did you mean T{end:03d}..T{start:03d}?",
                )
            expanded = [f"T{n:03d}" for n in range(start, end + 1)]
        elif _SINGLE_ID_RE.match(token):
            expanded = [token]
        else:
            raise ValidationError(f"Invalid task ID: {token}", "Task IDs look like T001 or T008a")
        for task_id in expanded:
            if task_id not in ids:
                ids.append(task_id)
    return ids


def set_checkbox_glyph(line: str, glyph: str) -> str:
    """Replace the checkbox character of a list item line, nothing else."""
    return _CHECKBOX_RE.sub(lambda m: f"{m.group(1)}{glyph}{m.group(2)}", line, count=1)


def rewrite_task_line(line: str, status: str, reason: str | None = None) -> str:
    body, eol = (line[:-1], "\r") if line.endswith("\r") else (line, "")
    if _BLOCKED_NOTE_RE.search(body):
        body = _BLOCKED_NOTE_RE.sub("", body)
    body = set_checkbox_glyph(body, _MARK_GLYPH[status])
    if status == MARK_BLOCKED and reason:
        body = f"{body} (blocked: {reason})"
    return body + eol


def section_status_for(doc: TasksDocument, task_id: str) -> SectionStatus | None:
    task = doc.get_task(task_id)
    if task is None or task.section is None:
        return None
    in_section = [t for t in doc.tasks if t.section == task.section]
    completed = sum(1 for t in in_section if t.status == TaskStatus.DONE)
    return SectionStatus(
        name=task.section,
        completed=completed,
        total=len(in_section),
        is_complete=completed == len(in_section),
    )


def mark_tasks(
    target: Path,
    ids: list[str],
    status: str = MARK_COMPLETE,
    reason: str | None = None,
) -> MarkResult:
    """Set the checkbox of every task in *ids* and write the file once.

    *ids* may hold single IDs and ``T001..T005`` ranges. The batch is
    all-or-nothing: an unknown ID fails before anything is written.
    Progress in the result comes from re-parsing the new content.
    """
    if status not in MARK_STATUSES:
        raise ValidationError(f"Unknown mark status: {status}", f"Use one of: {', '.join(MARK_STATUSES)}")
    ids = expand_task_ids(ids)
    if not ids:
        raise ValidationError("No task IDs provided", "Use format: T001, T001..T005")

    path = tasks_file_for(target)
    if not path.is_file():
        raise NotFoundError("tasks.md", f"No tasks file found at {path}")

    content = read_markdown(path, keep_newlines=True)
    doc = parse_tasks(content, path)

    unknown = [task_id for task_id in ids if task_id not in doc.line_index]
    if unknown:
        raise ValidationError(
            f"Unknown task IDs: {', '.join(unknown)}",
            f"Valid task IDs are: {', '.join(t.id for t in doc.tasks) or '(none)'}",
        )

    lines = content.split("\n")
    for task_id in ids:
        idx = doc.line_index[task_id]
        lines[idx] = rewrite_task_line(lines[idx], status, reason)

    atomic_write_text(path, "\n".join(lines))
    log.debug(f"Marked {', '.join(ids)} as {status} in {path}")

    updated = parse_tasks(read_markdown(path, keep_newlines=True), path)
    next_task = find_next_task(updated)
    all_done = updated.progress.completed == updated.progress.total

    result = MarkResult(
        marked=list(ids),
        item_type="task",
        new_status=status,
        completed=updated.progress.completed,
        total=updated.progress.total,
        percentage=updated.progress.percentage,
        section_status=section_status_for(updated, ids[0]),
        step_complete=all_done,
    )
    if next_task is not None:
        result.next_item = {
            "id": next_task.id,
            "description": next_task.description,
            "dependenciesMet": True,
        }
    if all_done:
        result.next_action = "run_verify"
        result.message = "All tasks complete! Ready for verification."
    return result
