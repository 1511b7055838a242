"""Markdown tasks.md parser.

Parsing is total: lines that do not look like tasks are treated as prose, and
an empty or malformed document yields a document with zero tasks. Only
``read_tasks`` touches the filesystem.

Task line format::

    - [ ] T001 Description text
    - [x] T002 [P] Parallel task, After T001
    - [~] T003 Deferred task
    - [ ] T004 [V] [US2] Verification task, Requires T002, T003
"""

from __future__ import annotations

import re
from pathlib import Path

from specflow.config import TASKS_FILE
from specflow.errors import NotFoundError
from specflow.io_utils import read_markdown
from specflow.tasks.model import Progress, Task, TaskSection, TaskStatus, TasksDocument

TASK_ID = r"T\d{3}[a-z]?"

_TASK_LINE_RE = re.compile(rf"^\s*-\s*\[(.)\]\s+({TASK_ID})\b(.*)$")
_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+?)\s*$")
_PHASE_HEADING_RE = re.compile(r"^Phase\s+(\d+)\s*[:\-]\s*(.+)$", re.IGNORECASE)
_PURPOSE_RE = re.compile(r"^\*\*Purpose\*\*:\s*(.+)")
_USER_STORY_RE = re.compile(r"\[US(\d+)\]")
_PRIORITY_RE = re.compile(r"\[(P[123])\]")
_DEPENDENCY_RE = re.compile(rf"\b(?i:depends on|after|requires)\s+((?:{TASK_ID}\b[\s,]*(?:and\s+)?)+)")
_TASK_REF_RE = re.compile(TASK_ID)
_BLOCKED_RE = re.compile(r"[\[(]blocked:\s*([^\])]+)[\])]", re.IGNORECASE)
_COMPLETE_MARKER_RE = re.compile(r"\bcomplete\b|✅", re.IGNORECASE)

_GLYPH_STATUS: dict[str, TaskStatus] = {
    "x": TaskStatus.DONE,
    "X": TaskStatus.DONE,
    " ": TaskStatus.TODO,
    "b": TaskStatus.BLOCKED,
    "B": TaskStatus.BLOCKED,
    "~": TaskStatus.DEFERRED,
    "-": TaskStatus.DEFERRED,
}

STATUS_GLYPH: dict[TaskStatus, str] = {
    TaskStatus.DONE: "x",
    TaskStatus.TODO: " ",
    TaskStatus.BLOCKED: "b",
    TaskStatus.DEFERRED: "~",
}


def extract_dependencies(description: str) -> list[str]:
    """Task IDs referenced by "Depends on", "After" or "Requires" phrases, in order."""
    deps: list[str] = []
    for match in _DEPENDENCY_RE.finditer(description):
        for ref in _TASK_REF_RE.findall(match.group(1)):
            if ref not in deps:
                deps.append(ref)
    return deps


def parse_task_line(line: str, line_number: int) -> Task | None:
    m = _TASK_LINE_RE.match(line)
    if not m:
        return None
    glyph, task_id, rest = m.groups()
    description = rest.strip()
    status = _GLYPH_STATUS.get(glyph, TaskStatus.TODO)

    blocked = _BLOCKED_RE.search(description)
    if blocked and status == TaskStatus.TODO:
        status = TaskStatus.BLOCKED

    story = _USER_STORY_RE.search(description)
    priority = _PRIORITY_RE.search(description)
    return Task(
        id=task_id,
        description=description,
        status=status,
        line=line_number,
        is_parallel="[P]" in description,
        is_verification="[V]" in description,
        user_story=f"US{story.group(1)}" if story else None,
        priority=priority.group(1) if priority else None,
        dependencies=extract_dependencies(description),
        blocked_reason=blocked.group(1).strip() if blocked and status == TaskStatus.BLOCKED else None,
    )


def _close_section(section: TaskSection, end_line: int) -> None:
    section.end_line = end_line
    forced = bool(_COMPLETE_MARKER_RE.search(section.heading))
    section.is_complete = forced or all(
        t.status in (TaskStatus.DONE, TaskStatus.DEFERRED) for t in section.tasks
    )


def parse_tasks(content: str, source_path: Path | str | None = None) -> TasksDocument:
    """Parse tasks.md *content* into a :class:`TasksDocument`."""
    lines = content.split("\n")
    sections: list[TaskSection] = []
    tasks: list[Task] = []
    line_index: dict[str, int] = {}
    title: str | None = None
    current: TaskSection | None = None

    for idx, raw in enumerate(lines):
        line = raw.rstrip("\r")
        line_number = idx + 1

        heading = _HEADING_RE.match(line)
        if heading:
            level = len(heading.group(1))
            text = heading.group(2)
            if level == 1 and title is None:
                title = text
                continue
            if level <= 2:
                if current is not None:
                    _close_section(current, line_number - 1)
                    sections.append(current)
                    current = None
                if level == 2:
                    phase_match = _PHASE_HEADING_RE.match(text)
                    current = TaskSection(
                        name=phase_match.group(2).strip() if phase_match else text,
                        heading=text,
                        phase=phase_match.group(1) if phase_match else None,
                        start_line=line_number,
                        end_line=line_number,
                    )
            continue

        if current is not None:
            purpose = _PURPOSE_RE.match(line)
            if purpose:
                current.purpose = purpose.group(1).strip()
                continue

        task = parse_task_line(line, line_number)
        if task is None or task.id in line_index:
            continue
        if current is not None:
            task.section = current.name
            task.phase = current.phase
            current.tasks.append(task)
        tasks.append(task)
        line_index[task.id] = idx

    if current is not None:
        _close_section(current, len(lines))
        sections.append(current)

    current_section = next((s.name for s in sections if s.tasks and not s.is_complete), None)

    return TasksDocument(
        file_path=Path(source_path) if source_path else None,
        title=title,
        sections=sections,
        tasks=tasks,
        progress=Progress.from_tasks(tasks),
        current_section=current_section,
        line_index=line_index,
    )


def tasks_file_for(target: Path) -> Path:
    """Accept a feature directory or a direct path to a tasks markdown file."""
    return target if target.suffix == ".md" else target / TASKS_FILE


def read_tasks(target: Path) -> TasksDocument:
    path = tasks_file_for(target)
    if not path.is_file():
        raise NotFoundError("tasks.md", f"No tasks file found at {path}")
    return parse_tasks(read_markdown(path), path)


# ── Queries ──────────────────────────────────────────────────────────


def find_next_task(doc: TasksDocument) -> Task | None:
    """First todo task, in document order, whose dependencies are all done.

    A dependency on a deferred or blocked task is never satisfied.
    """
    status_by_id = {t.id: t.status for t in doc.tasks}
    for task in doc.tasks:
        if task.status != TaskStatus.TODO:
            continue
        if all(status_by_id.get(dep) == TaskStatus.DONE for dep in task.dependencies):
            return task
    return None


def get_task_by_id(doc: TasksDocument, task_id: str) -> Task | None:
    return doc.get_task(task_id)


def unmet_dependencies(doc: TasksDocument, task: Task) -> list[str]:
    status_by_id = {t.id: t.status for t in doc.tasks}
    return [dep for dep in task.dependencies if status_by_id.get(dep) != TaskStatus.DONE]


def undefined_dependencies(doc: TasksDocument) -> list[str]:
    """Dependency references that name no task in the document (warning only)."""
    known = {t.id for t in doc.tasks}
    missing: list[str] = []
    for task in doc.tasks:
        for dep in task.dependencies:
            if dep not in known and dep not in missing:
                missing.append(dep)
    return missing


def detect_circular_dependencies(doc: TasksDocument) -> list[str]:
    """Return each dependency cycle as a path string, e.g. ``T001 → T002 → T001``."""
    deps = {t.id: t.dependencies for t in doc.tasks}
    cycles: list[str] = []
    visited: set[str] = set()
    on_stack: set[str] = set()

    def visit(task_id: str, path: list[str]) -> None:
        if task_id in on_stack:
            start = path.index(task_id)
            cycles.append(" → ".join(path[start:] + [task_id]))
            return
        if task_id in visited:
            return
        visited.add(task_id)
        on_stack.add(task_id)
        for dep in deps.get(task_id, []):
            visit(dep, path + [task_id])
        on_stack.discard(task_id)

    for task in doc.tasks:
        if task.id not in visited:
            visit(task.id, [])
    return cycles


# ── Serialization ────────────────────────────────────────────────────


def render_task(task: Task) -> str:
    text = f"- [{STATUS_GLYPH[task.status]}] {task.id}"
    return f"{text} {task.description}" if task.description else text


def render_tasks(doc: TasksDocument) -> str:
    """Canonical markdown for *doc*.

    Prose is not retained; tasks outside any section are emitted before the
    first section.
    """
    out: list[str] = []
    if doc.title:
        out += [f"# {doc.title}", ""]

    loose = [t for t in doc.tasks if t.section is None]
    if loose:
        out += [render_task(t) for t in loose]
        out.append("")

    for section in doc.sections:
        out += [f"## {section.heading or section.name}", ""]
        if section.purpose:
            out += [f"**Purpose**: {section.purpose}", ""]
        if section.tasks:
            out += [render_task(t) for t in section.tasks]
            out.append("")
    return "\n".join(out)
