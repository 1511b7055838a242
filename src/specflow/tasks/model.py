"""Task, section and document models produced by the tasks.md parser."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class TaskStatus(str, Enum):
    TODO = "todo"
    DONE = "done"
    BLOCKED = "blocked"
    DEFERRED = "deferred"


def percent(part: int, total: int) -> int:
    """Rounded percentage (half up), 0 when *total* is 0."""
    if total <= 0:
        return 0
    return math.floor(part / total * 100 + 0.5)


@dataclass
class Task:
    id: str
    description: str = ""
    status: TaskStatus = TaskStatus.TODO
    line: int = 0
    section: str | None = None
    phase: str | None = None
    is_parallel: bool = False
    is_verification: bool = False
    user_story: str | None = None
    priority: str | None = None
    dependencies: list[str] = field(default_factory=list)
    blocked_reason: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status in (TaskStatus.TODO, TaskStatus.BLOCKED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "status": self.status.value,
            "line": self.line,
            "section": self.section,
            "phase": self.phase,
            "isParallel": self.is_parallel,
            "isVerification": self.is_verification,
            "userStory": self.user_story,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
            "blockedReason": self.blocked_reason,
        }


@dataclass
class TaskSection:
    name: str
    heading: str = ""
    phase: str | None = None
    purpose: str | None = None
    tasks: list[Task] = field(default_factory=list)
    is_complete: bool = False
    start_line: int = 0
    end_line: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "phase": self.phase,
            "purpose": self.purpose,
            "isComplete": self.is_complete,
            "tasks": [t.to_dict() for t in self.tasks],
            "startLine": self.start_line,
            "endLine": self.end_line,
        }


@dataclass
class Progress:
    total: int = 0
    completed: int = 0
    blocked: int = 0
    deferred: int = 0
    percentage: int = 0

    @classmethod
    def from_tasks(cls, tasks: list[Task]) -> Progress:
        total = len(tasks)
        completed = sum(1 for t in tasks if t.status == TaskStatus.DONE)
        return cls(
            total=total,
            completed=completed,
            blocked=sum(1 for t in tasks if t.status == TaskStatus.BLOCKED),
            deferred=sum(1 for t in tasks if t.status == TaskStatus.DEFERRED),
            percentage=percent(completed, total),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "completed": self.completed,
            "blocked": self.blocked,
            "deferred": self.deferred,
            "percentage": self.percentage,
        }


@dataclass
class TasksDocument:
    file_path: Path | None = None
    title: str | None = None
    sections: list[TaskSection] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    progress: Progress = field(default_factory=Progress)
    current_section: str | None = None
    # task ID -> 0-based index into the source lines
    line_index: dict[str, int] = field(default_factory=dict, repr=False, compare=False)

    @property
    def feature_dir(self) -> Path | None:
        return self.file_path.parent if self.file_path else None

    @property
    def all_done(self) -> bool:
        return self.progress.total > 0 and self.progress.completed == self.progress.total

    def get_task(self, task_id: str) -> Task | None:
        for t in self.tasks:
            if t.id == task_id:
                return t
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "featureDir": str(self.feature_dir) if self.feature_dir else None,
            "filePath": str(self.file_path) if self.file_path else None,
            "title": self.title,
            "sections": [s.to_dict() for s in self.sections],
            "tasks": [t.to_dict() for t in self.tasks],
            "progress": self.progress.to_dict(),
            "currentSection": self.current_section,
        }


@dataclass
class SectionStatus:
    name: str
    completed: int
    total: int
    is_complete: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "completed": self.completed,
            "total": self.total,
            "isComplete": self.is_complete,
        }


@dataclass
class MarkResult:
    """Outcome of marking tasks or checklist items, re-derived from the file."""

    marked: list[str]
    item_type: str
    new_status: str
    completed: int
    total: int
    percentage: int
    section_status: SectionStatus | None = None
    next_item: dict[str, Any] | None = None
    step_complete: bool = False
    next_action: str | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "marked": list(self.marked),
            "itemType": self.item_type,
            "newStatus": self.new_status,
            "progress": {
                "completed": self.completed,
                "total": self.total,
                "percentage": self.percentage,
            },
            "stepComplete": self.step_complete,
        }
        if self.section_status is not None:
            data["sectionStatus"] = self.section_status.to_dict()
        if self.next_item is not None:
            data["next"] = self.next_item
        if self.next_action:
            data["nextAction"] = self.next_action
        if self.message:
            data["message"] = self.message
        return data
