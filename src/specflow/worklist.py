"""What to work on next: the actionable task, or a verification item."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from specflow.checklist import find_next_checklist_item, read_feature_checklists
from specflow.tasks.model import TaskStatus, TasksDocument
from specflow.tasks.parser import find_next_task, read_tasks, unmet_dependencies

IMPLEMENT_TASK = "implement_task"
VERIFY_TASK = "verify_task"
VERIFY_ITEM = "verify_item"
NONE = "none"

QUEUE_PREVIEW = 3

_FILE_RE = re.compile(r"\b[\w\-.]+(?:/[\w\-.]+)+\.\w+\b")


def files_mentioned(description: str) -> list[str]:
    """Relative paths with an extension, in order of appearance."""
    found: list[str] = []
    for match in _FILE_RE.findall(description[:4096]):
        if match not in found:
            found.append(match)
    return found


def _nothing(reason: str, suggestion: str) -> dict[str, Any]:
    return {"action": NONE, "reason": reason, "suggestion": suggestion}


def next_task(doc: TasksDocument) -> dict[str, Any]:
    task = find_next_task(doc)
    if task is None:
        if not doc.tasks:
            return _nothing(
                "no_tasks_found",
                "No tasks found in tasks.md. Expected format: '- [ ] T001 Description'",
            )
        if all(t.status == TaskStatus.DONE for t in doc.tasks):
            return _nothing(
                "all_tasks_complete",
                'Run "specflow check" to verify completion, then proceed to verification',
            )
        return _nothing("all_tasks_blocked", "Remaining tasks have unmet dependencies. Review blocked tasks.")

    remaining = [t for t in doc.tasks if t.status != TaskStatus.DONE]
    after = doc.tasks[doc.tasks.index(task) + 1 :]
    return {
        "action": IMPLEMENT_TASK,
        "task": {
            "id": task.id,
            "description": task.description,
            "section": task.section,
            "phase": task.phase,
            "userStory": task.user_story,
            "line": task.line,
            "file": str(doc.file_path) if doc.file_path else None,
        },
        "dependencies": {
            "met": not unmet_dependencies(doc, task),
            "requires": list(task.dependencies),
            "blockedBy": unmet_dependencies(doc, task),
        },
        "hints": {"filesMentioned": files_mentioned(task.description)},
        "queue": {
            "remainingInSection": sum(1 for t in remaining if task.section and t.section == task.section),
            "totalRemaining": len(remaining),
            "nextUp": [t.id for t in after if t.status == TaskStatus.TODO][:QUEUE_PREVIEW],
        },
    }


def next_verification(feature_dir: Path) -> dict[str, Any]:
    """``[V]`` tasks first, then open items of the verification checklist."""
    if (feature_dir / "tasks.md").is_file():
        doc = read_tasks(feature_dir)
        todo = [t for t in doc.tasks if t.is_verification and t.status == TaskStatus.TODO]
        if todo:
            task = todo[0]
            return {
                "action": VERIFY_TASK,
                "task": {
                    "id": task.id,
                    "description": task.description,
                    "section": task.section,
                    "line": task.line,
                    "file": str(doc.file_path),
                },
                "queue": {"remaining": len(todo), "nextUp": [t.id for t in todo[1 : 1 + QUEUE_PREVIEW]]},
            }

    checklist = read_feature_checklists(feature_dir).verification
    if checklist is not None:
        item = find_next_checklist_item(checklist)
        if item is not None:
            open_items = [i for i in checklist.items if not i.is_closed]
            return {
                "action": VERIFY_ITEM,
                "task": {
                    "id": item.id,
                    "description": item.description,
                    "section": item.section,
                    "line": item.line,
                    "file": str(checklist.file_path),
                },
                "queue": {
                    "remaining": len(open_items),
                    "nextUp": [i.id for i in open_items[1 : 1 + QUEUE_PREVIEW]],
                },
            }
    return _nothing("verification_complete", "All verification items complete. Ready to merge.")


def next_item(feature_dir: Path | None, *, verify: bool = False) -> dict[str, Any]:
    if feature_dir is None:
        return _nothing("no_feature", "No active feature found. Start a phase first.")
    if verify:
        return next_verification(feature_dir)
    return next_task(read_tasks(feature_dir))


def format_next(result: dict[str, Any]) -> str:
    if result["action"] == NONE:
        return f"{result['reason']}: {result['suggestion']}"
    task = result["task"]
    lines = [f"Next: {task['id']} {task['description']}"]
    if result["action"] == IMPLEMENT_TASK:
        lines.append(f"Section: {task['section'] or 'Unknown'} | Remaining: {result['queue']['totalRemaining']}")
        if result["hints"]["filesMentioned"]:
            lines.append(f"Files: {', '.join(result['hints']['filesMentioned'])}")
    else:
        lines.append(f"Type: verification | Remaining: {result['queue']['remaining']}")
    return "\n".join(lines)
