"""Tests for task ID expansion and checkbox mutation."""

from __future__ import annotations

import os
import stat
from pathlib import Path

import pytest

from specflow.errors import NotFoundError, StateError, ValidationError
from specflow.io_utils import read_source
from specflow.tasks.model import TaskStatus
from specflow.tasks.mutate import (
    MARK_BLOCKED,
    MARK_INCOMPLETE,
    expand_task_ids,
    mark_tasks,
    rewrite_task_line,
)
from specflow.tasks.parser import read_tasks

from conftest import SAMPLE_TASKS


@pytest.fixture
def tasks_dir(tmp_path: Path, write_file) -> Path:
    write_file(tmp_path / "tasks.md", SAMPLE_TASKS)
    return tmp_path


# ── ID expansion ─────────────────────────────────────────────────────


class TestExpandTaskIds:
    """expand_task_ids handles single IDs and inclusive ranges."""

    def test_range_is_inclusive(self):
        assert expand_task_ids(["T001..T003"]) == ["T001", "T002", "T003"]

    def test_mixed_and_deduplicated(self):
        assert expand_task_ids(["T002", "T001..T003", "T008a"]) == ["T002", "T001", "T003", "T008a"]

    def test_single_element_range(self):
        assert expand_task_ids(["T005..T005"]) == ["T005"]

    def test_reversed_range_rejected(self):
        with pytest.raises(ValidationError) as exc:
            expand_task_ids(["T005..T001"])
        assert "T001..T005" in exc.value.hint

    @pytest.mark.parametrize("token", ["T1..T3", "T001..T003a", "X001", "T01", "V-001"])
    def test_malformed_rejected(self, token):
        with pytest.raises(ValidationError):
            expand_task_ids([token])


class TestRewriteTaskLine:
    """rewrite_task_line only touches the checkbox and blocked note."""

    def test_complete(self):
        assert rewrite_task_line("- [ ] T001 Do it", "complete") == "- [x] T001 Do it"

    def test_preserves_indent_and_cr(self):
        assert rewrite_task_line("  - [ ] T001 Do it\r", "complete") == "  - [x] T001 Do it\r"

    def test_blocked_with_reason(self):
        assert rewrite_task_line("- [ ] T001 Do it", MARK_BLOCKED, "no keys") == "- [b] T001 Do it (blocked: no keys)"

    def test_unblock_strips_note(self):
        assert rewrite_task_line("- [b] T001 Do it (blocked: no keys)", MARK_INCOMPLETE) == "- [ ] T001 Do it"


# ── mark_tasks ───────────────────────────────────────────────────────


class TestMarkTasks:
    """mark_tasks rewrites the file and reports re-derived progress."""

    def test_mark_complete_updates_progress(self, tasks_dir: Path):
        result = mark_tasks(tasks_dir, ["T002"])
        assert result.marked == ["T002"]
        assert (result.completed, result.total, result.percentage) == (2, 4, 50)
        assert read_tasks(tasks_dir).get_task("T002").status == TaskStatus.DONE

    def test_only_checkbox_changes(self, tasks_dir: Path):
        before = read_source(tasks_dir / "tasks.md")
        mark_tasks(tasks_dir, ["T003"])
        after = read_source(tasks_dir / "tasks.md")
        changed = [(a, b) for a, b in zip(before.split("\n"), after.split("\n")) if a != b]
        assert changed == [(
            "- [ ] T003 [US1] Implement login view in src/auth/views.py, Requires T002",
            "- [x] T003 [US1] Implement login view in src/auth/views.py, Requires T002",
        )]
        assert len(before) == len(after)

    def test_crlf_preserved(self, tmp_path: Path):
        path = tmp_path / "tasks.md"
        path.write_bytes(SAMPLE_TASKS.replace("\n", "\r\n").encode("utf-8"))
        mark_tasks(tmp_path, ["T002"])
        raw = path.read_bytes()
        assert b"- [x] T002 [P] Add settings module, After T001\r\n" in raw
        assert b"\n" not in raw.replace(b"\r\n", b"")

    def test_next_and_section_status(self, tasks_dir: Path):
        result = mark_tasks(tasks_dir, ["T002"]).to_dict()
        assert result["next"]["id"] == "T003"
        assert result["sectionStatus"] == {"name": "Setup", "completed": 2, "total": 2, "isComplete": True}
        assert result["stepComplete"] is False

    def test_all_complete_suggests_verify(self, tasks_dir: Path):
        result = mark_tasks(tasks_dir, ["T002..T004"]).to_dict()
        assert result["stepComplete"] is True
        assert result["nextAction"] == "run_verify"
        assert result["message"] == "All tasks complete! Ready for verification."
        assert "next" not in result

    def test_unknown_id_writes_nothing(self, tasks_dir: Path):
        before = read_source(tasks_dir / "tasks.md")
        with pytest.raises(ValidationError) as exc:
            mark_tasks(tasks_dir, ["T002", "T099"])
        assert "T099" in exc.value.message
        assert read_source(tasks_dir / "tasks.md") == before

    def test_blocked_then_incomplete(self, tasks_dir: Path):
        mark_tasks(tasks_dir, ["T003"], MARK_BLOCKED, "waiting on review")
        task = read_tasks(tasks_dir).get_task("T003")
        assert task.status == TaskStatus.BLOCKED
        assert task.blocked_reason == "waiting on review"

        mark_tasks(tasks_dir, ["T003"], MARK_INCOMPLETE)
        task = read_tasks(tasks_dir).get_task("T003")
        assert task.status == TaskStatus.TODO
        assert task.blocked_reason is None

    def test_marking_is_idempotent(self, tasks_dir: Path):
        mark_tasks(tasks_dir, ["T002"])
        first = read_source(tasks_dir / "tasks.md")
        mark_tasks(tasks_dir, ["T002"])
        assert read_source(tasks_dir / "tasks.md") == first

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(NotFoundError):
            mark_tasks(tmp_path, ["T001"])

    def test_empty_ids(self, tasks_dir: Path):
        with pytest.raises(ValidationError):
            mark_tasks(tasks_dir, [])

    def test_unknown_status(self, tasks_dir: Path):
        with pytest.raises(ValidationError):
            mark_tasks(tasks_dir, ["T001"], "finished")

    def test_range_and_single_ids_together(self, tasks_dir: Path):
        result = mark_tasks(tasks_dir, ["T004", "T002..T003"])
        assert result.marked == ["T004", "T002", "T003"]
        assert result.percentage == 100

    def test_malformed_range_writes_nothing(self, tasks_dir: Path):
        before = read_source(tasks_dir / "tasks.md")
        with pytest.raises(ValidationError):
            mark_tasks(tasks_dir, ["T002", "T004..T002"])
        assert read_source(tasks_dir / "tasks.md") == before

    def test_undecodable_file_is_state_error(self, tmp_path: Path):
        (tmp_path / "tasks.md").write_bytes(b"- [ ] T001 caf\xe9\n")
        with pytest.raises(StateError) as exc:
            mark_tasks(tmp_path, ["T001"])
        assert "not valid UTF-8" in exc.value.message
        assert (tmp_path / "tasks.md").read_bytes() == b"- [ ] T001 caf\xe9\n"

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
    def test_file_mode_preserved(self, tasks_dir: Path):
        path = tasks_dir / "tasks.md"
        path.chmod(0o644)
        mark_tasks(tasks_dir, ["T002"])
        assert stat.S_IMODE(path.stat().st_mode) == 0o644
