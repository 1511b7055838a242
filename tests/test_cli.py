"""Tests for specflow.cli (help, JSON envelopes, exit codes, commands)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from specflow.cli import main
from specflow.config import backlog_path, state_path
from specflow.evidence import read_evidence
from specflow.io_utils import read_json, read_text, write_text
from specflow.state import read_state, set_state_value, write_state
from specflow.tasks.model import TaskStatus
from specflow.tasks.parser import read_tasks

from conftest import SAMPLE_TASKS


def _json(result):
    return json.loads(result.output)


@pytest.fixture
def feature(in_project: Path) -> Path:
    return in_project / "specs" / "0020-auth"


@pytest.fixture
def outside(tmp_path_factory, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A working directory that is not inside any project."""
    path = tmp_path_factory.mktemp("outside")
    monkeypatch.delenv("SPECFLOW_PROJECT_ROOT", raising=False)
    monkeypatch.chdir(path)
    return path


# ── Help and version ─────────────────────────────────────────────────


class TestHelpAndVersion:
    """Help and version flags, including their aliases."""

    @pytest.mark.parametrize("flag", ["--help", "-h", "-help", "--show-help"])
    def test_help(self, cli_runner, flag):
        r = cli_runner.invoke(main, [flag])
        assert r.exit_code == 0
        assert "spec-driven development" in r.output
        assert "phase" in r.output

    @pytest.mark.parametrize("flag", ["--version", "-version", "--show-version"])
    def test_version(self, cli_runner, flag):
        r = cli_runner.invoke(main, [flag])
        assert r.exit_code == 0
        assert "specflow, version 3.0.0" in r.output

    def test_subcommand_help(self, cli_runner):
        r = cli_runner.invoke(main, ["mark", "--help"])
        assert r.exit_code == 0
        assert "--evidence" in r.output


# ── Error envelope ───────────────────────────────────────────────────


class TestErrors:
    """Errors map to exit code 1 with a JSON envelope in JSON mode."""

    def test_outside_project_json(self, cli_runner, outside):
        r = cli_runner.invoke(main, ["state", "get", "--json"])
        assert r.exit_code == 1
        assert _json(r) == {
            "status": "error",
            "command": "state get",
            "error": {
                "message": "SpecFlow project not found",
                "hint": 'Run "specflow state init" in the project root, or set SPECFLOW_PROJECT_ROOT',
            },
        }

    def test_outside_project_human(self, cli_runner, outside):
        r = cli_runner.invoke(main, ["next"])
        assert r.exit_code == 1
        assert "SpecFlow project not found" in r.output

    def test_missing_key(self, cli_runner, in_project):
        r = cli_runner.invoke(main, ["state", "get", "orchestration.nope", "--json"])
        assert r.exit_code == 1
        assert _json(r)["error"]["message"] == "Key 'orchestration.nope' not found"

    def test_status_outside_project_reports(self, cli_runner, outside):
        r = cli_runner.invoke(main, ["status", "--json"])
        assert r.exit_code == 0
        data = _json(r)
        assert data["nextAction"] == "fix_health"
        assert data["health"]["status"] == "error"


# ── state ────────────────────────────────────────────────────────────


class TestStateCommands:
    """state get/set/init/sync/show."""

    def test_get_value(self, cli_runner, in_project):
        r = cli_runner.invoke(main, ["state", "get", "orchestration.phase.number"])
        assert r.exit_code == 0
        assert r.output.strip() == "0020"

    def test_get_json(self, cli_runner, in_project):
        r = cli_runner.invoke(main, ["state", "get", "orchestration.step", "--json"])
        assert _json(r) == {"current": "implement", "index": 2, "status": "in_progress"}

    def test_set_with_coercion(self, cli_runner, in_project):
        r = cli_runner.invoke(
            main,
            ["state", "set", "orchestration.step.current=verify", "orchestration.step.index=3",
             "orchestration.phase.number=20", "--json"],
        )
        assert r.exit_code == 0
        data = _json(r)
        assert data["status"] == "success"
        assert data["updates"][0] == {"key": "orchestration.step.current", "value": "verify", "previousValue": "implement"}
        assert data["updates"][1]["value"] == 3
        assert data["updates"][2]["value"] == "20"
        state = read_json(state_path(in_project))
        assert state["orchestration"]["step"]["index"] == 3
        assert state["orchestration"]["phase"]["number"] == "20"

    def test_set_bad_format(self, cli_runner, in_project):
        before = read_text(state_path(in_project))
        r = cli_runner.invoke(main, ["state", "set", "orchestration.step.current", "--json"])
        assert r.exit_code == 1
        assert "Expected key=value" in _json(r)["error"]["message"]
        assert read_text(state_path(in_project)) == before

    def test_init(self, cli_runner, outside):
        r = cli_runner.invoke(main, ["state", "init", "--name", "demo", "--json"])
        assert r.exit_code == 0
        data = _json(r)
        assert data["project"]["name"] == "demo"
        assert state_path(outside.resolve()).is_file()

        again = cli_runner.invoke(main, ["state", "init", "--json"])
        assert again.exit_code == 1
        assert "--force" in _json(again)["error"]["hint"]

        forced = cli_runner.invoke(main, ["state", "init", "--force", "--json"])
        assert forced.exit_code == 0
        assert _json(forced)["project"]["name"] == outside.name

    def test_sync_dry_run(self, cli_runner, in_project):
        r = cli_runner.invoke(main, ["state", "sync", "--dry-run", "--json"])
        assert r.exit_code == 0
        data = _json(r)
        assert data["dryRun"] is True
        assert data["changes"][0]["type"] == "history_added"

    def test_sync_without_roadmap_warns(self, cli_runner, in_project):
        (in_project / "ROADMAP.md").unlink()
        r = cli_runner.invoke(main, ["state", "sync"])
        assert r.exit_code == 2
        assert "ROADMAP.md not found" in r.output

    def test_show(self, cli_runner, in_project):
        r = cli_runner.invoke(main, ["state", "show"])
        assert r.exit_code == 0
        assert "Current Phase" in r.output
        assert "0020-auth" in r.output


# ── phase ────────────────────────────────────────────────────────────


class TestPhaseCommands:
    """phase open/close/add/archive/scan/defer."""

    def test_open_refuses_while_active(self, cli_runner, in_project):
        r = cli_runner.invoke(main, ["phase", "open", "0030", "--json"])
        assert r.exit_code == 1
        data = _json(r)
        assert data["command"] == "phase open"
        assert "still in progress" in data["error"]["message"]

    def test_open_hotfix(self, cli_runner, in_project):
        r = cli_runner.invoke(main, ["phase", "open", "--hotfix", "Login crash", "--json"])
        assert r.exit_code == 0
        data = _json(r)
        assert data["action"] == "created"
        assert data["phase"] == {"number": "0021", "name": "Login crash", "branch": "0021-login-crash"}

    def test_open_hotfix_without_title(self, cli_runner, in_project):
        r = cli_runner.invoke(main, ["phase", "open", "--json", "--hotfix"])
        assert r.exit_code == 0
        assert _json(r)["phase"]["name"].startswith("Hotfix ")

    def test_hotfix_with_number_rejected(self, cli_runner, in_project):
        r = cli_runner.invoke(main, ["phase", "open", "0030", "--hotfix", "x", "--json"])
        assert r.exit_code == 1

    def test_close_then_open(self, cli_runner, in_project):
        preview = cli_runner.invoke(main, ["phase", "close", "--dryrun", "--json"])
        assert preview.exit_code == 0
        assert _json(preview)["action"] == "dry_run"

        closed = cli_runner.invoke(main, ["phase", "close"])
        assert closed.exit_code == 0
        assert "Phase 0020 complete" in closed.output
        assert "Next phase: 0030 - dashboard" in closed.output

        opened = cli_runner.invoke(main, ["phase", "open", "--json"])
        assert opened.exit_code == 0
        assert _json(opened)["phase"]["branch"] == "0030-dashboard"

    def test_add(self, cli_runner, in_project):
        r = cli_runner.invoke(main, ["phase", "add", "0040", "reports", "--gate", "QA", "--user-gate", "--json"])
        assert r.exit_code == 0
        assert _json(r)["phase"]["verificationGate"] == "**USER GATE**: QA"

        dup = cli_runner.invoke(main, ["phase", "add", "0040", "again", "--json"])
        assert dup.exit_code == 1

    def test_archive_and_scan(self, cli_runner, in_project):
        r = cli_runner.invoke(main, ["phase", "archive", "0020", "--force", "--json"])
        assert r.exit_code == 0
        assert _json(r)["action"] == "archived"

        scan = cli_runner.invoke(main, ["phase", "scan", "--json"])
        data = _json(scan)
        assert data["totalIncomplete"] == 3
        assert data["archivedPhases"][0]["number"] == "0020"

    def test_defer(self, cli_runner, in_project):
        r = cli_runner.invoke(main, ["phase", "defer", "Dark mode", "Offline sync", "--priority", "P3", "--json"])
        assert r.exit_code == 0
        assert _json(r)["added"] == 2
        assert "| Offline sync | Phase 0020 |" in read_text(backlog_path(in_project))


# ── mark / next ──────────────────────────────────────────────────────


class TestMark:
    """mark for tasks and checklist items."""

    def test_mark_task(self, cli_runner, feature):
        r = cli_runner.invoke(main, ["mark", "T002", "--json"])
        assert r.exit_code == 0
        data = _json(r)
        assert data["progress"] == {"completed": 2, "total": 4, "percentage": 50}
        assert data["next"]["id"] == "T003"

    def test_mark_range_human(self, cli_runner, feature):
        r = cli_runner.invoke(main, ["mark", "T002..T004"])
        assert r.exit_code == 0
        assert "Progress: 4/4 tasks (100%)" in r.output
        assert "Ready for verification" in r.output

    def test_comma_separated(self, cli_runner, feature):
        r = cli_runner.invoke(main, ["mark", "T002,T003", "--json"])
        assert _json(r)["marked"] == ["T002", "T003"]

    def test_blocked_and_unblock(self, cli_runner, feature):
        r = cli_runner.invoke(main, ["mark", "T003", "--blocked", "waiting on keys"])
        assert r.exit_code == 0
        task = read_tasks(feature).get_task("T003")
        assert (task.status, task.blocked_reason) == (TaskStatus.BLOCKED, "waiting on keys")

        cli_runner.invoke(main, ["mark", "T003", "--incomplete"])
        assert read_tasks(feature).get_task("T003").status == TaskStatus.TODO

    def test_unknown_task_fails_whole_batch(self, cli_runner, feature):
        before = read_text(feature / "tasks.md")
        r = cli_runner.invoke(main, ["mark", "T002", "T099", "--json"])
        assert r.exit_code == 1
        assert "T099" in _json(r)["error"]["message"]
        assert read_text(feature / "tasks.md") == before

    @pytest.mark.parametrize(
        "args",
        [
            ["T002", "V-001"],
            ["T002", "--incomplete", "--blocked", "x"],
            ["T002", "--evidence", "x"],
            ["V-001", "--incomplete", "--evidence", "x"],
            ["T005..T001"],
            ["bogus"],
        ],
    )
    def test_invalid_combinations(self, cli_runner, feature, args):
        r = cli_runner.invoke(main, ["mark", *args, "--json"])
        assert r.exit_code == 1
        assert _json(r)["command"] == "mark"

    def test_checklist_with_evidence(self, cli_runner, feature):
        r = cli_runner.invoke(main, ["mark", "v-001", "V-003", "--evidence", "manual QA", "--json"])
        assert r.exit_code == 0
        data = _json(r)
        assert data["itemType"] == "checklist"
        assert data["evidenceRecorded"] == ["V-001", "V-003"]
        ledger = read_evidence(feature)
        assert ledger["items"]["V-003"]["sharedWith"] == ["V-001"]


class TestNext:
    """next picks the actionable task, or verification work."""

    def test_next_task(self, cli_runner, feature):
        r = cli_runner.invoke(main, ["next", "--json"])
        assert r.exit_code == 0
        data = _json(r)
        assert data["action"] == "implement_task"
        assert data["task"]["id"] == "T002"
        assert data["dependencies"] == {"met": True, "requires": ["T001"], "blockedBy": []}
        assert data["queue"] == {"remainingInSection": 1, "totalRemaining": 3, "nextUp": ["T003", "T004"]}

    def test_files_mentioned(self, cli_runner, feature):
        cli_runner.invoke(main, ["mark", "T002"])
        data = _json(cli_runner.invoke(main, ["next", "--json"]))
        assert data["task"]["id"] == "T003"
        assert data["hints"]["filesMentioned"] == ["src/auth/views.py"]

    def test_all_complete(self, cli_runner, feature):
        write_text(feature / "tasks.md", SAMPLE_TASKS.replace("- [ ]", "- [x]"))
        data = _json(cli_runner.invoke(main, ["next", "--json"]))
        assert (data["action"], data["reason"]) == ("none", "all_tasks_complete")

    def test_all_blocked(self, cli_runner, feature):
        write_text(feature / "tasks.md", "- [ ] T001 a, After T002\n- [b] T002 b\n")
        data = _json(cli_runner.invoke(main, ["next", "--json"]))
        assert data["reason"] == "all_tasks_blocked"

    def test_verify_flag(self, cli_runner, feature):
        data = _json(cli_runner.invoke(main, ["next", "--verify", "--json"]))
        assert (data["action"], data["task"]["id"]) == ("verify_task", "T004")

    def test_verify_step_uses_checklist(self, cli_runner, feature, in_project):
        write_text(feature / "tasks.md", SAMPLE_TASKS.replace("- [ ]", "- [x]"))
        state = set_state_value(read_state(in_project), "orchestration.step.current", "verify")
        write_state(set_state_value(state, "orchestration.step.index", 3), in_project)
        data = _json(cli_runner.invoke(main, ["next", "--json"]))
        assert (data["action"], data["task"]["id"]) == ("verify_item", "V-001")
        assert data["queue"] == {"remaining": 2, "nextUp": ["V-003"]}

    def test_human_output(self, cli_runner, feature):
        r = cli_runner.invoke(main, ["next"])
        assert "Next: T002" in r.output


# ── status / check ───────────────────────────────────────────────────


class TestStatusAndCheck:
    """status and check output and exit codes."""

    def test_status_json(self, cli_runner, in_project):
        r = cli_runner.invoke(main, ["status", "--json"])
        assert r.exit_code == 0
        data = _json(r)
        assert data["nextAction"] == "continue_implement"
        assert data["progress"]["percentage"] == 25

    def test_status_human(self, cli_runner, in_project):
        r = cli_runner.invoke(main, ["status"])
        assert r.exit_code == 0
        assert "Phase 0020 auth" in r.output
        assert "Tasks: 1/4 (25%)" in r.output
        assert "Next: continue_implement" in r.output

    def test_check_fails_with_open_tasks(self, cli_runner, in_project):
        r = cli_runner.invoke(main, ["check", "--json"])
        assert r.exit_code == 1
        data = _json(r)
        assert data["passed"] is False
        assert data["gates"]["implement"]["reason"] == "3 tasks incomplete"

    def test_check_single_gate_passes(self, cli_runner, in_project):
        r = cli_runner.invoke(main, ["check", "--gate", "design"])
        assert r.exit_code == 0
        assert "Check passed" in r.output

    def test_check_fix(self, cli_runner, feature, in_project):
        write_text(feature / "tasks.md", SAMPLE_TASKS.replace("- [ ]", "- [x]"))
        r = cli_runner.invoke(main, ["check", "--fix", "--json"])
        assert r.exit_code == 0
        data = _json(r)
        assert "TASKS_COMPLETE_STEP_IMPLEMENT" in data["fixed"]
        assert read_state(in_project)["orchestration"]["step"]["current"] == "verify"

    def test_check_warning_exit_code(self, cli_runner, feature, in_project):
        write_text(feature / "tasks.md", SAMPLE_TASKS.replace("- [ ]", "- [x]"))
        state = read_state(in_project)
        state["orchestration"]["step"] = {"current": "verify", "index": 3, "status": "blocked"}
        write_state(state, in_project)
        r = cli_runner.invoke(main, ["check", "--json"])
        assert r.exit_code == 2
        assert _json(r)["summary"]["warnings"] == 1


# ── evidence ─────────────────────────────────────────────────────────


class TestEvidenceCommands:
    """evidence record/show/remove."""

    def test_show_without_ledger(self, cli_runner, feature):
        r = cli_runner.invoke(main, ["evidence", "show", "--json"])
        assert r.exit_code == 0
        assert _json(r) == {"items": {}}

    def test_record_show_remove(self, cli_runner, feature):
        r = cli_runner.invoke(main, ["evidence", "record", "v-001", "V-002", "--text", "pytest -q", "--json"])
        assert r.exit_code == 0
        assert _json(r)["recorded"] == ["V-001", "V-002"]

        shown = cli_runner.invoke(main, ["evidence", "show"])
        assert "V-001: pytest -q" in shown.output

        removed = cli_runner.invoke(main, ["evidence", "remove", "V-002", "--json"])
        assert _json(removed) == {"removed": ["V-002"]}
        assert set(read_evidence(feature)["items"]) == {"V-001"}

    def test_record_requires_text(self, cli_runner, feature):
        r = cli_runner.invoke(main, ["evidence", "record", "V-001", "--text", " ", "--json"])
        assert r.exit_code == 1


# ── Unreadable files and unexpected failures ─────────────────────────


class TestFailureReporting:
    """Failures end in the error envelope, never a traceback."""

    def test_undecodable_tasks(self, cli_runner, feature):
        (feature / "tasks.md").write_bytes(b"- [ ] T001 caf\xe9\n")
        r = cli_runner.invoke(main, ["mark", "T001", "--json"])
        assert r.exit_code == 1
        assert r.exception is None or isinstance(r.exception, SystemExit)
        data = _json(r)
        assert data["command"] == "mark"
        assert "not valid UTF-8" in data["error"]["message"]

    def test_unexpected_exception(self, cli_runner, in_project, monkeypatch):
        def explode(root):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr("specflow.status.get_status", explode)
        r = cli_runner.invoke(main, ["status", "--json"])
        assert r.exit_code == 1
        assert _json(r) == {
            "status": "error",
            "command": "status",
            "error": {"message": "disk on fire", "hint": "Re-run with --verbose for details"},
        }

    def test_unexpected_exception_human(self, cli_runner, in_project, monkeypatch):
        monkeypatch.setattr("specflow.status.get_status", lambda root: 1 / 0)
        r = cli_runner.invoke(main, ["status"])
        assert r.exit_code == 1
        assert "[ERROR] division by zero" in r.output
        assert "Traceback" not in r.output

    def test_broken_ledger_leaves_checklist_untouched(self, cli_runner, feature):
        checklist = feature / "checklists" / "verification.md"
        before = checklist.read_bytes()
        write_text(feature / ".evidence.json", "{not json")
        r = cli_runner.invoke(main, ["mark", "V-001", "--evidence", "manual QA", "--json"])
        assert r.exit_code == 1
        assert "invalid JSON" in _json(r)["error"]["message"]
        assert checklist.read_bytes() == before

    def test_blank_evidence_leaves_checklist_untouched(self, cli_runner, feature):
        checklist = feature / "checklists" / "verification.md"
        before = checklist.read_bytes()
        r = cli_runner.invoke(main, ["mark", "V-001", "--evidence", "  ", "--json"])
        assert r.exit_code == 1
        assert checklist.read_bytes() == before
        assert read_evidence(feature) is None
