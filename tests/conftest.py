"""Shared fixtures for specflow tests.

File handling in tests:
- Use tmp_path for any project created on disk so tests are isolated and cleaned up.
- Use specflow.io_utils read_text/write_text for consistent UTF-8 I/O.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from specflow.config import SPECFLOW_DIR
from specflow.io_utils import write_text
from specflow.state import create_initial_state, start_phase, write_state

SAMPLE_ROADMAP = """# Demo Roadmap

**Project**: demo
**Schema Version**: 3.0

## Phases

| Phase | Name | Status | Verification Gate |
|-------|------|--------|-------------------|
| 0010 | setup | Complete | All tests pass |
| 0020 | auth | In Progress | **USER GATE**: manual review |
| 0030 | dashboard | Not Started | Charts render |

## Notes

Keep phases in execution order.
"""

SAMPLE_TASKS = """# Tasks: Auth

## Phase 1: Setup

**Purpose**: Project scaffolding

- [x] T001 Create package layout in src/auth/__init__.py
- [ ] T002 [P] Add settings module, After T001

## Phase 2: Login

- [ ] T003 [US1] Implement login view in src/auth/views.py, Requires T002
- [ ] T004 [V] Verify login flow end to end, Depends on T003
"""

SAMPLE_VERIFICATION = """# Verification Checklist

## Functional

- [ ] V-001 Login works with valid credentials
- [x] V-002 Invalid password shows an error

## Docs

- [ ] V-003 README updated
"""

SAMPLE_IMPLEMENTATION = """# Implementation Checklist

- [x] Code reviewed
- [ ] Lint clean
"""


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    write_text(path, content)
    return path


def _make_feature(
    root: Path,
    name: str = "0020-auth",
    *,
    tasks: str | None = SAMPLE_TASKS,
    spec: bool = True,
    plan: bool = True,
    checklists: dict[str, str] | None = None,
) -> Path:
    feature = root / "specs" / name
    feature.mkdir(parents=True, exist_ok=True)
    if spec:
        _write(feature / "spec.md", "# Spec\n")
    if plan:
        _write(feature / "plan.md", "# Plan\n")
    if tasks is not None:
        _write(feature / "tasks.md", tasks)
    for filename, content in (checklists or {}).items():
        _write(feature / "checklists" / filename, content)
    return feature


def _make_project(
    root: Path,
    *,
    roadmap: str | None = SAMPLE_ROADMAP,
    state: bool = True,
    phase: tuple[str, str] | None = ("0020", "auth"),
    step: str = "implement",
) -> Path:
    (root / SPECFLOW_DIR).mkdir(parents=True, exist_ok=True)
    if roadmap is not None:
        _write(root / "ROADMAP.md", roadmap)
    if state:
        data = create_initial_state("demo", root)
        if phase is not None:
            number, name = phase
            data = start_phase(data, number, name, branch=f"{number}-{name}", has_user_gate=True)
            index = {"design": 0, "analyze": 1, "implement": 2, "verify": 3}[step]
            data["orchestration"]["step"] = {"current": step, "index": index, "status": "in_progress"}
        write_state(data, root)
    return root


@pytest.fixture
def write_file():
    """Write a UTF-8 file, creating parent directories."""
    return _write


@pytest.fixture
def make_feature():
    """Factory fixture that creates a specs/NNNN-name feature directory."""
    return _make_feature


@pytest.fixture
def make_project(tmp_path: Path):
    """Factory fixture that lays out a project under tmp_path."""

    def _make(**kwargs) -> Path:
        return _make_project(tmp_path, **kwargs)

    return _make


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A project with phase 0020 in implement and its feature directory."""
    _make_project(tmp_path)
    _make_feature(
        tmp_path,
        checklists={"verification.md": SAMPLE_VERIFICATION, "implementation.md": SAMPLE_IMPLEMENTATION},
    )
    return tmp_path


@pytest.fixture
def cli_runner():
    """Click CliRunner for invoking the CLI in-process."""
    from click.testing import CliRunner

    return CliRunner()


@pytest.fixture
def in_project(project: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the CLI at the sample project through SPECFLOW_PROJECT_ROOT."""
    monkeypatch.setenv("SPECFLOW_PROJECT_ROOT", str(project))
    monkeypatch.delenv("SPECFLOW_VERBOSE", raising=False)
    return project
