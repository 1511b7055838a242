"""Configuration defaults, project layout, and runtime options for SpecFlow."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


VERSION = "3.0.0"

SCHEMA_VERSION = "3.0"

# Project layout (relative to the project root)
SPECFLOW_DIR = ".specflow"
SPECIFY_DIR = ".specify"
STATE_FILE = "orchestration-state.json"
ROADMAP_FILE = "ROADMAP.md"
BACKLOG_FILE = "BACKLOG.md"
SPECS_DIR = "specs"
HISTORY_FILE = "HISTORY.md"
TASKS_FILE = "tasks.md"
CHECKLISTS_DIR = "checklists"

PROJECT_MARKERS: tuple[str, ...] = (SPECFLOW_DIR, SPECIFY_DIR)

ENV_PROJECT_ROOT = "SPECFLOW_PROJECT_ROOT"
ENV_VERBOSE = "SPECFLOW_VERBOSE"


@dataclass
class Config:
    """Runtime configuration built from the global CLI flags."""

    verbose: bool = False
    project_root: Path | None = None

    def __post_init__(self) -> None:
        if self.project_root is None:
            env_root = os.environ.get(ENV_PROJECT_ROOT, "")
            if env_root:
                self.project_root = Path(env_root).resolve()
        if not self.verbose:
            self.verbose = os.environ.get(ENV_VERBOSE, "").lower() in ("1", "true", "yes")


def find_project_root(start: Path) -> Path | None:
    """Return the nearest directory at or above *start* holding a project marker."""
    current = start.resolve()
    for candidate in (current, *current.parents):
        if any((candidate / marker).is_dir() for marker in PROJECT_MARKERS):
            return candidate
    return None


# ── Path helpers ─────────────────────────────────────────────────────


def state_path(root: Path) -> Path:
    return root / SPECFLOW_DIR / STATE_FILE


def roadmap_path(root: Path) -> Path:
    return root / ROADMAP_FILE


def backlog_path(root: Path) -> Path:
    return root / BACKLOG_FILE


def specs_dir(root: Path) -> Path:
    return root / SPECS_DIR


def specify_dir(root: Path) -> Path:
    return root / SPECIFY_DIR


def history_path(root: Path) -> Path:
    return root / SPECIFY_DIR / "history" / HISTORY_FILE


def phases_dir(root: Path) -> Path:
    return root / SPECIFY_DIR / "phases"


def archive_dir(root: Path) -> Path:
    return root / SPECIFY_DIR / "archive"


def memory_dir(root: Path) -> Path:
    return root / SPECIFY_DIR / "memory"


def templates_dir(root: Path) -> Path:
    return root / SPECIFY_DIR / "templates"
