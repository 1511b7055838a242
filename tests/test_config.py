"""Tests for configuration, project root discovery and feature resolution."""

from __future__ import annotations

from pathlib import Path

import pytest

from specflow.config import Config, find_project_root, history_path, state_path
from specflow.context import (
    feature_artifacts,
    list_feature_dirs,
    missing_artifacts,
    phase_number_of,
    resolve_feature_dir,
)


class TestConfig:
    """Config reads the environment when flags are absent."""

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("SPECFLOW_PROJECT_ROOT", raising=False)
        monkeypatch.delenv("SPECFLOW_VERBOSE", raising=False)
        cfg = Config()
        assert cfg.verbose is False
        assert cfg.project_root is None

    def test_env_root_and_verbose(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SPECFLOW_PROJECT_ROOT", str(tmp_path))
        monkeypatch.setenv("SPECFLOW_VERBOSE", "true")
        cfg = Config()
        assert cfg.project_root == tmp_path.resolve()
        assert cfg.verbose is True

    def test_explicit_root_wins(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SPECFLOW_PROJECT_ROOT", "/somewhere/else")
        assert Config(project_root=tmp_path).project_root == tmp_path


class TestFindProjectRoot:
    """The nearest ancestor with .specflow or .specify wins."""

    def test_finds_from_subdirectory(self, tmp_path: Path):
        (tmp_path / ".specflow").mkdir()
        nested = tmp_path / "src" / "pkg"
        nested.mkdir(parents=True)
        assert find_project_root(nested) == tmp_path.resolve()

    def test_specify_marker(self, tmp_path: Path):
        (tmp_path / ".specify").mkdir()
        assert find_project_root(tmp_path) == tmp_path.resolve()

    def test_marker_file_is_not_a_project(self, tmp_path: Path):
        (tmp_path / ".specflow").write_text("", encoding="utf-8")
        root = find_project_root(tmp_path)
        assert root != tmp_path.resolve()

    def test_paths(self, tmp_path: Path):
        assert state_path(tmp_path) == tmp_path / ".specflow" / "orchestration-state.json"
        assert history_path(tmp_path) == tmp_path / ".specify" / "history" / "HISTORY.md"


class TestFeatureResolution:
    """resolve_feature_dir by identifier, state, or highest number."""

    @pytest.fixture
    def features(self, tmp_path: Path, make_feature) -> Path:
        make_feature(tmp_path, "0010-setup")
        make_feature(tmp_path, "0020-auth", spec=False)
        (tmp_path / "specs" / "notes").mkdir()
        return tmp_path

    def test_list_ignores_unnumbered(self, features: Path):
        assert [p.name for p in list_feature_dirs(features)] == ["0010-setup", "0020-auth"]

    @pytest.mark.parametrize("identifier", ["0010-setup", "0010", "setup"])
    def test_by_identifier(self, features: Path, identifier):
        assert resolve_feature_dir(features, identifier).name == "0010-setup"

    def test_unknown_identifier(self, features: Path):
        assert resolve_feature_dir(features, "9999") is None

    def test_state_phase_wins(self, features: Path):
        state = {"orchestration": {"phase": {"number": "0010", "name": "other"}}}
        assert resolve_feature_dir(features, state=state).name == "0010-setup"

    def test_highest_number_fallback(self, features: Path):
        assert resolve_feature_dir(features).name == "0020-auth"

    def test_no_specs_dir(self, tmp_path: Path):
        assert resolve_feature_dir(tmp_path) is None

    def test_artifacts(self, features: Path):
        artifacts = feature_artifacts(features / "specs" / "0020-auth")
        assert artifacts.plan and artifacts.tasks and not artifacts.spec
        assert artifacts.has_min_artifacts is False
        assert missing_artifacts(artifacts) == ["spec.md"]
        assert phase_number_of(features / "specs" / "0020-auth") == "0020"
