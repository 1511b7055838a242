"""Tests for checklist parsing and marking."""

from __future__ import annotations

from pathlib import Path

import pytest

from specflow.checklist import (
    ChecklistStatus,
    are_all_checklists_complete,
    checklist_type_for,
    find_next_checklist_item,
    is_checklist_id,
    mark_checklist_items,
    parse_checklist,
    read_feature_checklists,
)
from specflow.errors import ValidationError
from specflow.io_utils import read_source
from specflow.tasks.mutate import MARK_BLOCKED, MARK_INCOMPLETE

from conftest import SAMPLE_IMPLEMENTATION, SAMPLE_VERIFICATION


# ── Parsing ──────────────────────────────────────────────────────────


class TestParseChecklist:
    """parse_checklist reads items, IDs and sections."""

    def test_authored_ids_and_sections(self):
        doc = parse_checklist(SAMPLE_VERIFICATION, "checklists/verification.md")
        assert doc.type == "verification"
        assert doc.title == "Verification Checklist"
        assert [i.id for i in doc.items] == ["V-001", "V-002", "V-003"]
        assert [s.name for s in doc.sections] == ["Functional", "Docs"]
        assert doc.items[2].section == "Docs"
        assert doc.progress() == {"total": 3, "completed": 1, "skipped": 0, "percentage": 33}

    def test_generated_ids_use_type_prefix(self):
        doc = parse_checklist(SAMPLE_IMPLEMENTATION, "implementation.md")
        assert [(i.id, i.status) for i in doc.items] == [
            ("I-001", ChecklistStatus.DONE),
            ("I-002", ChecklistStatus.TODO),
        ]

    def test_authored_id_uppercased(self):
        doc = parse_checklist("- [ ] v-ui1 Layout matches mockups\n", "verify.md")
        assert doc.items[0].id == "V-UI1"

    def test_skipped_items_close(self):
        doc = parse_checklist("- [~] skip me\n- [x] done\n", "other.md")
        assert doc.type == "other"
        assert doc.items[0].status == ChecklistStatus.SKIPPED
        assert doc.is_complete is True
        assert doc.items[0].id == "C-001"

    def test_deeper_headings_stay_in_section(self):
        doc = parse_checklist("## Main\n### Detail\n- [ ] one\n", "verification.md")
        assert [s.name for s in doc.sections] == ["Main"]
        assert doc.items[0].section == "Main"

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("verification.md", "verification"),
            ("verify-ui.md", "verification"),
            ("implementation.md", "implementation"),
            ("deferred.md", "deferred"),
            ("security.md", "other"),
        ],
    )
    def test_type_from_filename(self, name, expected):
        assert checklist_type_for(name) == expected

    @pytest.mark.parametrize("token,expected", [("V-001", True), ("i-002", True), ("V-UI1", True), ("T001", False), ("X-001", False)])
    def test_is_checklist_id(self, token, expected):
        assert is_checklist_id(token) is expected


class TestFeatureChecklists:
    """read_feature_checklists groups files by type."""

    def test_grouping(self, project: Path):
        checklists = read_feature_checklists(project / "specs" / "0020-auth")
        assert checklists.verification.name == "verification"
        assert checklists.implementation.name == "implementation"
        assert len(checklists.gating()) == 2
        assert are_all_checklists_complete(checklists) is False
        assert find_next_checklist_item(checklists.verification).id == "V-001"

    def test_missing_directory(self, tmp_path: Path):
        checklists = read_feature_checklists(tmp_path)
        assert checklists.all() == []
        assert are_all_checklists_complete(checklists) is True

    def test_deferred_does_not_gate(self, tmp_path: Path, write_file):
        write_file(tmp_path / "checklists" / "deferred.md", "- [ ] D-001 later\n")
        assert are_all_checklists_complete(read_feature_checklists(tmp_path)) is True


# ── Marking ──────────────────────────────────────────────────────────


class TestMarkChecklistItems:
    """mark_checklist_items edits checkboxes in place."""

    @pytest.fixture
    def feature(self, project: Path) -> Path:
        return project / "specs" / "0020-auth"

    def test_mark_complete(self, feature: Path):
        result = mark_checklist_items(feature, ["v-001"]).to_dict()
        assert result["marked"] == ["V-001"]
        assert result["itemType"] == "checklist"
        assert result["progress"] == {"completed": 3, "total": 5, "percentage": 60}
        assert result["sectionStatus"]["name"] == "Functional"
        assert result["next"]["id"] == "V-003"
        assert "- [x] V-001 Login works" in read_source(feature / "checklists" / "verification.md")

    def test_marks_across_files(self, feature: Path):
        result = mark_checklist_items(feature, ["V-001", "V-003", "I-002"]).to_dict()
        assert result["stepComplete"] is True
        assert result["nextAction"] == "ready_to_close"
        assert "next" not in result

    def test_mark_incomplete(self, feature: Path):
        mark_checklist_items(feature, ["V-002"], MARK_INCOMPLETE)
        doc = read_feature_checklists(feature).verification
        assert doc.items[1].status == ChecklistStatus.TODO

    def test_unknown_id_writes_nothing(self, feature: Path):
        before = read_source(feature / "checklists" / "verification.md")
        with pytest.raises(ValidationError):
            mark_checklist_items(feature, ["V-001", "V-099"])
        assert read_source(feature / "checklists" / "verification.md") == before

    def test_blocked_not_supported(self, feature: Path):
        with pytest.raises(ValidationError):
            mark_checklist_items(feature, ["V-001"], MARK_BLOCKED)
