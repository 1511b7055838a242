"""Evidence ledger for verification items: ``<feature>/.evidence.json``.

A missing ledger is a normal state. Records written together in one batch
name each other in ``sharedWith`` so any one of them can be read alone.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from jsonschema import Draft7Validator

from specflow import log
from specflow.errors import StateError, ValidationError
from specflow.io_utils import atomic_write_json, read_text, utc_timestamp

EVIDENCE_FILE = ".evidence.json"
EVIDENCE_VERSION = "1.0"

EVIDENCE_JSON_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["version", "featureDir", "items"],
    "properties": {
        "version": {"const": EVIDENCE_VERSION},
        "featureDir": {"type": "string"},
        "items": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "required": ["itemId", "timestamp", "evidence"],
                "properties": {
                    "itemId": {"type": "string"},
                    "timestamp": {"type": "string"},
                    "evidence": {"type": "string"},
                    "sharedWith": {"type": "array", "items": {"type": "string"}},
                },
            },
        },
    },
}

_validator = Draft7Validator(EVIDENCE_JSON_SCHEMA)


@dataclass
class EvidenceCheck:
    complete: bool
    missing: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"complete": self.complete, "missing": list(self.missing)}


def evidence_path(feature_dir: Path) -> Path:
    return feature_dir / EVIDENCE_FILE


def legacy_evidence_path(feature_dir: Path) -> Path:
    return feature_dir / "checklists" / EVIDENCE_FILE


def _load(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(read_text(path))
    except ValueError as exc:
        raise StateError(f"Evidence file contains invalid JSON: {path}", "Fix or delete the file") from exc
    errors = sorted(_validator.iter_errors(data), key=lambda e: list(e.absolute_path))
    if errors:
        first = errors[0]
        location = ".".join(str(p) for p in first.absolute_path) or "(root)"
        raise StateError(f"Invalid evidence file {path}: {location}: {first.message}", "Fix or delete the file")
    return data


def read_evidence(feature_dir: Path) -> dict[str, Any] | None:
    """Load the ledger, falling back to the legacy ``checklists/`` location."""
    for path in (evidence_path(feature_dir), legacy_evidence_path(feature_dir)):
        if path.is_file():
            return _load(path)
    return None


def write_evidence(feature_dir: Path, evidence: dict[str, Any]) -> Path:
    path = evidence_path(feature_dir)
    atomic_write_json(path, evidence)
    return path


def record_evidence(feature_dir: Path, ids: list[str], text: str) -> dict[str, Any]:
    """Attach *text* to every ID in *ids*, keeping unrelated records."""
    if not ids:
        raise ValidationError("No item IDs provided", "Pass at least one verification item ID")
    if not text.strip():
        raise ValidationError("Evidence text cannot be empty", 'Use --text "what was verified"')

    evidence = read_evidence(feature_dir) or {
        "version": EVIDENCE_VERSION,
        "featureDir": str(feature_dir),
        "items": {},
    }
    now = utc_timestamp()
    for item_id in ids:
        record: dict[str, Any] = {"itemId": item_id, "timestamp": now, "evidence": text}
        if len(ids) > 1:
            record["sharedWith"] = [other for other in ids if other != item_id]
        evidence["items"][item_id] = record

    write_evidence(feature_dir, evidence)
    log.debug(f"Recorded evidence for {', '.join(ids)}")
    return evidence


def remove_evidence(feature_dir: Path, ids: list[str]) -> list[str]:
    """Drop the records for *ids*. Returns the IDs actually removed.

    Nothing is written when the ledger does not exist.
    """
    evidence = read_evidence(feature_dir)
    if evidence is None:
        return []
    removed = [item_id for item_id in ids if evidence["items"].pop(item_id, None) is not None]
    write_evidence(feature_dir, evidence)
    return removed


def has_evidence(evidence: dict[str, Any] | None, ids: list[str]) -> EvidenceCheck:
    if evidence is None:
        missing = list(ids)
    else:
        missing = [item_id for item_id in ids if item_id not in evidence.get("items", {})]
    return EvidenceCheck(complete=not missing, missing=missing)
