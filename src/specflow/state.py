"""Orchestration state store: ``.specflow/orchestration-state.json``.

The state is plain JSON addressed by dotted paths (``orchestration.step.index``).
A static schema tree gives every known leaf an expected kind so that
``state set`` can coerce obvious type mismatches before writing.
"""

from __future__ import annotations

import copy
import json
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from jsonschema import Draft7Validator

from specflow import log
from specflow.config import SCHEMA_VERSION, state_path
from specflow.errors import NotFoundError, StateError, ValidationError
from specflow.io_utils import atomic_write_json, read_text, utc_timestamp


class Kind(str, Enum):
    STRING = "ZodString"
    NUMBER = "ZodNumber"
    BOOLEAN = "ZodBoolean"
    ARRAY = "ZodArray"
    OBJECT = "ZodObject"


@dataclass(frozen=True)
class Node:
    """One position in the schema tree.

    ``record`` is set for maps with free-form keys: every key resolves to it.
    """

    kind: Kind
    children: Mapping[str, Node] = field(default_factory=dict)
    record: Node | None = None


_STR = Node(Kind.STRING)
_NUM = Node(Kind.NUMBER)
_BOOL = Node(Kind.BOOLEAN)
_ARR = Node(Kind.ARRAY)


def _obj(**children: Node) -> Node:
    return Node(Kind.OBJECT, children)


def _rec(value: Node) -> Node:
    return Node(Kind.OBJECT, record=value)


SCHEMA = _obj(
    schema_version=_STR,
    project=_obj(id=_STR, name=_STR, path=_STR),
    last_updated=_STR,
    orchestration=_obj(
        phase=_obj(
            id=_STR,
            number=_STR,
            name=_STR,
            branch=_STR,
            status=_STR,
            hasUserGate=_BOOL,
            userGateStatus=_STR,
            goals=_ARR,
        ),
        next_phase=_obj(number=_STR, name=_STR),
        step=_obj(current=_STR, index=_NUM, status=_STR),
        progress=_obj(tasks_completed=_NUM, tasks_total=_NUM, percentage=_NUM),
        steps=_rec(_obj(status=_STR, started_at=_STR, completed_at=_STR)),
        analyze=_obj(iteration=_NUM, completedAt=_NUM),
        implement=_obj(
            current_section=_STR,
            current_tasks=_ARR,
            completed_sections=_ARR,
            started_at=_STR,
        ),
        verify=_obj(status=_STR, completedAt=_NUM),
    ),
    health=_obj(status=_STR, last_check=_STR, issues=_ARR),
    actions=_obj(available=_ARR, pending=_ARR, history=_ARR),
    memory=_obj(archive_reviews=_rec(_obj(reviewed_at=_STR))),
)

STEP_NAMES: tuple[str, ...] = ("design", "analyze", "implement", "verify")
STEP_INDEX: dict[str, int] = {name: i for i, name in enumerate(STEP_NAMES)}
STEP_STATUSES: tuple[str, ...] = (
    "not_started", "pending", "in_progress", "complete", "failed", "blocked", "skipped",
)
PHASE_STATUSES: tuple[str, ...] = (
    "not_started", "in_progress", "complete", "awaiting_user_gate", "blocked",
)

_NULLABLE_STR = {"type": ["string", "null"]}

# Structural checks only; value-level problems are reported by the health check.
STATE_JSON_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["schema_version", "orchestration"],
    "properties": {
        "schema_version": {"type": "string"},
        "last_updated": _NULLABLE_STR,
        "project": {
            "type": "object",
            "properties": {"id": _NULLABLE_STR, "name": _NULLABLE_STR, "path": _NULLABLE_STR},
        },
        "orchestration": {
            "type": "object",
            "properties": {
                "phase": {
                    "type": ["object", "null"],
                    "properties": {
                        "number": _NULLABLE_STR,
                        "name": _NULLABLE_STR,
                        "status": _NULLABLE_STR,
                        "hasUserGate": {"type": ["boolean", "null"]},
                    },
                },
                "step": {
                    "type": ["object", "null"],
                    "properties": {
                        "current": _NULLABLE_STR,
                        "index": {"type": ["number", "string", "null"]},
                        "status": _NULLABLE_STR,
                    },
                },
            },
        },
        "health": {
            "type": ["object", "null"],
            "properties": {"status": _NULLABLE_STR, "issues": {"type": "array"}},
        },
        "actions": {
            "type": ["object", "null"],
            "properties": {"history": {"type": "array"}},
        },
    },
}

_validator = Draft7Validator(STATE_JSON_SCHEMA)

_NUMERIC_RE = re.compile(r"^-?\d+(\.\d+)?$")

_MISSING = object()


# ── Schema resolution and coercion ───────────────────────────────────


def resolve_schema_type(path: str) -> str | None:
    """Kind name for a dotted *path*, or ``None`` if the schema does not know it."""
    node: Node | None = SCHEMA
    for part in path.split("."):
        if node is None or node.kind != Kind.OBJECT:
            return None
        if part in node.children:
            node = node.children[part]
        elif node.record is not None:
            node = node.record
        else:
            return None
    return node.kind.value if node is not None else None


def coerce_value_for_schema(path: str, value: Any) -> Any:
    """Fix obvious scalar mismatches for *path*; anything else passes through."""
    kind = resolve_schema_type(path)
    if kind == Kind.STRING.value:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
    elif kind == Kind.NUMBER.value:
        if isinstance(value, str) and _NUMERIC_RE.match(value.strip()):
            text = value.strip()
            return float(text) if "." in text else int(text)
    elif kind == Kind.BOOLEAN.value:
        if value == "true":
            return True
        if value == "false":
            return False
    return value


def parse_value(text: str) -> Any:
    """Decode *text* as a JSON literal, falling back to the raw string."""
    try:
        return json.loads(text)
    except ValueError:
        return text


# ── Validation ───────────────────────────────────────────────────────


def validate_state(data: Any) -> list[str]:
    """Human-readable schema violations, ``path: message``; empty when valid."""
    errors = []
    for err in sorted(_validator.iter_errors(data), key=lambda e: list(e.absolute_path)):
        location = ".".join(str(p) for p in err.absolute_path) or "(root)"
        errors.append(f"{location}: {err.message}")
    return errors


# ── File I/O ─────────────────────────────────────────────────────────


def read_raw_state(root: Path) -> dict[str, Any]:
    """Load the state JSON without schema validation.

    Raises :class:`NotFoundError` when absent and :class:`StateError` when the
    file is not a JSON object.
    """
    path = state_path(root)
    if not path.is_file():
        raise NotFoundError("State file", 'Run "specflow state init" to create one')
    try:
        data = json.loads(read_text(path))
    except ValueError as exc:
        raise StateError(
            f"State file contains invalid JSON: {exc}",
            f"Repair {path} by hand or re-create it with \"specflow state init --force\"",
        ) from exc
    if not isinstance(data, dict):
        raise StateError("State file must contain a JSON object", f"Check {path}")
    return data


def read_state(root: Path) -> dict[str, Any]:
    data = read_raw_state(root)
    errors = validate_state(data)
    if errors:
        raise StateError(f"Invalid state: {'; '.join(errors)}", 'Run "specflow check --fix"')
    return data


def write_state(state: dict[str, Any], root: Path) -> dict[str, Any]:
    """Stamp ``last_updated`` and replace the state file atomically."""
    updated = dict(state)
    updated["last_updated"] = utc_timestamp()
    path = state_path(root)
    atomic_write_json(path, updated)
    log.debug(f"Wrote state to {path}")
    return updated


# ── Dotted-path access ───────────────────────────────────────────────


def get_state_value(state: Any, key: str, default: Any = None) -> Any:
    current = state
    for part in key.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def has_state_value(state: Any, key: str) -> bool:
    return get_state_value(state, key, _MISSING) is not _MISSING


def set_state_value(state: dict[str, Any], key: str, value: Any) -> dict[str, Any]:
    """Return a deep copy of *state* with *key* set, creating missing objects."""
    parts = key.split(".")
    if not all(parts):
        raise ValidationError(f"Invalid key: {key!r}", "Use a dotted path such as orchestration.step.current")
    result = copy.deepcopy(state)
    current = result
    for i, part in enumerate(parts[:-1]):
        nxt = current.get(part)
        if nxt is None:
            nxt = current[part] = {}
        elif not isinstance(nxt, dict):
            prefix = ".".join(parts[: i + 1])
            raise ValidationError(
                f"Cannot set {key}: {prefix} is not an object",
                f"Set {prefix} to an object first, or choose another key",
            )
        current = nxt
    current[parts[-1]] = value
    return result


def parse_assignment(text: str) -> tuple[str, str]:
    """Split ``key=value`` at the first ``=``."""
    key, sep, value = text.partition("=")
    if not sep:
        raise ValidationError(
            f"Invalid format: {text!r}. Expected key=value",
            "Use format: specflow state set orchestration.step.current=implement",
        )
    if not key.strip():
        raise ValidationError("Key cannot be empty", "Use format: key=value")
    return key.strip(), value


# ── Initial state and resets ─────────────────────────────────────────


def create_initial_state(name: str, path: Path | str) -> dict[str, Any]:
    now = utc_timestamp()
    return {
        "schema_version": SCHEMA_VERSION,
        "project": {"id": str(uuid.uuid4()), "name": name, "path": str(path)},
        "last_updated": now,
        "orchestration": {
            "phase": {
                "id": None,
                "number": None,
                "name": None,
                "branch": None,
                "status": "not_started",
            },
            "next_phase": None,
            "step": {"current": "design", "index": 0, "status": "not_started"},
            "implement": None,
        },
        "health": {"status": "initializing", "last_check": now, "issues": []},
        "actions": {"history": []},
    }


def history_entries(state: dict[str, Any]) -> list[dict[str, Any]]:
    history = get_state_value(state, "actions.history")
    return history if isinstance(history, list) else []


def completed_phase_numbers(state: dict[str, Any]) -> set[str]:
    return {
        str(h.get("phase_number"))
        for h in history_entries(state)
        if isinstance(h, dict) and h.get("type") == "phase_completed" and h.get("phase_number")
    }


def append_history(state: dict[str, Any], entry: dict[str, Any]) -> dict[str, Any]:
    return set_state_value(state, "actions.history", [*history_entries(state), entry])


def start_phase(
    state: dict[str, Any],
    number: str,
    name: str,
    *,
    branch: str | None = None,
    has_user_gate: bool = False,
) -> dict[str, Any]:
    """Point the orchestration at phase *number*, step ``design``."""
    result = copy.deepcopy(state)
    orchestration = result.setdefault("orchestration", {})
    orchestration["phase"] = {
        "id": f"{number}-{name}",
        "number": number,
        "name": name,
        "branch": branch,
        "status": "in_progress",
        "hasUserGate": has_user_gate,
    }
    orchestration["step"] = {"current": "design", "index": 0, "status": "in_progress"}
    orchestration["implement"] = None
    return result


def reset_phase(state: dict[str, Any], next_phase: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return *state* with no active phase, ready for the next ``phase open``."""
    result = copy.deepcopy(state)
    orchestration = result.setdefault("orchestration", {})
    orchestration["phase"] = {
        "id": None,
        "number": None,
        "name": None,
        "branch": None,
        "status": "not_started",
    }
    orchestration["next_phase"] = next_phase
    orchestration["step"] = {"current": "design", "index": 0, "status": "not_started"}
    orchestration["implement"] = None
    orchestration.pop("progress", None)
    return result
