"""Command output: structured JSON on stdout, or human text via the logger."""

from __future__ import annotations

import json
from typing import Any

from specflow import log
from specflow.errors import SpecflowError

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_WARNING = 2


def emit(data: Any, human: str | None = None, *, json_mode: bool = False) -> None:
    """Print *data* as JSON in JSON mode, otherwise *human* (or JSON as fallback)."""
    if json_mode:
        print(json.dumps(data, indent=2, ensure_ascii=False))
        return
    if human is not None:
        log.console.print(human, markup=False, soft_wrap=True)
    elif isinstance(data, str):
        log.console.print(data, markup=False, soft_wrap=True)
    else:
        log.console.print(json.dumps(data, indent=2, ensure_ascii=False), markup=False, soft_wrap=True)


def error_payload(err: SpecflowError, command: str) -> dict[str, Any]:
    return {
        "status": "error",
        "command": command,
        "error": {"message": err.message, "hint": err.hint},
    }


def emit_error(err: SpecflowError, command: str, *, json_mode: bool = False) -> None:
    """Report *err* as a JSON envelope or a one-line message plus hint."""
    if json_mode:
        print(json.dumps(error_payload(err, command), indent=2, ensure_ascii=False))
        return
    log.error(err.message)
    if err.hint:
        log.hint(err.hint)
