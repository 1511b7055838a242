"""Error taxonomy shared by every command.

Parsers never raise these for malformed content; they degrade to empty or
default values. Mutators raise when the target of a write cannot be located.
"""

from __future__ import annotations


class SpecflowError(Exception):
    """Base error. ``hint`` is an actionable next step shown to the user."""

    code = "ERROR"

    def __init__(self, message: str, hint: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint

    def to_dict(self) -> dict[str, str]:
        return {"message": self.message, "hint": self.hint, "code": self.code}


class NotFoundError(SpecflowError):
    """A project root, state file, phase or task ID does not exist."""

    code = "NOT_FOUND"

    def __init__(self, what: str, hint: str = "") -> None:
        super().__init__(f"{what} not found", hint)
        self.what = what


class ValidationError(SpecflowError):
    """User input is malformed (bad phase number, duplicate, empty list)."""

    code = "VALIDATION"


class StateError(SpecflowError):
    """A document is structurally broken and must be repaired by hand."""

    code = "STATE"

