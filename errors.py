# errors.py
"""Error kinds surfaced by the study backends.

Each kind carries the HTTP status the blueprints answer with, so views can
render any of them through one error handler.
"""
from typing import Any, Dict, Optional


class StudyError(Exception):
    kind = "error"
    status = 500

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details: Dict[str, Any] = details

    def to_dict(self, state: Optional[str] = None) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": False, "error": self.message, "kind": self.kind}
        if state is not None:
            out["state"] = state
        if self.details:
            out.update(self.details)
        return out


class ValidationError(StudyError):
    """Blank or malformed user input, caught before any external call."""
    kind = "validation"
    status = 400


class NotFoundError(StudyError):
    kind = "not_found"
    status = 404


class LifecycleError(StudyError):
    """Action not allowed in the controller's current state."""
    kind = "lifecycle"
    status = 409


class SessionBusy(LifecycleError):
    kind = "busy"


class PersistenceFailure(StudyError):
    """Store read/write error (quota exceeded, corrupt JSON, DB down)."""
    kind = "persistence"
    status = 500


class GenerationFailure(StudyError):
    """LLM unreachable or returned data that fails schema validation. Retryable."""
    kind = "generation"
    status = 502


class GenerationTimeout(GenerationFailure):
    kind = "generation_timeout"
    status = 504


__all__ = [
    "StudyError", "ValidationError", "NotFoundError", "LifecycleError", "SessionBusy",
    "PersistenceFailure", "GenerationFailure", "GenerationTimeout",
]
