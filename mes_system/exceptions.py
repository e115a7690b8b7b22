"""Error taxonomy shared by the store, the handlers and the HTTP layer.

Handlers raise these; the web layer maps ``code`` and ``status`` to the
``{ok: false, error: {code, message}}`` envelope. Guard denials are plain
values and never appear here.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class FlowError(RuntimeError):
    """Base exception for every request-level failure."""

    code = "BAD_REQUEST"
    status = 400

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class BadRequestError(FlowError):
    """Missing or invalid request fields."""


class AllocationError(BadRequestError):
    """A unit was refused by the allocation reconciler."""


class ForbiddenError(FlowError):
    """The acting role lacks the capability the action requires."""

    code = "FORBIDDEN"
    status = 403


class RecordNotFoundError(FlowError):
    """Unknown instance id, or an id that belongs to another flow type."""

    code = "NOT_FOUND"
    status = 404


class StateConflictError(FlowError):
    """Action attempted from a state that has no such edge."""

    code = "STATE_CONFLICT"
    status = 409


class VersionConflictError(FlowError):
    """An instance read before a write changed before the write committed."""

    code = "VERSION_CONFLICT"
    status = 409


__all__ = [
    "AllocationError",
    "BadRequestError",
    "FlowError",
    "ForbiddenError",
    "RecordNotFoundError",
    "StateConflictError",
    "VersionConflictError",
]
