"""
Error taxonomy for the dispatch core.

Each error is a pure function of one call's inputs and the current state.
None of them is fatal and none is retried by the core.
"""

from typing import Any, Dict, List, Optional

import pydantic


class DispatchError(Exception):
    """Base class for every error raised by the dispatch core."""

    code = "dispatch_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ValidationError(DispatchError):
    """Malformed or out-of-range input."""

    code = "validation_error"

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []

    @classmethod
    def from_pydantic(cls, exc: pydantic.ValidationError) -> "ValidationError":
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
            for err in exc.errors()
        ]
        summary = "; ".join(
            f"{'.'.join(str(part) for part in d['loc']) or 'input'}: {d['msg']}" for d in details
        )
        return cls(f"Invalid input: {summary}", errors=details)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.errors:
            data["errors"] = self.errors
        return data


class InvalidTransition(DispatchError):
    """Status change not allowed from the order's current status."""

    code = "invalid_transition"


class Conflict(DispatchError):
    """The record changed underneath the caller (lost an accept/cancel race)."""

    code = "conflict"


class Forbidden(DispatchError):
    """The actor has no relationship to the record."""

    code = "forbidden"


class NotFound(DispatchError):
    """Unknown id or tracking code."""

    code = "not_found"
