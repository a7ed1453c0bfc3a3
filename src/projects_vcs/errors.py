"""Domain-specific error types for project version-control operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Supported error codes exposed by the projects engine."""

    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"
    UNRELATED_HISTORIES = "unrelated_histories"
    NON_FAST_FORWARD = "non_fast_forward"
    ALREADY_EXISTS = "already_exists"
    DIRTY_CHECKOUT = "dirty_checkout"
    VCS_BACKEND_ERROR = "vcs_backend_error"
    PERMISSION_DENIED = "permission_denied"
    UNEXPECTED_ERROR = "unexpected_error"


@dataclass
class ProjectsError(Exception):
    """Structured exception carrying a stable error contract."""

    code: ErrorCode
    message: str
    suggestion: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.message

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": "error",
            "error_code": self.code.value,
            "message": self.message,
            "suggestion": self.suggestion or "",
            "details": self.details,
        }
