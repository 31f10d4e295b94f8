from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class PreconditionFailed(Exception):
    """Raised when a conditional write's ETag no longer matches the record."""

    def __init__(self, message: str, *, expected: Optional[str], actual: Optional[str]):
        super().__init__(message)
        self.message = message
        self.expected = expected
        self.actual = actual


class RecordNotFound(Exception):
    """Raised when a record is absent or the presented token does not resolve to it."""


class AccessDenied(Exception):
    """Raised when a valid token lacks the permission for the requested operation."""


__all__ = ["ConstraintViolation", "PreconditionFailed", "RecordNotFound", "AccessDenied"]
