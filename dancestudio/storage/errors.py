from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class PersistenceError(Exception):
    """Raised when the backing store is unreachable or a query fails."""

    def __init__(self, message: str, *, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation


class AuditWriteError(PersistenceError):
    """Raised when an audit event cannot be appended."""


__all__ = ["ConstraintViolation", "PersistenceError", "AuditWriteError"]
