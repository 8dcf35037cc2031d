from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries the HTTP ``status_code`` the API layer responds
    with and a stable ``error_code`` used in logs.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ConflictError(AuthenticationError):
    """Another role is active for the same user (401 with ``conflictingRole``)."""
    error_code = "role_conflict"

    def __init__(self, message: str, *, conflicting_role: str, **kwargs) -> None:
        detail = {**(kwargs.pop("detail", None) or {}), "conflictingRole": conflicting_role}
        super().__init__(message, detail=detail, **kwargs)
        self.conflicting_role = conflicting_role


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ConflictError",
    "ForbiddenError",
]
