from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from dancestudio.storage.models import Session, SessionStats, User, UserRole

_ZERO_WIDTH = re.compile("[\\u200b-\\u200f\\u202a-\\u202e\\u2060\\u2066-\\u2069\\ufeff]")
_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width characters used for spoofing."""
    return unicodedata.normalize("NFKC", _ZERO_WIDTH.sub("", value))


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class CamelModel(BaseModel):
    """Responses and requests use camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=1024)
    role: Optional[UserRole] = None

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class SwitchRoleRequest(CamelModel):
    target_role: UserRole


class UserResponse(CamelModel):
    id: str
    email: str
    full_name: Optional[str] = None
    role: UserRole
    is_verified: bool = False
    profile_image: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            full_name=user.full_name,
            role=user.role,
            is_verified=user.is_verified,
            profile_image=user.profile_image,
        )

    def dump(self) -> dict:
        # null fullName/profileImage are part of the /auth/me contract
        return self.model_dump(mode="json", by_alias=True)


class LoginResponse(CamelModel):
    success: bool = True
    message: str = "Login successful"
    user: UserResponse
    session_id: str
    active_role: UserRole
    conflicting_role: Optional[UserRole] = None


class MeResponse(CamelModel):
    success: bool = True
    user: UserResponse
    session_id: str
    active_role: UserRole

    def dump(self) -> dict:
        return {**super().dump(), "user": self.user.dump()}


class SwitchRoleResponse(CamelModel):
    success: bool = True
    user: UserResponse
    session_id: str
    message: str
    active_role: UserRole
    conflicting_role: Optional[UserRole] = None

    def dump(self) -> dict:
        return {**super().dump(), "user": self.user.dump()}


class LogoutResponse(CamelModel):
    success: bool = True
    message: str = "Logout successful"


class SessionInfo(CamelModel):
    id: str
    role: UserRole
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, *, current_session_id: Optional[str]) -> "SessionInfo":
        return cls(
            id=session.id,
            role=session.role,
            created_at=session.created_at,
            expires_at=session.expires_at,
            user_agent=session.user_agent,
            ip_addr=session.ip_addr,
            current=session.id == current_session_id,
        )


class SessionListResponse(CamelModel):
    sessions: List[SessionInfo]


SessionAction = Literal["single", "others", "all"]


class TerminateSessionsResponse(CamelModel):
    message: str
    terminated_count: int


class CleanupResponse(CamelModel):
    message: str = "Session cleanup completed successfully"
    expired_sessions: int
    deleted_sessions: int
    orphaned_sessions: int


class RoleCountResponse(CamelModel):
    role: UserRole
    count: int


class SessionStatsResponse(CamelModel):
    total: int
    active: int
    expired: int
    recently_created: int
    by_role: List[RoleCountResponse]

    @classmethod
    def from_stats(cls, stats: SessionStats) -> "SessionStatsResponse":
        return cls(
            total=stats.total,
            active=stats.active,
            expired=stats.expired,
            recently_created=stats.recently_created,
            by_role=[RoleCountResponse(role=rc.role, count=rc.count) for rc in stats.by_role],
        )
