from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Timezone-aware UTC clock used unless a test injects its own."""

    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    """Roles a session can be scoped to."""

    STUDENT = "STUDENT"
    INSTRUCTOR = "INSTRUCTOR"
    ADMIN = "ADMIN"


# Which session roles each primary user role may act as
ROLE_GRANTS: dict[UserRole, frozenset[UserRole]] = {
    UserRole.ADMIN: frozenset({UserRole.ADMIN, UserRole.INSTRUCTOR, UserRole.STUDENT}),
    UserRole.INSTRUCTOR: frozenset({UserRole.INSTRUCTOR, UserRole.STUDENT}),
    UserRole.STUDENT: frozenset({UserRole.STUDENT}),
}


def role_allows(user_role: UserRole | str, target_role: UserRole | str) -> bool:
    return UserRole(target_role) in ROLE_GRANTS.get(UserRole(user_role), frozenset())


@dataclass
class User:
    id: str
    email: str
    full_name: Optional[str] = None
    role: UserRole = UserRole.STUDENT
    is_verified: bool = False
    is_active: bool = True
    profile_image: Optional[str] = None
    password_hash: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    role: UserRole
    expires_at: datetime
    created_at: datetime
    updated_at: datetime
    is_active: bool = True
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        role: UserRole | str,
        ttl_seconds: int,
        *,
        now: datetime,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            role=UserRole(role),
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
            updated_at=now,
            is_active=True,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_valid_at(self, now: datetime) -> bool:
        return self.is_active and self.expires_at > now


@dataclass(frozen=True)
class AuditLogEvent:
    event_type: str
    user_id: Optional[str]
    session_id: Optional[str] = None
    metadata: Dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class CleanupReport:
    expired: int = 0
    deleted: int = 0
    orphaned: int = 0

    @property
    def total(self) -> int:
        return self.expired + self.deleted + self.orphaned


@dataclass
class RoleCount:
    role: UserRole
    count: int


@dataclass
class SessionStats:
    total: int
    active: int
    expired: int
    recently_created: int
    by_role: List[RoleCount] = field(default_factory=list)
