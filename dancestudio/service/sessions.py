from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from dancestudio.logging import get_logger
from dancestudio.service.audit import AuditLogger
from dancestudio.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
)
from dancestudio.storage.models import (
    CleanupReport,
    Clock,
    Session,
    User,
    UserRole,
    role_allows,
    utcnow,
)

NOT_AUTHENTICATED = "Not authenticated"
SESSION_INVALID = "Session expired or invalid"
ACCOUNT_NOT_FOUND = "Account not found"
ROLE_CONFLICT = "Session conflict: another role is active"
ACCESS_DENIED = "Access denied"

SESSION_CLEANUP_EVENT = "SESSION_CLEANUP"


class SessionStore(Protocol):
    async def create_session(
        self,
        user_id: str,
        role: UserRole | str,
        ttl_seconds: int,
        *,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> Session: ...

    async def get_session(self, session_id: str) -> Optional[Session]: ...

    async def deactivate_session(self, session_id: str) -> None: ...

    async def deactivate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int: ...

    async def list_active_sessions(self, user_id: str, now: datetime) -> list[Session]: ...

    async def sweep_expired(self, now: datetime) -> int: ...

    async def purge_stale(self, older_than: datetime) -> int: ...

    async def purge_orphaned(self) -> int: ...

    async def get_user(self, user_id: str) -> Optional[User]: ...


@dataclass
class SessionValidation:
    """Outcome of validating a session cookie.

    Expected authentication failures are reported here rather than raised.
    A conflicting result still identifies the caller's own session so that
    the conflict can be resolved from it.
    """

    is_valid: bool
    error: Optional[str] = None
    user: Optional[User] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    user_role: Optional[UserRole] = None
    conflicting_role: Optional[UserRole] = None
    forbidden: bool = False

    @property
    def in_conflict(self) -> bool:
        return self.conflicting_role is not None


@dataclass
class LogoutResult:
    session_id: Optional[str]
    user_id: Optional[str]


def find_conflicting_role(
    sessions: list[Session], *, session_id: Optional[str], role: UserRole
) -> Optional[UserRole]:
    """Role of the newest other active session held under a different role."""

    newest = max(
        (s for s in sessions if s.id != session_id and s.role != role),
        key=lambda s: s.created_at,
        default=None,
    )
    return newest.role if newest else None


class SessionValidator:
    """Resolves a session cookie into an authenticated user. Never writes."""

    def __init__(self, store: SessionStore, *, clock: Clock = utcnow) -> None:
        self.store = store
        self.clock = clock
        self.logger = get_logger(__name__)

    async def validate(
        self,
        session_id: Optional[str],
        claimed_user_id: Optional[str] = None,
        *,
        required_role: UserRole | str | None = None,
    ) -> SessionValidation:
        if not session_id:
            return SessionValidation(is_valid=False, error=NOT_AUTHENTICATED)

        now = self.clock()
        session = await self.store.get_session(session_id)
        if not session or not session.is_valid_at(now):
            return SessionValidation(is_valid=False, error=SESSION_INVALID)

        if claimed_user_id and claimed_user_id != session.user_id:
            self.logger.warning(
                "session_user_cookie_mismatch",
                session_id=session.id,
                session_user_id=session.user_id,
                claimed_user_id=claimed_user_id,
            )

        user = await self.store.get_user(session.user_id)
        if not user or not user.is_active:
            return SessionValidation(is_valid=False, error=ACCOUNT_NOT_FOUND)

        active = await self.store.list_active_sessions(user.id, now)
        conflicting_role = find_conflicting_role(
            active, session_id=session.id, role=session.role
        )
        if conflicting_role is not None:
            return SessionValidation(
                is_valid=False,
                error=ROLE_CONFLICT,
                user=user,
                session_id=session.id,
                user_id=user.id,
                user_role=session.role,
                conflicting_role=conflicting_role,
            )

        if required_role is not None and session.role != UserRole(required_role):
            return SessionValidation(
                is_valid=False,
                error=ACCESS_DENIED,
                user=user,
                session_id=session.id,
                user_id=user.id,
                user_role=session.role,
                forbidden=True,
            )

        return SessionValidation(
            is_valid=True,
            user=user,
            session_id=session.id,
            user_id=user.id,
            user_role=session.role,
        )

    async def require(
        self,
        session_id: Optional[str],
        claimed_user_id: Optional[str] = None,
        *,
        required_role: UserRole | str | None = None,
        allow_conflict: bool = False,
    ) -> SessionValidation:
        """Validate and raise the matching ``ServiceError`` on failure.

        ``allow_conflict`` lets routes that resolve a role conflict run from
        either of the conflicting sessions.
        """

        result = await self.validate(
            session_id, claimed_user_id, required_role=required_role
        )
        if result.is_valid:
            return result
        if result.in_conflict:
            if allow_conflict and required_role is None:
                return result
            raise ConflictError(
                result.error or ROLE_CONFLICT,
                conflicting_role=result.conflicting_role.value,
            )
        if result.forbidden:
            raise ForbiddenError(result.error or ACCESS_DENIED)
        raise AuthenticationError(result.error or NOT_AUTHENTICATED)


class SessionLifecycle:
    """Creates, terminates and sweeps sessions, recording each step in the audit trail."""

    def __init__(
        self,
        store: SessionStore,
        audit: AuditLogger,
        *,
        clock: Clock = utcnow,
        session_ttl: timedelta = timedelta(hours=24),
        retention: timedelta = timedelta(days=30),
    ) -> None:
        self.store = store
        self.audit = audit
        self.clock = clock
        self.session_ttl = session_ttl
        self.retention = retention
        self.logger = get_logger(__name__)

    async def terminate_session(self, session_id: str) -> None:
        await self.store.deactivate_session(session_id)
        self.logger.info("session_terminated", session_id=session_id)

    async def terminate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        count = await self.store.deactivate_user_sessions(
            user_id, except_session_id=except_session_id
        )
        self.logger.info(
            "user_sessions_terminated",
            user_id=user_id,
            kept_session_id=except_session_id,
            count=count,
        )
        return count

    async def cleanup(self, now: Optional[datetime] = None) -> CleanupReport:
        now = now or self.clock()
        expired = await self.store.sweep_expired(now)
        deleted = await self.store.purge_stale(now - self.retention)
        orphaned = await self.store.purge_orphaned()
        report = CleanupReport(expired=expired, deleted=deleted, orphaned=orphaned)
        self.logger.info(
            "session_cleanup_completed",
            expired=expired,
            deleted=deleted,
            orphaned=orphaned,
        )
        await self.audit.log_system_event(
            SESSION_CLEANUP_EVENT,
            {
                "expiredSessions": expired,
                "deletedSessions": deleted,
                "orphanedSessions": orphaned,
            },
        )
        return report

    async def logout(
        self, session_id: Optional[str], claimed_user_id: Optional[str] = None
    ) -> LogoutResult:
        """Deactivate the session (if any) and record the logout.

        Store failures propagate; the caller still clears cookies.
        """

        user_id = claimed_user_id
        if session_id:
            session = await self.store.get_session(session_id)
            if session:
                user_id = session.user_id
            await self.store.deactivate_session(session_id)
        await self.audit.log_logout(user_id, session_id)
        self.logger.info("logout_completed", session_id=session_id, user_id=user_id)
        return LogoutResult(session_id=session_id, user_id=user_id)

    async def create_session(
        self,
        user: User,
        role: UserRole | str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> tuple[Session, Optional[UserRole]]:
        """Open a session for ``user`` under ``role``.

        Returns the session and the role of a conflicting active session, if
        one exists. Existing sessions are left untouched.
        """

        role = UserRole(role)
        existing = await self.store.list_active_sessions(user.id, self.clock())
        conflicting_role = find_conflicting_role(existing, session_id=None, role=role)
        session = await self.store.create_session(
            user.id,
            role,
            int(self.session_ttl.total_seconds()),
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        await self.audit.log_login(
            user.id, session.id, role=role.value, ip_addr=ip_addr, user_agent=user_agent
        )
        if conflicting_role is not None:
            self.logger.warning(
                "session_role_conflict",
                user_id=user.id,
                session_id=session.id,
                role=role.value,
                conflicting_role=conflicting_role.value,
            )
            await self.audit.log_security_event(
                user.id,
                "ROLE_CONFLICT",
                {"role": role.value, "conflictingRole": conflicting_role.value},
                session_id=session.id,
            )
        return session, conflicting_role

    async def switch_role(
        self,
        validation: SessionValidation,
        target_role: UserRole | str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> tuple[Session, Optional[UserRole]] | None:
        """Replace the caller's session with one scoped to ``target_role``.

        Returns ``None`` when the session already has that role. Staying in
        the current role does not resolve a conflict, so that case raises
        ``ConflictError`` instead.
        """

        target_role = UserRole(target_role)
        user = validation.user
        if user is None or validation.session_id is None:
            raise AuthenticationError(NOT_AUTHENTICATED)
        if not role_allows(user.role, target_role):
            raise ForbiddenError(
                f"Insufficient permissions for {target_role.value.lower()} role",
                detail={"targetRole": target_role.value},
            )
        if validation.user_role == target_role:
            if validation.in_conflict:
                raise ConflictError(
                    ROLE_CONFLICT,
                    conflicting_role=validation.conflicting_role.value,
                )
            return None
        await self.terminate_session(validation.session_id)
        return await self.create_session(
            user, target_role, user_agent=user_agent, ip_addr=ip_addr
        )
