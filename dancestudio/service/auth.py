from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from dancestudio.logging import get_logger
from dancestudio.service.audit import AuditLogger
from dancestudio.service.errors import AuthenticationError, ForbiddenError
from dancestudio.service.sessions import SessionLifecycle
from dancestudio.storage.models import Session, User, UserRole, role_allows

INVALID_CREDENTIALS = "Invalid email or password"


class UserStore(Protocol):
    async def get_user_by_email(self, email: str) -> Optional[User]: ...


@dataclass
class LoginResult:
    user: User
    session: Session
    conflicting_role: Optional[UserRole] = None


class AuthService:
    """Password login on top of the session lifecycle."""

    def __init__(
        self,
        store: UserStore,
        lifecycle: SessionLifecycle,
        audit: AuditLogger,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.audit = audit
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = get_logger(__name__)

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: User, password: str) -> bool:
        """Verify ``password`` against the user's stored argon2id hash."""

        if not user.password_hash:
            self.logger.warning("password_record_missing", user_id=user.id)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user.id)
            return False

    async def login(
        self,
        email: str,
        password: str,
        role: UserRole | str | None = None,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> LoginResult:
        user = await self.store.get_user_by_email(email)
        if not user or not user.is_active:
            await self.audit.log_failed_login(email, "unknown_or_inactive_user")
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not self.verify_password(user, password):
            await self.audit.log_failed_login(email, "invalid_password")
            raise AuthenticationError(INVALID_CREDENTIALS)

        target_role = UserRole(role) if role else user.role
        if not role_allows(user.role, target_role):
            await self.audit.log_security_event(
                user.id,
                "ROLE_NOT_PERMITTED",
                {"requestedRole": target_role.value, "userRole": user.role.value},
            )
            raise ForbiddenError(
                f"Insufficient permissions for {target_role.value.lower()} role",
                detail={"requestedRole": target_role.value},
            )

        session, conflicting_role = await self.lifecycle.create_session(
            user, target_role, user_agent=user_agent, ip_addr=ip_addr
        )
        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            session_id=session.id,
            role=target_role.value,
            conflicting_role=conflicting_role.value if conflicting_role else None,
        )
        return LoginResult(user=user, session=session, conflicting_role=conflicting_role)
