from __future__ import annotations

import copy
import json
import threading
import uuid
from collections import Counter
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from dancestudio.logging import get_logger
from dancestudio.storage.errors import ConstraintViolation, PersistenceError
from dancestudio.storage.models import (
    AuditLogEvent,
    Clock,
    RoleCount,
    Session,
    SessionStats,
    User,
    UserRole,
    utcnow,
)


class MemoryStore:
    """In-process backing store for development and tests.

    Every operation runs under one re-entrant lock and never awaits while
    holding it, so bulk updates are observed all-or-nothing by readers.
    When ``fs_root`` is given the state is snapshotted to JSON after each
    write and reloaded on start.
    """

    def __init__(self, fs_root: str | None = None, *, clock: Clock = utcnow) -> None:
        self.logger = get_logger(__name__)
        self.clock = clock
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.audit_events: List[AuditLogEvent] = []
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    async def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # users
    async def create_user(
        self,
        email: str,
        *,
        full_name: Optional[str] = None,
        role: UserRole | str = UserRole.STUDENT,
        password_hash: Optional[str] = None,
        is_verified: bool = False,
        is_active: bool = True,
        profile_image: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            normalized = email.strip().lower()
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                full_name=full_name,
                role=UserRole(role),
                is_verified=is_verified,
                is_active=is_active,
                profile_image=profile_image,
                password_hash=password_hash,
                created_at=self.clock(),
            )
            self.users[user.id] = user
            self._persist_state()
            return copy.copy(user)

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.copy(user) if user else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return copy.copy(user) if user else None

    async def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return copy.copy(user)

    async def delete_user(self, user_id: str) -> bool:
        """Remove the user record only; their sessions are left for the orphan purge."""
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self._persist_state()
            return True

    async def update_user_role(self, user_id: str, role: UserRole | str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = UserRole(role)
            self._persist_state()
            return copy.copy(user)

    # sessions
    async def create_session(
        self,
        user_id: str,
        role: UserRole | str,
        ttl_seconds: int,
        *,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id,
                role,
                ttl_seconds,
                now=self.clock(),
                user_agent=user_agent,
                ip_addr=ip_addr,
            )
            while sess.id in self.sessions:
                sess.id = str(uuid.uuid4())
            self.sessions[sess.id] = sess
            self._persist_state()
            return copy.copy(sess)

    async def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return copy.copy(sess) if sess else None

    async def deactivate_session(self, session_id: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return
            sess.is_active = False
            sess.updated_at = self.clock()
            self._persist_state()

    async def deactivate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            now = self.clock()
            count = 0
            for sess in self.sessions.values():
                if sess.user_id != user_id or not sess.is_active:
                    continue
                if except_session_id and sess.id == except_session_id:
                    continue
                sess.is_active = False
                sess.updated_at = now
                count += 1
            if count:
                self._persist_state()
            return count

    async def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            active = [
                copy.copy(sess)
                for sess in self.sessions.values()
                if sess.user_id == user_id and sess.is_valid_at(now)
            ]
        return sorted(active, key=lambda s: s.created_at, reverse=True)

    async def sweep_expired(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                sess
                for sess in self.sessions.values()
                if sess.is_active and sess.expires_at <= now
            ]
            for sess in expired:
                sess.is_active = False
                sess.updated_at = now
            if expired:
                self._persist_state()
            return len(expired)

    async def purge_stale(self, older_than: datetime) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if not sess.is_active and sess.updated_at < older_than
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    async def purge_orphaned(self) -> int:
        with self._data_lock:
            orphaned = [
                sid for sid, sess in self.sessions.items() if sess.user_id not in self.users
            ]
            for sid in orphaned:
                self.sessions.pop(sid, None)
            if orphaned:
                self._persist_state()
            return len(orphaned)

    async def session_stats(
        self, now: datetime, *, recent_window: timedelta = timedelta(hours=1)
    ) -> SessionStats:
        with self._data_lock:
            sessions = list(self.sessions.values())
        active = [s for s in sessions if s.is_valid_at(now)]
        by_role = Counter(s.role for s in active)
        return SessionStats(
            total=len(sessions),
            active=len(active),
            expired=len([s for s in sessions if not s.is_active]),
            recently_created=len([s for s in sessions if s.created_at >= now - recent_window]),
            by_role=[RoleCount(role=role, count=count) for role, count in sorted(by_role.items())],
        )

    # audit
    async def append_audit_event(self, event: AuditLogEvent) -> None:
        with self._data_lock:
            self.audit_events.append(event)
            self._persist_state()

    async def list_audit_events(
        self, limit: int = 100, event_type: Optional[str] = None
    ) -> List[AuditLogEvent]:
        with self._data_lock:
            events = [
                evt
                for evt in self.audit_events
                if event_type is None or evt.event_type == event_type
            ]
        return list(reversed(events))[:limit]

    # snapshot
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "audit_events": [self._serialize_audit_event(e) for e in self.audit_events],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2, default=str))
        except OSError as exc:
            raise PersistenceError(
                f"failed to persist in-memory state: {exc}", operation="persist_state"
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.audit_events = [
            self._deserialize_audit_event(e) for e in data.get("audit_events", [])
        ]
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "full_name": user.full_name,
            "role": user.role.value,
            "is_verified": user.is_verified,
            "is_active": user.is_active,
            "profile_image": user.profile_image,
            "password_hash": user.password_hash,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            full_name=data.get("full_name"),
            role=UserRole(data.get("role", UserRole.STUDENT.value)),
            is_verified=data.get("is_verified", False),
            is_active=data.get("is_active", True),
            profile_image=data.get("profile_image"),
            password_hash=data.get("password_hash"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "role": session.role.value,
            "is_active": session.is_active,
            "expires_at": self._serialize_datetime(session.expires_at),
            "created_at": self._serialize_datetime(session.created_at),
            "updated_at": self._serialize_datetime(session.updated_at),
            "user_agent": session.user_agent,
            "ip_addr": session.ip_addr,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            role=UserRole(data["role"]),
            is_active=data.get("is_active", False),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
        )

    def _serialize_audit_event(self, event: AuditLogEvent) -> dict:
        return {
            "id": event.id,
            "event_type": event.event_type,
            "user_id": event.user_id,
            "session_id": event.session_id,
            "metadata": event.metadata,
            "timestamp": self._serialize_datetime(event.timestamp),
        }

    def _deserialize_audit_event(self, data: dict) -> AuditLogEvent:
        return AuditLogEvent(
            id=data["id"],
            event_type=data["event_type"],
            user_id=data.get("user_id"),
            session_id=data.get("session_id"),
            metadata=data.get("metadata") or {},
            timestamp=self._deserialize_datetime(data["timestamp"]),
        )
