from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from dancestudio.logging import get_logger
from dancestudio.storage.errors import (
    AuditWriteError,
    ConstraintViolation,
    PersistenceError,
)
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

_REQUIRED_TABLES = ("app_user", "auth_session", "audit_log")

_SESSION_COLUMNS = (
    "id, user_id, role, is_active, expires_at, created_at, updated_at, user_agent, ip_addr"
)
_USER_COLUMNS = (
    "id, email, full_name, role, is_verified, is_active, profile_image, password_hash, created_at"
)


class PostgresStore:
    """Postgres-backed session, user and audit store.

    Bulk transitions (sweep, purge, per-user deactivate) are single
    ``UPDATE``/``DELETE`` statements so concurrent sweeps and logouts never
    interleave as read-modify-write sequences.
    """

    def __init__(
        self, dsn: str, *, clock: Clock = utcnow, min_size: int = 2, max_size: int = 10
    ) -> None:
        self.dsn = dsn
        self.clock = clock
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )
        self._opened = False
        self._open_lock = asyncio.Lock()

    async def open(self) -> None:
        """Open the pool and verify the schema; safe to call repeatedly."""

        if self._opened:
            return
        async with self._open_lock:
            if self._opened:
                return
            try:
                await self.pool.open(wait=True)
            except psycopg.Error as exc:
                raise PersistenceError(
                    "unable to connect to database", operation="open"
                ) from exc
            self._opened = True
            await self._verify_required_schema()
            self.logger.info("postgres_store_opened")

    async def close(self) -> None:
        if self._opened:
            await self.pool.close()
            self._opened = False

    @asynccontextmanager
    async def _connect(self, operation: str) -> AsyncIterator[psycopg.AsyncConnection]:
        await self.open()
        try:
            async with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "unique constraint violated", {"operation": operation}
            ) from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise PersistenceError("storage operation failed", operation=operation) from exc

    async def _verify_required_schema(self) -> None:
        async with self._connect("verify_schema") as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                cur = await conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                )
                row = await cur.fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    async def verify_connection(self) -> None:
        async with self._connect("ping") as conn:
            await conn.execute("SELECT 1")

    @staticmethod
    def _row_to_user(row: dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            full_name=row.get("full_name"),
            role=UserRole(row["role"]),
            is_verified=bool(row.get("is_verified")),
            is_active=bool(row.get("is_active", True)),
            profile_image=row.get("profile_image"),
            password_hash=row.get("password_hash"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_session(row: dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            role=UserRole(row["role"]),
            is_active=bool(row["is_active"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            user_agent=row.get("user_agent"),
            ip_addr=str(row["ip_addr"]) if row.get("ip_addr") is not None else None,
        )

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
        try:
            async with self._connect("create_user") as conn:
                cur = await conn.execute(
                    f"""
                    INSERT INTO app_user ({_USER_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        str(uuid.uuid4()),
                        email.strip().lower(),
                        full_name,
                        UserRole(role).value,
                        is_verified,
                        is_active,
                        profile_image,
                        password_hash,
                        self.clock(),
                    ),
                )
                row = await cur.fetchone()
        except ConstraintViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return self._row_to_user(row)

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._connect("get_user") as conn:
            cur = await conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            )
            row = await cur.fetchone()
        return self._row_to_user(row) if row else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        async with self._connect("get_user_by_email") as conn:
            cur = await conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE email = %s",
                (email.strip().lower(),),
            )
            row = await cur.fetchone()
        return self._row_to_user(row) if row else None

    async def update_user_role(self, user_id: str, role: UserRole | str) -> Optional[User]:
        async with self._connect("update_user_role") as conn:
            cur = await conn.execute(
                f"UPDATE app_user SET role = %s WHERE id = %s RETURNING {_USER_COLUMNS}",
                (UserRole(role).value, user_id),
            )
            row = await cur.fetchone()
        return self._row_to_user(row) if row else None

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
        sess = Session.new(
            user_id,
            role,
            ttl_seconds,
            now=self.clock(),
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        async with self._connect("create_session") as conn:
            cur = await conn.execute(
                f"""
                INSERT INTO auth_session ({_SESSION_COLUMNS})
                SELECT %s, u.id, %s, TRUE, %s, %s, %s, %s, %s
                FROM app_user u WHERE u.id = %s
                RETURNING {_SESSION_COLUMNS}
                """,
                (
                    sess.id,
                    sess.role.value,
                    sess.expires_at,
                    sess.created_at,
                    sess.updated_at,
                    user_agent,
                    ip_addr,
                    user_id,
                ),
            )
            row = await cur.fetchone()
        if not row:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return self._row_to_session(row)

    async def get_session(self, session_id: str) -> Optional[Session]:
        async with self._connect("get_session") as conn:
            cur = await conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE id = %s",
                (session_id,),
            )
            row = await cur.fetchone()
        return self._row_to_session(row) if row else None

    async def deactivate_session(self, session_id: str) -> None:
        async with self._connect("deactivate_session") as conn:
            await conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE, updated_at = %s
                WHERE id = %s AND is_active
                """,
                (self.clock(), session_id),
            )

    async def deactivate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        async with self._connect("deactivate_user_sessions") as conn:
            cur = await conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE, updated_at = %s
                WHERE user_id = %s AND is_active
                  AND (%s::text IS NULL OR id <> %s::text)
                """,
                (self.clock(), user_id, except_session_id, except_session_id),
            )
            return cur.rowcount

    async def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        async with self._connect("list_active_sessions") as conn:
            cur = await conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM auth_session
                WHERE user_id = %s AND is_active AND expires_at > %s
                ORDER BY created_at DESC
                """,
                (user_id, now),
            )
            rows = await cur.fetchall()
        return [self._row_to_session(row) for row in rows]

    async def sweep_expired(self, now: datetime) -> int:
        async with self._connect("sweep_expired") as conn:
            cur = await conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE, updated_at = %s
                WHERE is_active AND expires_at <= %s
                """,
                (now, now),
            )
            return cur.rowcount

    async def purge_stale(self, older_than: datetime) -> int:
        async with self._connect("purge_stale") as conn:
            cur = await conn.execute(
                "DELETE FROM auth_session WHERE NOT is_active AND updated_at < %s",
                (older_than,),
            )
            return cur.rowcount

    async def purge_orphaned(self) -> int:
        async with self._connect("purge_orphaned") as conn:
            cur = await conn.execute(
                """
                DELETE FROM auth_session s
                WHERE NOT EXISTS (SELECT 1 FROM app_user u WHERE u.id = s.user_id)
                """
            )
            return cur.rowcount

    async def session_stats(
        self, now: datetime, *, recent_window: timedelta = timedelta(hours=1)
    ) -> SessionStats:
        async with self._connect("session_stats") as conn:
            cur = await conn.execute(
                """
                SELECT
                    count(*) AS total,
                    count(*) FILTER (WHERE is_active AND expires_at > %s) AS active,
                    count(*) FILTER (WHERE NOT is_active) AS expired,
                    count(*) FILTER (WHERE created_at >= %s) AS recently_created
                FROM auth_session
                """,
                (now, now - recent_window),
            )
            totals = await cur.fetchone()
            cur = await conn.execute(
                """
                SELECT role, count(*) AS count FROM auth_session
                WHERE is_active AND expires_at > %s
                GROUP BY role ORDER BY role
                """,
                (now,),
            )
            role_rows = await cur.fetchall()
        return SessionStats(
            total=totals["total"],
            active=totals["active"],
            expired=totals["expired"],
            recently_created=totals["recently_created"],
            by_role=[
                RoleCount(role=UserRole(row["role"]), count=row["count"]) for row in role_rows
            ],
        )

    # audit
    async def append_audit_event(self, event: AuditLogEvent) -> None:
        try:
            async with self._connect("append_audit_event") as conn:
                await conn.execute(
                    """
                    INSERT INTO audit_log (id, event_type, user_id, session_id, metadata, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        event.id,
                        event.event_type,
                        event.user_id,
                        event.session_id,
                        Jsonb(event.metadata),
                        event.timestamp,
                    ),
                )
        except (PersistenceError, ConstraintViolation) as exc:
            raise AuditWriteError(
                "audit event could not be written", operation="append_audit_event"
            ) from exc

    async def list_audit_events(
        self, limit: int = 100, event_type: Optional[str] = None
    ) -> List[AuditLogEvent]:
        async with self._connect("list_audit_events") as conn:
            cur = await conn.execute(
                """
                SELECT id, event_type, user_id, session_id, metadata, created_at
                FROM audit_log
                WHERE (%s::text IS NULL OR event_type = %s::text)
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (event_type, event_type, limit),
            )
            rows = await cur.fetchall()
        return [
            AuditLogEvent(
                id=str(row["id"]),
                event_type=row["event_type"],
                user_id=row.get("user_id"),
                session_id=row.get("session_id"),
                metadata=row.get("metadata") or {},
                timestamp=row["created_at"],
            )
            for row in rows
        ]
