import asyncio
from datetime import datetime, timedelta, timezone

import psycopg
import pytest

from dancestudio.logging import get_logger
from dancestudio.storage.errors import AuditWriteError, PersistenceError
from dancestudio.storage.models import AuditLogEvent, UserRole, utcnow
from dancestudio.storage.postgres import PostgresStore


class _FailingConnection:
    async def __aenter__(self):
        raise psycopg.OperationalError("connection refused")

    async def __aexit__(self, *exc_info):
        return False


class FailingPool:
    def connection(self):
        return _FailingConnection()


def _offline_store() -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.clock = utcnow
    store.logger = get_logger("test")
    store.pool = FailingPool()
    store._opened = True
    store._open_lock = asyncio.Lock()
    return store


def test_row_to_session_maps_columns():
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    session = PostgresStore._row_to_session(
        {
            "id": "s1",
            "user_id": "u1",
            "role": "INSTRUCTOR",
            "is_active": True,
            "expires_at": now + timedelta(hours=1),
            "created_at": now,
            "updated_at": now,
            "user_agent": None,
            "ip_addr": "10.0.0.1",
        }
    )

    assert session.role == UserRole.INSTRUCTOR
    assert session.ip_addr == "10.0.0.1"
    assert session.is_valid_at(now)


def test_row_to_user_maps_columns():
    user = PostgresStore._row_to_user(
        {
            "id": "u1",
            "email": "dancer@example.com",
            "full_name": None,
            "role": "ADMIN",
            "is_verified": True,
            "is_active": True,
            "profile_image": None,
            "password_hash": "hash",
            "created_at": utcnow(),
        }
    )

    assert user.role == UserRole.ADMIN
    assert user.is_verified


async def test_driver_errors_become_persistence_errors():
    store = _offline_store()

    with pytest.raises(PersistenceError) as excinfo:
        await store.sweep_expired(utcnow())
    assert excinfo.value.operation == "sweep_expired"
    assert isinstance(excinfo.value.__cause__, psycopg.OperationalError)


async def test_audit_failures_become_audit_write_errors():
    store = _offline_store()

    with pytest.raises(AuditWriteError):
        await store.append_audit_event(AuditLogEvent(event_type="LOGIN", user_id="u1"))
