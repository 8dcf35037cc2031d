"""Integration tests for the session authentication routes.

Covers login, /auth/me, logout cookie clearing, role conflicts, role
switching, session management and the cleanup endpoint.
"""

import asyncio
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from dancestudio import app as app_module
from dancestudio.service.runtime import get_runtime, reset_runtime_for_tests
from dancestudio.storage.errors import PersistenceError
from dancestudio.storage.models import UserRole

PASSWORD = "TestPassword123!"


def _run(coro):
    return asyncio.run(coro)


def _create_user(email, role=UserRole.STUDENT, **kwargs):
    runtime = get_runtime()
    return _run(
        runtime.store.create_user(
            email,
            role=role,
            password_hash=runtime.auth.hash_password(PASSWORD),
            **kwargs,
        )
    )


def _login(client, email, role=None):
    body = {"email": email, "password": PASSWORD}
    if role:
        body["role"] = role
    return client.post("/auth/login", json=body)


def _set_cookies(header_values):
    return {value.split(";")[0].split("=")[0]: value for value in header_values}


def _assert_cookies_cleared(response):
    cookies = _set_cookies(response.headers.get_list("set-cookie"))
    for name in ("session_id", "user_id", "user_role"):
        assert name in cookies
        assert "max-age=0" in cookies[name].lower()
    assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def clocked_runtime(fake_clock):
    return reset_runtime_for_tests(clock=fake_clock)


class TestLogin:
    def test_login_sets_session_cookies(self, client):
        user = _create_user("dancer@example.com", full_name="Ana Dancer")

        response = _login(client, "dancer@example.com")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["user"]["id"] == user.id
        assert data["user"]["fullName"] == "Ana Dancer"
        assert data["activeRole"] == "STUDENT"
        assert "conflictingRole" not in data
        assert client.cookies.get("session_id") == data["sessionId"]
        assert client.cookies.get("user_id") == user.id
        assert client.cookies.get("user_role") == "STUDENT"
        cookies = _set_cookies(response.headers.get_list("set-cookie"))
        assert "httponly" in cookies["session_id"].lower()
        assert "samesite=lax" in cookies["session_id"].lower()

    def test_wrong_password_is_generic_401(self, client):
        _create_user("dancer@example.com")

        wrong = client.post(
            "/auth/login", json={"email": "dancer@example.com", "password": "nope"}
        )
        unknown = client.post(
            "/auth/login", json={"email": "ghost@example.com", "password": PASSWORD}
        )

        assert wrong.status_code == 401
        assert unknown.status_code == 401
        assert wrong.json() == unknown.json() == {
            "success": False,
            "error": "Invalid email or password",
        }
        failures = _run(get_runtime().store.list_audit_events(event_type="LOGIN_FAILED"))
        assert len(failures) == 2

    def test_login_with_role_not_granted_is_forbidden(self, client):
        _create_user("dancer@example.com")

        response = _login(client, "dancer@example.com", role="ADMIN")

        assert response.status_code == 403
        assert response.json()["success"] is False

    def test_invalid_email_is_rejected(self, client):
        response = client.post("/auth/login", json={"email": "not-an-email", "password": "x"})

        assert response.status_code == 400
        assert response.json()["success"] is False


class TestMe:
    def test_me_returns_current_user(self, client):
        user = _create_user("dancer@example.com", full_name="Ana Dancer", is_verified=True)
        session_id = _login(client, "dancer@example.com").json()["sessionId"]

        response = client.get("/auth/me")

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "user": {
                "id": user.id,
                "email": "dancer@example.com",
                "fullName": "Ana Dancer",
                "role": "STUDENT",
                "isVerified": True,
                "profileImage": None,
            },
            "sessionId": session_id,
            "activeRole": "STUDENT",
        }

    def test_me_without_cookie(self, client):
        response = client.get("/auth/me")

        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "Not authenticated"}

    def test_me_with_unknown_session(self, client):
        client.cookies.set("session_id", "unknown")

        response = client.get("/auth/me")

        assert response.status_code == 401
        assert response.json()["error"] == "Session expired or invalid"

    @pytest.mark.parametrize("method", ["post", "put", "delete"])
    def test_other_methods_not_allowed(self, client, method):
        response = getattr(client, method)("/auth/me")

        assert response.status_code == 405
        assert response.json() == {"error": "Method not allowed"}

    def test_session_expires_after_ttl(self, client, clocked_runtime, fake_clock):
        user = _create_user("dancer@example.com")
        session = _run(clocked_runtime.store.create_session(user.id, UserRole.STUDENT, 1))
        client.cookies.set("session_id", session.id)
        assert client.get("/auth/me").status_code == 200

        fake_clock.advance(seconds=2)
        assert _run(clocked_runtime.store.sweep_expired(fake_clock())) == 1

        response = client.get("/auth/me")
        assert response.status_code == 401
        assert response.json()["error"] == "Session expired or invalid"


class TestRoleConflict:
    def test_second_role_login_reports_conflict(self, client):
        _create_user("instructor@example.com", role=UserRole.INSTRUCTOR)
        student_client = TestClient(app_module.app)
        instructor_client = TestClient(app_module.app)

        assert _login(student_client, "instructor@example.com", role="STUDENT").status_code == 200
        response = _login(instructor_client, "instructor@example.com", role="INSTRUCTOR")

        assert response.status_code == 200
        assert response.json()["conflictingRole"] == "STUDENT"

        from_student = student_client.get("/auth/me")
        from_instructor = instructor_client.get("/auth/me")
        assert from_student.status_code == from_instructor.status_code == 401
        assert from_student.json() == {
            "success": False,
            "error": "Session conflict: another role is active",
            "conflictingRole": "INSTRUCTOR",
        }
        assert from_instructor.json()["conflictingRole"] == "STUDENT"

    def test_terminating_others_resolves_conflict(self, client):
        _create_user("instructor@example.com", role=UserRole.INSTRUCTOR)
        other = TestClient(app_module.app)
        _login(other, "instructor@example.com", role="STUDENT")
        _login(client, "instructor@example.com", role="INSTRUCTOR")

        response = client.delete("/auth/sessions", params={"action": "others"})

        assert response.status_code == 200
        assert response.json() == {"message": "Terminated 1 session(s)", "terminatedCount": 1}
        assert client.get("/auth/me").status_code == 200
        assert other.get("/auth/me").json()["error"] == "Session expired or invalid"

    def test_other_session_actions_blocked_during_conflict(self, client):
        _create_user("instructor@example.com", role=UserRole.INSTRUCTOR)
        _login(TestClient(app_module.app), "instructor@example.com", role="STUDENT")
        _login(client, "instructor@example.com", role="INSTRUCTOR")

        response = client.delete("/auth/sessions", params={"action": "all"})

        assert response.status_code == 403
        assert response.json()["conflictingRole"] == "STUDENT"


class TestSwitchRole:
    def test_instructor_switches_to_student(self, client):
        _create_user("instructor@example.com", role=UserRole.INSTRUCTOR)
        old_session = _login(client, "instructor@example.com").json()["sessionId"]

        response = client.post("/auth/switch-role", json={"targetRole": "STUDENT"})

        assert response.status_code == 200
        data = response.json()
        assert data["activeRole"] == "STUDENT"
        assert data["sessionId"] != old_session
        assert data["user"] == {
            "id": data["user"]["id"],
            "email": "instructor@example.com",
            "fullName": None,
            "role": "INSTRUCTOR",
            "isVerified": False,
            "profileImage": None,
        }
        assert client.cookies.get("user_role") == "STUDENT"
        me = client.get("/auth/me").json()
        assert me["activeRole"] == "STUDENT"
        assert me["user"]["role"] == "INSTRUCTOR"

    def test_switch_to_current_role(self, client):
        _create_user("instructor@example.com", role=UserRole.INSTRUCTOR)
        session_id = _login(client, "instructor@example.com").json()["sessionId"]

        response = client.post("/auth/switch-role", json={"targetRole": "INSTRUCTOR"})

        assert response.json()["message"] == "Already in the requested role"
        assert response.json()["sessionId"] == session_id

    def test_staying_in_conflicting_role_reports_conflict(self, client):
        _create_user("instructor@example.com", role=UserRole.INSTRUCTOR)
        _login(client, "instructor@example.com", role="STUDENT")
        _login(TestClient(app_module.app), "instructor@example.com", role="INSTRUCTOR")

        response = client.post("/auth/switch-role", json={"targetRole": "STUDENT"})

        assert response.status_code == 401
        assert response.json() == {
            "success": False,
            "error": "Session conflict: another role is active",
            "conflictingRole": "INSTRUCTOR",
        }
        assert client.get("/auth/me").json()["conflictingRole"] == "INSTRUCTOR"

    def test_student_cannot_become_admin(self, client):
        _create_user("dancer@example.com")
        _login(client, "dancer@example.com")

        response = client.post("/auth/switch-role", json={"targetRole": "ADMIN"})

        assert response.status_code == 403

    def test_invalid_target_role(self, client):
        _create_user("dancer@example.com")
        _login(client, "dancer@example.com")

        response = client.post("/auth/switch-role", json={"targetRole": "JUDGE"})

        assert response.status_code == 400

    def test_requires_session(self, client):
        response = client.post("/auth/switch-role", json={"targetRole": "STUDENT"})

        assert response.status_code == 401


class TestLogout:
    def test_logout_invalidates_session(self, client):
        _create_user("dancer@example.com")
        session_id = _login(client, "dancer@example.com").json()["sessionId"]

        response = client.post("/auth/logout")

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Logout successful"}
        _assert_cookies_cleared(response)
        client.cookies.set("session_id", session_id)
        assert client.get("/auth/me").status_code == 401
        events = _run(get_runtime().store.list_audit_events(event_type="LOGOUT"))
        assert events[0].session_id == session_id

    def test_logout_without_session_still_clears_cookies(self, client):
        response = client.post("/auth/logout")

        assert response.status_code == 200
        _assert_cookies_cleared(response)

    def test_logout_twice_succeeds(self, client):
        _create_user("dancer@example.com")
        session_id = _login(client, "dancer@example.com").json()["sessionId"]

        first = client.post("/auth/logout")
        client.cookies.set("session_id", session_id)
        second = client.post("/auth/logout")

        assert first.status_code == second.status_code == 200

    def test_logout_failure_still_clears_cookies(self, client, monkeypatch):
        runtime = get_runtime()

        async def _boom(session_id):
            raise PersistenceError("database unavailable", operation="deactivate_session")

        monkeypatch.setattr(runtime.store, "deactivate_session", _boom)
        client.cookies.set("session_id", "some-session")

        response = client.post("/auth/logout")

        assert response.status_code == 500
        assert response.json() == {"error": "Logout failed"}
        _assert_cookies_cleared(response)
        errors = _run(runtime.store.list_audit_events(event_type="LOGOUT_ERROR"))
        assert errors[0].metadata["sessionId"] == "some-session"

    def test_logout_succeeds_when_audit_sink_fails(self, client, monkeypatch):
        _create_user("dancer@example.com")
        session_id = _login(client, "dancer@example.com").json()["sessionId"]
        runtime = get_runtime()

        async def _broken_sink(event):
            raise RuntimeError("audit table unavailable")

        monkeypatch.setattr(runtime.store, "append_audit_event", _broken_sink)

        response = client.post("/auth/logout")

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Logout successful"}
        _assert_cookies_cleared(response)
        assert not _run(runtime.store.get_session(session_id)).is_active


class TestSessionManagement:
    def test_list_sessions_marks_current(self, client):
        _create_user("dancer@example.com")
        _login(TestClient(app_module.app), "dancer@example.com")
        current = _login(client, "dancer@example.com").json()["sessionId"]

        response = client.get("/auth/sessions")

        assert response.status_code == 200
        sessions = response.json()["sessions"]
        assert len(sessions) == 2
        assert [s["id"] for s in sessions if s["current"]] == [current]

    def test_terminate_single_session(self, client):
        _create_user("dancer@example.com")
        other = TestClient(app_module.app)
        other_id = _login(other, "dancer@example.com").json()["sessionId"]
        _login(client, "dancer@example.com")

        response = client.delete(
            "/auth/sessions", params={"action": "single", "sessionId": other_id}
        )

        assert response.json()["terminatedCount"] == 1
        assert other.get("/auth/me").status_code == 401
        assert "set-cookie" not in response.headers

    def test_terminating_own_session_clears_cookies(self, client):
        _create_user("dancer@example.com")
        current = _login(client, "dancer@example.com").json()["sessionId"]

        response = client.delete(
            "/auth/sessions", params={"action": "single", "sessionId": current}
        )

        assert response.status_code == 200
        assert response.json()["terminatedCount"] == 1
        _assert_cookies_cleared(response)

    def test_terminate_all_clears_cookies(self, client):
        _create_user("dancer@example.com")
        other = TestClient(app_module.app)
        _login(other, "dancer@example.com")
        _login(client, "dancer@example.com")

        response = client.delete("/auth/sessions", params={"action": "all"})

        assert response.json()["terminatedCount"] == 2
        _assert_cookies_cleared(response)
        assert other.get("/auth/me").status_code == 401

    def test_cannot_terminate_someone_elses_session(self, client):
        _create_user("dancer@example.com")
        _create_user("rival@example.com")
        rival_id = _login(TestClient(app_module.app), "rival@example.com").json()["sessionId"]
        _login(client, "dancer@example.com")

        response = client.delete(
            "/auth/sessions", params={"action": "single", "sessionId": rival_id}
        )

        assert response.status_code == 403

    def test_single_requires_session_id(self, client):
        _create_user("dancer@example.com")
        _login(client, "dancer@example.com")

        response = client.delete("/auth/sessions", params={"action": "single"})

        assert response.status_code == 400

    def test_stats_require_admin_session(self, client):
        _create_user("boss@example.com", role=UserRole.ADMIN)
        _create_user("dancer@example.com")
        dancer = TestClient(app_module.app)
        _login(dancer, "dancer@example.com")
        _login(client, "boss@example.com")

        assert dancer.get("/auth/sessions/stats").status_code == 403
        response = client.get("/auth/sessions/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["active"] == 2
        assert {r["role"]: r["count"] for r in data["byRole"]} == {"ADMIN": 1, "STUDENT": 1}


class TestCleanupEndpoint:
    def test_cleanup_reports_counts(self, client, clocked_runtime, fake_clock):
        user = _create_user("dancer@example.com")
        store = clocked_runtime.store
        for _ in range(2):
            old = _run(store.create_session(user.id, UserRole.STUDENT, 60))
            _run(store.deactivate_session(old.id))
        fake_clock.advance(days=31)
        for _ in range(3):
            _run(store.create_session(user.id, UserRole.STUDENT, 1))
        fake_clock.advance(seconds=5)

        response = client.post("/auth/sessions/cleanup")

        assert response.status_code == 200
        assert response.json() == {
            "message": "Session cleanup completed successfully",
            "expiredSessions": 3,
            "deletedSessions": 2,
            "orphanedSessions": 0,
        }
        again = client.post("/auth/sessions/cleanup").json()
        assert again["expiredSessions"] == again["deletedSessions"] == 0

    def test_cleanup_storage_failure(self, client, monkeypatch):
        runtime = get_runtime()

        async def _boom(now):
            raise PersistenceError("database unavailable", operation="sweep_expired")

        monkeypatch.setattr(runtime.store, "sweep_expired", _boom)

        response = client.post("/auth/sessions/cleanup")

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to clean up sessions"}

    def test_cleanup_token_required_when_configured(self, client, monkeypatch):
        monkeypatch.setenv("SESSION_CLEANUP_TOKEN", "s3cret-token")
        reset_runtime_for_tests()

        missing = client.post("/auth/sessions/cleanup")
        wrong = client.post("/auth/sessions/cleanup", headers={"X-Cleanup-Token": "nope"})
        right = client.post(
            "/auth/sessions/cleanup", headers={"X-Cleanup-Token": "s3cret-token"}
        )

        assert missing.status_code == wrong.status_code == 403
        assert right.status_code == 200


class TestHealth:
    def test_healthz_reports_memory_store(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "healthy"
        assert data["checks"]["redis"]["status"] == "disabled"
        assert response.headers["x-request-id"]

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["x-request-id"] == "req-123"


def test_session_ttl_follows_settings(client, monkeypatch, fake_clock):
    monkeypatch.setenv("SESSION_TTL_MINUTES", "5")
    runtime = reset_runtime_for_tests(clock=fake_clock)
    _create_user("dancer@example.com")

    session_id = _login(client, "dancer@example.com").json()["sessionId"]

    session = _run(runtime.store.get_session(session_id))
    assert session.expires_at - session.created_at == timedelta(minutes=5)
