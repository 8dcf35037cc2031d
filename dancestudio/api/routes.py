from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Query, Request, Response
from fastapi.responses import JSONResponse

from dancestudio.api.error_handling import error_response
from dancestudio.api.schemas import (
    CleanupResponse,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    MeResponse,
    SessionAction,
    SessionInfo,
    SessionListResponse,
    SessionStatsResponse,
    SwitchRoleRequest,
    SwitchRoleResponse,
    TerminateSessionsResponse,
    UserResponse,
)
from dancestudio.config import get_settings
from dancestudio.logging import get_logger
from dancestudio.service.errors import ForbiddenError, ValidationError
from dancestudio.service.runtime import get_runtime
from dancestudio.service.sessions import NOT_AUTHENTICATED, SessionValidation
from dancestudio.storage.errors import PersistenceError
from dancestudio.storage.models import Session, UserRole

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

SESSION_COOKIES = ("session_id", "user_id", "user_role")
NO_CACHE = "no-cache, no-store, must-revalidate"
LOGOUT_ERROR_EVENT = "LOGOUT_ERROR"


def _client_meta(request: Request) -> dict:
    return {
        "user_agent": request.headers.get("user-agent"),
        "ip_addr": request.client.host if request.client else None,
    }


def _apply_session_cookies(response: Response, session: Session) -> None:
    secure = get_settings().cookie_secure
    max_age = max(1, int((session.expires_at - session.created_at).total_seconds()))
    for name, value in (
        ("session_id", session.id),
        ("user_id", session.user_id),
        ("user_role", session.role.value),
    ):
        response.set_cookie(
            name,
            value,
            max_age=max_age,
            httponly=True,
            secure=secure,
            samesite="lax",
            path="/",
        )


def _clear_session_cookies(response: Response) -> None:
    secure = get_settings().cookie_secure
    for name in SESSION_COOKIES:
        response.delete_cookie(name, path="/", secure=secure, httponly=True, samesite="lax")


async def current_session_allow_conflict(
    session_id: Optional[str] = Cookie(None),
    user_id: Optional[str] = Cookie(None),
) -> SessionValidation:
    return await get_runtime().validator.require(session_id, user_id, allow_conflict=True)


async def admin_session(
    session_id: Optional[str] = Cookie(None),
    user_id: Optional[str] = Cookie(None),
) -> SessionValidation:
    return await get_runtime().validator.require(
        session_id, user_id, required_role=UserRole.ADMIN
    )


@router.post("/login")
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password and open a role-scoped session.

    A login under one role while another role is still active succeeds and
    reports ``conflictingRole``; nothing is deactivated.

    Raises:
        401: If credentials are invalid
        403: If the requested role is not granted to the user
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email, body.password, body.role, **_client_meta(request)
    )
    _apply_session_cookies(response, result.session)
    return LoginResponse(
        user=UserResponse.from_user(result.user),
        session_id=result.session.id,
        active_role=result.session.role,
        conflicting_role=result.conflicting_role,
    ).dump()


@router.post("/logout")
async def logout(
    session_id: Optional[str] = Cookie(None),
    user_id: Optional[str] = Cookie(None),
):
    """End the caller's session. Cookies are cleared on every outcome."""
    runtime = get_runtime()
    try:
        await runtime.lifecycle.logout(session_id, user_id)
    except Exception as exc:
        logger.exception(
            "logout_failed",
            exc_info=exc,
            session_id=session_id,
            error_type=type(exc).__name__,
        )
        await runtime.audit.log_system_event(
            LOGOUT_ERROR_EVENT,
            {"sessionId": session_id, "userId": user_id, "error": type(exc).__name__},
        )
        response: Response = JSONResponse(status_code=500, content={"error": "Logout failed"})
    else:
        response = JSONResponse(content=LogoutResponse().dump())
    _clear_session_cookies(response)
    response.headers["Cache-Control"] = NO_CACHE
    return response


@router.get("/me")
async def me(
    session_id: Optional[str] = Cookie(None),
    user_id: Optional[str] = Cookie(None),
):
    result = await get_runtime().validator.validate(session_id, user_id)
    if not result.is_valid:
        details = (
            {"conflictingRole": result.conflicting_role.value}
            if result.conflicting_role
            else None
        )
        return error_response(401, result.error or NOT_AUTHENTICATED, details)
    return MeResponse(
        user=UserResponse.from_user(result.user),
        session_id=result.session_id,
        active_role=result.user_role,
    ).dump()


@router.api_route("/me", methods=["POST", "PUT", "PATCH", "DELETE"], include_in_schema=False)
async def me_method_not_allowed():
    return JSONResponse(status_code=405, content={"error": "Method not allowed"})


@router.post("/switch-role")
async def switch_role(
    body: SwitchRoleRequest,
    request: Request,
    response: Response,
    principal: SessionValidation = Depends(current_session_allow_conflict),
):
    runtime = get_runtime()
    switched = await runtime.lifecycle.switch_role(
        principal, body.target_role, **_client_meta(request)
    )
    if switched is None:
        return SwitchRoleResponse(
            user=UserResponse.from_user(principal.user),
            session_id=principal.session_id,
            message="Already in the requested role",
            active_role=body.target_role,
        ).dump()
    session, conflicting_role = switched
    _apply_session_cookies(response, session)
    return SwitchRoleResponse(
        user=UserResponse.from_user(principal.user),
        session_id=session.id,
        message=f"Successfully switched to {session.role.value} role",
        active_role=session.role,
        conflicting_role=conflicting_role,
    ).dump()


@router.get("/sessions")
async def list_sessions(principal: SessionValidation = Depends(current_session_allow_conflict)):
    runtime = get_runtime()
    sessions = await runtime.store.list_active_sessions(principal.user_id, runtime.clock())
    return SessionListResponse(
        sessions=[
            SessionInfo.from_session(s, current_session_id=principal.session_id)
            for s in sessions
        ]
    ).dump()


@router.delete("/sessions")
async def terminate_sessions(
    response: Response,
    action: SessionAction = Query("single"),
    target_session_id: Optional[str] = Query(None, alias="sessionId"),
    principal: SessionValidation = Depends(current_session_allow_conflict),
):
    """Terminate one, all other, or all of the caller's sessions.

    ``others`` keeps the calling session and is how a client resolves a role
    conflict, so it is accepted while one is in effect. Ending the calling
    session also clears its cookies.
    """
    runtime = get_runtime()
    if principal.in_conflict and action != "others":
        raise ForbiddenError(
            "Resolve the role conflict first",
            detail={"conflictingRole": principal.conflicting_role.value},
        )
    if action == "single":
        if not target_session_id:
            raise ValidationError("sessionId is required")
        target = await runtime.store.get_session(target_session_id)
        if not target or target.user_id != principal.user_id:
            raise ForbiddenError("Cannot terminate sessions of another user")
        await runtime.lifecycle.terminate_session(target_session_id)
        count = 1 if target.is_active else 0
    elif action == "others":
        count = await runtime.lifecycle.terminate_user_sessions(
            principal.user_id, except_session_id=principal.session_id
        )
    else:
        count = await runtime.lifecycle.terminate_user_sessions(principal.user_id)
    if action == "all" or (action == "single" and target_session_id == principal.session_id):
        _clear_session_cookies(response)
        response.headers["Cache-Control"] = NO_CACHE
    if count:
        await runtime.audit.log_security_event(
            principal.user_id,
            "SESSIONS_TERMINATED",
            {"action": action, "count": count},
            session_id=principal.session_id,
        )
    return TerminateSessionsResponse(
        message=f"Terminated {count} session(s)", terminated_count=count
    ).dump()


@router.post("/sessions/cleanup")
async def cleanup_sessions(
    x_cleanup_token: Optional[str] = Header(None, alias="X-Cleanup-Token"),
):
    settings = get_settings()
    if settings.session_cleanup_token and not hmac.compare_digest(
        (x_cleanup_token or "").encode(), settings.session_cleanup_token.encode()
    ):
        raise ForbiddenError("Invalid cleanup token")
    try:
        report = await get_runtime().lifecycle.cleanup()
    except PersistenceError as exc:
        logger.exception(
            "session_cleanup_failed",
            exc_info=exc,
            operation=exc.operation,
            error=exc.message,
        )
        return JSONResponse(status_code=500, content={"error": "Failed to clean up sessions"})
    return CleanupResponse(
        expired_sessions=report.expired,
        deleted_sessions=report.deleted,
        orphaned_sessions=report.orphaned,
    ).dump()


@router.get("/sessions/stats")
async def session_stats(principal: SessionValidation = Depends(admin_session)):
    runtime = get_runtime()
    stats = await runtime.store.session_stats(runtime.clock())
    return SessionStatsResponse.from_stats(stats).dump()
