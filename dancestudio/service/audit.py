from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from dancestudio.logging import get_logger
from dancestudio.storage.models import AuditLogEvent

logger = get_logger(__name__)
# Secondary channel for audit sink failures so they never reach the caller
diagnostics = get_logger("dancestudio.audit.diagnostics")


class AuditSink(Protocol):
    async def append_audit_event(self, event: AuditLogEvent) -> None: ...


class AuditLogger:
    """Append-only audit trail for authentication events.

    Every write is contained on its own: a failing sink is reported on the
    diagnostics logger and the caller carries on as if the write succeeded.
    """

    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    LOGIN_FAILED = "LOGIN_FAILED"
    SECURITY_EVENT = "SECURITY_EVENT"

    def __init__(self, sink: AuditSink) -> None:
        self.sink = sink

    async def _write(
        self,
        event_type: str,
        user_id: Optional[str],
        *,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = AuditLogEvent(
            event_type=event_type,
            user_id=user_id,
            session_id=session_id,
            metadata=dict(metadata or {}),
        )
        try:
            await self.sink.append_audit_event(event)
        except Exception as exc:
            diagnostics.error(
                "audit_write_failed",
                event_type=event_type,
                user_id=user_id,
                session_id=session_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        logger.debug("audit_event_written", event_type=event_type, user_id=user_id)

    async def log_login(
        self,
        user_id: str,
        session_id: str,
        *,
        role: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        await self._write(
            self.LOGIN,
            user_id,
            session_id=session_id,
            metadata={"role": role, "ip_addr": ip_addr, "user_agent": user_agent},
        )

    async def log_logout(self, user_id: Optional[str], session_id: Optional[str]) -> None:
        await self._write(self.LOGOUT, user_id, session_id=session_id)

    async def log_failed_login(self, email: str, reason: str) -> None:
        await self._write(self.LOGIN_FAILED, None, metadata={"email": email, "reason": reason})

    async def log_security_event(
        self,
        user_id: Optional[str],
        event: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        session_id: Optional[str] = None,
    ) -> None:
        await self._write(
            self.SECURITY_EVENT,
            user_id,
            session_id=session_id,
            metadata={"event": event, **(metadata or {})},
        )

    async def log_system_event(
        self, event_type: str, metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        await self._write(event_type, None, metadata=metadata)
