from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dancestudio.api.error_handling import register_exception_handlers
from dancestudio.api.routes import router
from dancestudio.config import Settings
from dancestudio.logging import get_logger, set_correlation_id
from dancestudio.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

CLEANUP_LOCK_NAME = "session-cleanup"
HEALTH_CHECK_TIMEOUT_SECONDS = 3

_cleanup_task: asyncio.Task | None = None


async def run_scheduled_cleanup(runtime: Runtime) -> bool:
    """Run one cleanup pass, leased through Redis when it is configured.

    Returns ``False`` when another instance holds the lease for this interval.
    """

    interval = runtime.settings.session_cleanup_interval_seconds
    token = None
    if runtime.cache is not None:
        try:
            token = await runtime.cache.acquire_lock(CLEANUP_LOCK_NAME, interval)
        except Exception as exc:
            logger.warning("session_cleanup_lease_unavailable", error=str(exc))
        else:
            if token is None:
                logger.debug("session_cleanup_lease_held_elsewhere")
                return False
    try:
        await runtime.lifecycle.cleanup()
    except Exception:
        # Let another instance retry within this interval
        if token is not None and runtime.cache is not None:
            with contextlib.suppress(Exception):
                await runtime.cache.release_lock(CLEANUP_LOCK_NAME, token)
        raise
    return True


async def _run_session_cleanup(runtime: Runtime, interval_seconds: int) -> None:
    """Background loop that sweeps expired and stale sessions."""

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await run_scheduled_cleanup(runtime)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    "session_cleanup_task_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
    except asyncio.CancelledError:
        logger.info("session_cleanup_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _cleanup_task
    runtime = get_runtime()
    if runtime.settings.session_cleanup_enabled:
        _cleanup_task = asyncio.create_task(
            _run_session_cleanup(runtime, runtime.settings.session_cleanup_interval_seconds)
        )
        logger.info(
            "session_cleanup_scheduled",
            interval_seconds=runtime.settings.session_cleanup_interval_seconds,
            leased=runtime.cache is not None,
        )

    yield

    try:
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
            _cleanup_task = None
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Dance Studio Sessions", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts only; no wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID", "X-Cleanup-Token"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id for structured logs.

    Taken from ``X-Request-ID`` when the client sends one, generated
    otherwise, and echoed back in the response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/auth/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.cookie_secure:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health():
    """Report store and Redis reachability; 503 when a dependency is down."""

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        await asyncio.wait_for(
            runtime.store.verify_connection(), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        checks["database"] = {"status": "healthy"}
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        checks["database"] = {"status": "unhealthy"}

    if runtime.cache is not None:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.cache.verify_connection),
                HEALTH_CHECK_TIMEOUT_SECONDS,
            )
            checks["redis"] = {"status": "healthy"}
        except Exception as exc:
            logger.error("health_check_redis_failed", error=str(exc))
            checks["redis"] = {"status": "unhealthy"}
    else:
        checks["redis"] = {"status": "disabled"}

    healthy = all(c["status"] != "unhealthy" for c in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "checks": checks,
        },
    )