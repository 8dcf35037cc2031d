from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from dancestudio.config import get_settings, reset_settings_cache
from dancestudio.logging import get_logger
from dancestudio.service.audit import AuditLogger
from dancestudio.service.auth import AuthService
from dancestudio.service.sessions import SessionLifecycle, SessionValidator
from dancestudio.storage.memory import MemoryStore
from dancestudio.storage.models import Clock, utcnow
from dancestudio.storage.postgres import PostgresStore
from dancestudio.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, clock: Clock = utcnow):
        self.settings = get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root, clock=clock)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, clock=clock)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: RedisCache | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                # Redis only leases the cleanup job; every instance sweeps without it
                logger.warning(
                    "redis_unavailable_cleanup_unleased",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

        self.audit = AuditLogger(self.store)
        self.validator = SessionValidator(self.store, clock=clock)
        self.lifecycle = SessionLifecycle(
            self.store,
            self.audit,
            clock=clock,
            session_ttl=timedelta(minutes=self.settings.session_ttl_minutes),
            retention=timedelta(days=self.settings.session_retention_days),
        )
        self.auth = AuthService(self.store, self.lifecycle, self.audit)

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            session_ttl_minutes=self.settings.session_ttl_minutes,
            session_retention_days=self.settings.session_retention_days,
        )

    async def close(self) -> None:
        await self.store.close()
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once a runtime
    exists, the slow path re-checks under the lock before creating one.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, clock: Clock = utcnow) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.cache.close())
            else:
                loop.create_task(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(clock=clock)
        return runtime
