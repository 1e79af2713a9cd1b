from __future__ import annotations

import asyncio
import math
import threading
import time
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlsplit, urlunsplit

from docuflow.config import Settings, get_settings, reset_settings_cache
from docuflow.logging import get_logger
from docuflow.service.auth import AuthService
from docuflow.service.email import EmailService
from docuflow.service.lifecycle import TokenLifecycleService
from docuflow.service.sessions import SessionInvalidator
from docuflow.service.tokens import TokenGenerator
from docuflow.storage.memory import MemoryStore
from docuflow.storage.postgres import PostgresStore
from docuflow.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _redact_dsn(url: Optional[str]) -> Optional[str]:
    """``redis://:secret@host:6379/0`` becomes ``redis://:***@host:6379/0``."""
    if not url:
        return url
    parts = urlsplit(url)
    if not parts.password:
        return url
    user = parts.username or ""
    host = parts.netloc.rpartition("@")[2]
    return urlunsplit(parts._replace(netloc=f"{user}:***@{host}"))


class LocalWindowLimiter:
    """In-process fixed-window counter used when no Redis is configured.

    Counts the same way as :meth:`RedisCache.check_rate_limit` so limits
    behave identically whichever backend is active. Counters are per
    worker process.
    """

    def __init__(self) -> None:
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, limit: int, window_seconds: int, cost: int = 1) -> Tuple[bool, int, int]:
        now = time.monotonic()
        with self._lock:
            hits, window_end = self._windows.get(key, (0, 0.0))
            if now >= window_end:
                hits, window_end = 0, now + window_seconds
            hits += max(1, cost)
            self._windows[key] = (hits, window_end)
        allowed = hits <= limit
        reset_seconds = 0 if allowed else max(1, math.ceil(window_end - now))
        return allowed, max(0, limit - hits), reset_seconds


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = self._open_store()
        self.cache = self._open_cache()
        self.sessions = SessionInvalidator(self.store)
        self.auth = AuthService(self.store, self.settings, sessions=self.sessions)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_security=self.settings.smtp_security,
            timeout_seconds=self.settings.smtp_timeout_seconds,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            production=self.settings.is_production,
        )
        self.tokens = TokenLifecycleService(
            self.store,
            self.settings,
            auth=self.auth,
            email=self.email,
            sessions=self.sessions,
            generator=TokenGenerator(self.settings.token_bytes),
        )
        self.local_limiter = LocalWindowLimiter()

        if self.settings.is_production and not self.email.is_configured:
            logger.error(
                "email_transport_missing",
                message="SMTP is not configured; reset and invite emails will fail to send",
            )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            smtp_security=self.email.smtp_security.value,
            production=self.settings.is_production,
        )

    def _open_store(self) -> MemoryStore | PostgresStore:
        kind = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if kind == "memory":
                store = MemoryStore(fs_root=self.settings.shared_fs_root)
            else:
                store = PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error("runtime_store_init_failed", store_type=kind, error=str(exc))
            raise
        logger.info("runtime_store_initialized", store_type=kind)
        return store

    def _open_cache(self) -> Optional[RedisCache]:
        """Connect to Redis, or fall back to in-process state where allowed.

        Without Redis, rate limits are counted per process, so the fallback
        needs TEST_MODE or ALLOW_REDIS_FALLBACK_DEV.
        """
        failure: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                failure = exc

        if not (self.settings.test_mode or self.settings.allow_redis_fallback_dev):
            raise RuntimeError(
                "Redis is unavailable; set TEST_MODE or ALLOW_REDIS_FALLBACK_DEV "
                "to run with in-process rate limits"
            ) from failure
        logger.warning(
            "redis_fallback_active",
            redis_url=_redact_dsn(self.settings.redis_url),
            reason=str(failure) if failure else "redis_url_missing",
            mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        )
        return None

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path for the existing
    runtime, then a locked re-check before creating one.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None and runtime.cache is not None:
            try:
                asyncio.run(runtime.cache.close())
            except Exception as exc:
                # connection may already be closed or bound to a finished loop
                logger.warning("runtime_reset_cache_close_skipped", error=str(exc))
        runtime = Runtime(settings)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Enforce rate limits even when Redis is unavailable.

    Counts in Redis when a cache is configured and in the process-local
    window otherwise.

    Args:
        runtime: Runtime instance with cache
        key: Rate limit key
        limit: Maximum requests per window
        window_seconds: Window duration in seconds
        return_remaining: If True, return (allowed, remaining, reset_seconds)

    Returns:
        bool if return_remaining is False, else (bool, int, int) tuple
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    allowed, remaining, reset_seconds = runtime.local_limiter.hit(key, limit, window_seconds, cost)
    if return_remaining:
        return allowed, remaining, reset_seconds
    return allowed


__all__ = [
    "LocalWindowLimiter",
    "Runtime",
    "get_runtime",
    "reset_runtime_for_tests",
    "check_rate_limit",
]
