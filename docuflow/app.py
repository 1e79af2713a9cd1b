from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from docuflow.api.error_handling import register_exception_handlers
from docuflow.api.routes import router
from docuflow.config import Settings
from docuflow.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


async def _purge_tokens_forever(interval_seconds: int) -> None:
    """Drop consumed and expired tokens once they are past retention."""
    from docuflow.service.runtime import get_runtime

    while True:
        await asyncio.sleep(max(interval_seconds, 60))
        try:
            await asyncio.to_thread(get_runtime().tokens.purge_stale_tokens)
        except Exception as exc:
            logger.warning("token_purge_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    from docuflow.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.token_purge_interval_seconds
    purge_task = asyncio.create_task(_purge_tokens_forever(interval)) if interval > 0 else None
    try:
        yield
    finally:
        if purge_task is not None:
            purge_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await purge_task
        await runtime.close()
        logger.info("runtime_closed")


app = FastAPI(title="DocuFlow Accounts", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # local dev hosts only; never a wildcard
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "session_id",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id.

    The id comes from the client's ``X-Request-ID`` header when present and
    is otherwise generated. It is bound into log context and echoed back in
    the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    # reset and invite links carry the raw token in the query string
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    response.headers.setdefault(
        "Content-Security-Policy",
        "default-src 'none'; frame-ancestors 'none'; base-uri 'none'",
    )
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


def _filesystem_probe(root: Path):
    def probe() -> None:
        if not root.is_dir():
            raise FileNotFoundError(root)
        marker = root / ".health_check"
        marker.write_text(datetime.now(timezone.utc).isoformat())
        marker.unlink(missing_ok=True)

    return probe


async def _probe(component: str, func: Callable[[], None]) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=component)
        return False
    except Exception as exc:
        logger.error("health_check_failed", component=component, error=str(exc))
        return False
    return True


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Probe the backing services; in-memory and unset ones are reported as such."""
    from docuflow.service.runtime import get_runtime

    runtime = get_runtime()
    fs_root = getattr(runtime.store, "fs_root", None)
    probes: List[Tuple[str, Optional[Callable[[], None]], Dict[str, Any]]] = [
        ("database", getattr(runtime.store, "ping", None), {"status": "healthy", "type": "memory"}),
        ("redis", runtime.cache.verify_connection if runtime.cache else None, {"status": "not_configured"}),
        ("filesystem", _filesystem_probe(Path(fs_root)) if fs_root else None, {"status": "not_configured"}),
    ]

    checks: Dict[str, Dict[str, Any]] = {}
    for component, func, fallback in probes:
        if func is None:
            checks[component] = fallback
            continue
        ok = await _probe(component, func)
        checks[component] = {"status": "healthy" if ok else "unhealthy"}

    healthy = all(check["status"] != "unhealthy" for check in checks.values())
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "email_configured": runtime.email.is_configured,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
