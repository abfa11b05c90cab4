from __future__ import annotations

import asyncio
import contextlib
import signal
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tenantauth.api.error_handling import error_response, register_exception_handlers
from tenantauth.api.routes import router
from tenantauth.config import get_settings
from tenantauth.logging import bind_request_context, get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


_shutdown_watcher: asyncio.Task | None = None


async def _watch_health_shutdown(runtime) -> None:
    """Turn a failed health probe into a process-level graceful shutdown."""
    await runtime.health.shutdown_event.wait()
    runtime.begin_drain(runtime.health.shutdown_reason or "health probe failed")
    logger.error("health_shutdown_signal", reason=runtime.health.shutdown_reason)
    signal.raise_signal(signal.SIGTERM)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start background workers, then run the shutdown sequence on exit."""
    global _shutdown_watcher
    from tenantauth.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.start()
    _shutdown_watcher = asyncio.create_task(_watch_health_shutdown(runtime))
    logger.info("startup_complete", version=__version__)

    yield

    try:
        if _shutdown_watcher:
            _shutdown_watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _shutdown_watcher
            _shutdown_watcher = None
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="tenantauth", version=__version__, lifespan=lifespan)


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-API-Key",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def track_inflight(request, call_next):
    """Refuse new work while draining and count requests still running."""
    from tenantauth.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.draining and request.url.path != "/healthz":
        return error_response(503, "service is shutting down", code="service_unavailable")
    runtime.request_started()
    try:
        return await call_next(request)
    finally:
        runtime.request_finished()


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with its X-Request-ID.

    A client-supplied id is reused, otherwise a new one is generated, and the
    id is echoed back in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    bind_request_context(method=request.method, path=request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report storage and cache reachability plus the drain state."""
    from tenantauth.service.runtime import get_runtime

    runtime = get_runtime()
    results = await runtime.health.check_all()
    checks = {
        name: {"status": "healthy" if ok else "unhealthy"} for name, ok in results.items()
    }
    healthy = all(results.values()) and not runtime.draining
    return {
        "status": "healthy" if healthy else "unhealthy",
        "draining": runtime.draining,
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
