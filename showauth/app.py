from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from showauth.api.error_handling import (
    REQUEST_ID_HEADER,
    register_exception_handlers,
    unhandled_error_response,
)
from showauth.api.routes import router
from showauth.config import Settings
from showauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

MIN_MAINTENANCE_INTERVAL_SECONDS = 300
HEALTH_CHECK_TIMEOUT_SECONDS = 3

_maintenance_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the maintenance loop on startup and release the runtime on shutdown."""
    global _maintenance_task
    from showauth.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        _maintenance_task = asyncio.create_task(
            _run_maintenance_loop(runtime.settings.cleanup_interval_hours * 3600)
        )
    except Exception as exc:
        logger.error("startup_maintenance_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        if _maintenance_task:
            _maintenance_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _maintenance_task
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Showauth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [_settings.frontend_url, "http://localhost:3000", "http://127.0.0.1:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    # session cookies travel cross-origin from the frontend
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Content-Disposition"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation id for logs and the response envelope.

    The id comes from the client's X-Request-ID header when present and is
    echoed back in the same header.
    """
    correlation_id = set_correlation_id(request.headers.get(REQUEST_ID_HEADER))
    request.state.correlation_id = correlation_id
    try:
        response = await call_next(request)
    except Exception as exc:
        response = unhandled_error_response(request, exc)
    response.headers[REQUEST_ID_HEADER] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # tokens and personal data must not land in shared caches
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.session_secure:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Liveness probe with database and Redis reachability."""
    from showauth.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}
    overall_healthy = True

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    if hasattr(runtime.store, "_connect"):

        def _db_probe() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        db_ok = await _run_bounded("database", _db_probe)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
        overall_healthy = overall_healthy and db_ok
    else:
        checks["database"] = {"status": "healthy", "type": "memory"}

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
        overall_healthy = overall_healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _run_maintenance_loop(interval_seconds: int) -> None:
    """Periodically sweep expired callbacks, states and challenges and purge old accounts."""
    from showauth.service.runtime import get_runtime

    interval = max(interval_seconds, MIN_MAINTENANCE_INTERVAL_SECONDS)
    try:
        while True:
            try:
                removed = await asyncio.to_thread(get_runtime().run_maintenance)
                logger.info("maintenance_complete", **removed)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("maintenance_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("maintenance_task_cancelled")


def create_app() -> FastAPI:
    return app
