from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from wukongid.api.error_handling import register_exception_handlers
from wukongid.api.routes import router
from wukongid.config import Settings
from wukongid.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

# Fails fast on invalid configuration, e.g. development fallback in production
_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0

_sweep_task: asyncio.Task | None = None


async def _run_expiry_sweep(interval_seconds: int) -> None:
    """Background loop purging expired codes, tokens and device sessions."""
    from wukongid.service.runtime import get_runtime

    interval = max(interval_seconds, 1)
    try:
        while True:
            await asyncio.sleep(interval)
            purged = await get_runtime().sweep_expired()
            if purged:
                logger.info("expiry_sweep_completed", purged=purged)
    except asyncio.CancelledError:
        logger.info("expiry_sweep_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _sweep_task
    from wukongid.service.runtime import get_runtime

    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_expiry_sweep(runtime.settings.sweep_interval_seconds)
    )
    logger.info(
        "application_started",
        environment=runtime.settings.environment.value,
        auth_mode=runtime.settings.auth_mode.value,
    )

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    runtime.store.flush()
    logger.info("application_stopped")


app = FastAPI(title="Wukong Identity", version=__version__, lifespan=lifespan)
register_exception_handlers(app)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id for structured logs.

    Taken from the X-Request-ID header when present, otherwise generated,
    and echoed back in the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and token store reachability."""
    from wukongid.service.runtime import get_runtime
    from wukongid.storage.memory import MemoryTokenStore

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

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

    store_ok = await _run_bounded("store", runtime.store.verify_connection)
    checks["store"] = {"status": "healthy" if store_ok else "unhealthy", "type": "memory"}

    if isinstance(runtime.token_store, MemoryTokenStore):
        checks["token_store"] = {"status": "healthy", "type": "memory"}
        token_ok = True
    else:
        token_ok = await _run_bounded("redis", runtime.token_store.verify_connection)
        checks["token_store"] = {"status": "healthy" if token_ok else "unhealthy", "type": "redis"}

    return {
        "status": "healthy" if store_ok and token_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
