from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from skillopt.api.error_handling import register_exception_handlers
from skillopt.api.routes import router
from skillopt.logging import get_logger, set_correlation_id
from skillopt.service.locks import LockManager

logger = get_logger(__name__)

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None


async def run_lock_sweep(locks: LockManager, interval_seconds: int) -> None:
    """Background loop deleting expired optimizer locks."""

    try:
        while True:
            try:
                await locks.cleanup_expired()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort sweep
                logger.warning("lock_sweep_failed", error=str(exc))
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("lock_sweep_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the expired-lock sweep and close the store on shutdown."""
    global _sweep_task
    from skillopt.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.lock_sweep_interval_seconds
    if interval > 0:
        _sweep_task = asyncio.create_task(run_lock_sweep(runtime.locks, interval))
        logger.info("lock_sweep_started", interval_seconds=interval)

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
            _sweep_task = None
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Skill Optimization Coordinator", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind the X-Request-ID header (or a fresh UUID) as the correlation ID.

    The same ID is echoed back in the X-Request-ID response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from skillopt.service.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": "ok",
        "version": __version__,
        "store_backend": runtime.settings.store_backend.value,
        "lock_backend": runtime.settings.lock_backend.value,
    }


def create_app() -> FastAPI:
    return app
