from __future__ import annotations

import inspect
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from skillopt.config import LockBackend, StoreBackend, get_settings, reset_settings_cache
from skillopt.logging import get_logger
from skillopt.service.configurations import ConfigurationVersionStore
from skillopt.service.counters import OptimizationCounterCoordinator
from skillopt.service.locks import LockManager
from skillopt.service.reclustering import ReclusteringGate, ReclusteringService
from skillopt.storage.memory import MemoryStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
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


def _build_store(settings):
    if settings.store_backend == StoreBackend.MEMORY:
        return MemoryStore()
    if settings.store_backend == StoreBackend.POSTGREST:
        from skillopt.storage.postgrest import PostgrestStore

        return PostgrestStore(
            settings.postgrest_url,
            settings.postgrest_service_role_key,
            api_key=settings.postgrest_api_key,
            timeout_seconds=settings.postgrest_timeout_seconds,
        )
    from skillopt.storage.postgres import PostgresStore

    return PostgresStore(settings.database_url)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = self.settings.store_backend.value
        logger.info(
            "runtime_init_started",
            store_backend=store_type,
            lock_backend=self.settings.lock_backend.value,
            test_mode=self.settings.test_mode,
        )
        try:
            self.store = _build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.lock_store = self.store
        if self.settings.lock_backend == LockBackend.REDIS:
            from skillopt.storage.redis_locks import RedisLockStore

            self.lock_store = RedisLockStore(self.settings.redis_url)
            logger.info(
                "runtime_redis_locks_enabled",
                redis_url=_mask_url_password(self.settings.redis_url),
            )

        self.locks = LockManager(
            self.lock_store,
            default_timeout_seconds=self.settings.lock_timeout_seconds,
            retry_attempts=self.settings.lock_retry_attempts,
            retry_delay_ms=self.settings.lock_retry_delay_ms,
        )
        self.counters = OptimizationCounterCoordinator(self.store)
        self.configurations = ConfigurationVersionStore(self.store)
        self.gate = ReclusteringGate(self.store)
        self.reclustering = ReclusteringService(
            self.store,
            self.locks,
            gate=self.gate,
            counters=self.counters,
            gate_threshold_ms=self.settings.recluster_gate_threshold_ms,
        )
        logger.info("runtime_initialized", store_backend=store_type)

    async def close(self) -> None:
        closers = [self.store]
        if self.lock_store is not self.store:
            closers.append(self.lock_store)
        for resource in closers:
            result = resource.close()
            if inspect.isawaitable(result):
                await result
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
        runtime = Runtime()
        return runtime
