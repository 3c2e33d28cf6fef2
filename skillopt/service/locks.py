from __future__ import annotations

import asyncio
import inspect
import os
import random
import string
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar, Union

from skillopt.logging import get_logger
from skillopt.service.errors import LockNotAcquiredError
from skillopt.storage.models import LockStatus

T = TypeVar("T")

DEFAULT_LOCK_TIMEOUT_SECONDS = 300
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_MS = 1000

_BASE36 = string.digits + string.ascii_lowercase


def generate_instance_id() -> str:
    """Holder identity unique to this process and call: ``py_<pid>_<ms>_<rand>``."""
    suffix = "".join(random.choices(_BASE36, k=6))
    return f"py_{os.getpid()}_{int(time.time() * 1000)}_{suffix}"


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class LockManager:
    """Named distributed locks over a lock store.

    The store may be synchronous (memory, Postgres) or asynchronous
    (PostgREST, Redis). Contention is reported as ``False``; store failures
    propagate unchanged.
    """

    logger = get_logger(__name__)

    def __init__(
        self,
        store,
        *,
        default_timeout_seconds: int = DEFAULT_LOCK_TIMEOUT_SECONDS,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS,
    ) -> None:
        self.store = store
        self.default_timeout_seconds = default_timeout_seconds
        self.retry_attempts = retry_attempts
        self.retry_delay_ms = retry_delay_ms

    generate_instance_id = staticmethod(generate_instance_id)

    async def acquire(
        self,
        lock_name: str,
        locked_by: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        holder = locked_by or generate_instance_id()
        timeout = self.default_timeout_seconds if timeout_seconds is None else timeout_seconds
        acquired = bool(
            await _resolve(
                self.store.acquire_optimizer_lock(lock_name, holder, timeout, metadata or {})
            )
        )
        if acquired:
            self.logger.info(
                "optimizer_lock_acquired",
                lock_name=lock_name,
                locked_by=holder,
                timeout_seconds=timeout,
            )
        else:
            self.logger.debug("optimizer_lock_contended", lock_name=lock_name, locked_by=holder)
        return acquired

    async def release(self, lock_name: str, locked_by: Optional[str] = None) -> bool:
        # a fresh identity never matches a holder, so the call reports False
        holder = locked_by or generate_instance_id()
        released = bool(await _resolve(self.store.release_optimizer_lock(lock_name, holder)))
        if released:
            self.logger.info("optimizer_lock_released", lock_name=lock_name, locked_by=holder)
        else:
            self.logger.debug("optimizer_lock_release_denied", lock_name=lock_name, locked_by=holder)
        return released

    async def check_status(self, lock_name: str) -> LockStatus:
        rows = await _resolve(self.store.check_optimizer_lock(lock_name))
        if not rows:
            return LockStatus.unlocked()
        return rows[0]

    async def cleanup_expired(self) -> int:
        count = int(await _resolve(self.store.cleanup_expired_optimizer_locks()) or 0)
        if count:
            self.logger.info("optimizer_locks_cleaned", count=count)
        return count

    async def acquire_with_retry(
        self,
        lock_name: str,
        locked_by: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Try ``retry_attempts + 1`` times, sleeping between attempts only."""

        attempts = self.retry_attempts if retry_attempts is None else retry_attempts
        delay_ms = self.retry_delay_ms if retry_delay_ms is None else retry_delay_ms
        for attempt in range(attempts + 1):
            if await self.acquire(lock_name, locked_by, timeout_seconds, metadata):
                return True
            if attempt < attempts:
                self.logger.debug(
                    "optimizer_lock_retry",
                    lock_name=lock_name,
                    attempt=attempt + 1,
                    delay_ms=delay_ms,
                )
                await asyncio.sleep(delay_ms / 1000)
        self.logger.warning(
            "optimizer_lock_retries_exhausted", lock_name=lock_name, attempts=attempts + 1
        )
        return False

    async def _release_quietly(self, lock_name: str, holder: str) -> None:
        try:
            await self.release(lock_name, holder)
        except Exception as exc:
            self.logger.warning(
                "optimizer_lock_release_failed",
                lock_name=lock_name,
                locked_by=holder,
                error=str(exc),
            )

    async def with_lock(
        self,
        lock_name: str,
        fn: Callable[[], Union[T, Awaitable[T]]],
        locked_by: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> T:
        """Run ``fn`` while holding ``lock_name``.

        Raises:
            LockNotAcquiredError: the lock was held elsewhere and ``fn`` never ran.
        """

        holder = locked_by or generate_instance_id()
        if not await self.acquire(lock_name, holder, timeout_seconds, metadata):
            raise LockNotAcquiredError(lock_name)
        try:
            return await _resolve(fn())
        finally:
            await self._release_quietly(lock_name, holder)

    @asynccontextmanager
    async def hold(
        self,
        lock_name: str,
        locked_by: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[str]:
        """``async with`` form of :meth:`with_lock`; yields the holder identity."""

        holder = locked_by or generate_instance_id()
        if not await self.acquire(lock_name, holder, timeout_seconds, metadata):
            raise LockNotAcquiredError(lock_name)
        try:
            yield holder
        finally:
            await self._release_quietly(lock_name, holder)
