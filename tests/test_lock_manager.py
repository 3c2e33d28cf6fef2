"""Tests for LockManager acquire/release/retry and scoped execution."""

import re
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from skillopt.service.errors import LockNotAcquiredError
from skillopt.service.locks import LockManager, generate_instance_id
from skillopt.storage.memory import MemoryStore


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingLockStore:
    """Lock store whose acquire answers come from a script."""

    def __init__(self, acquire_results=None, release_error=None) -> None:
        self.acquire_results = list(acquire_results or [True])
        self.release_error = release_error
        self.acquire_calls = []
        self.release_calls = []

    def acquire_optimizer_lock(self, lock_name, locked_by, timeout_seconds, metadata):
        self.acquire_calls.append((lock_name, locked_by, timeout_seconds, metadata))
        if len(self.acquire_results) > 1:
            return self.acquire_results.pop(0)
        return self.acquire_results[0]

    async def release_optimizer_lock(self, lock_name, locked_by):
        self.release_calls.append((lock_name, locked_by))
        if self.release_error:
            raise self.release_error
        return True

    def check_optimizer_lock(self, lock_name):
        return []

    def cleanup_expired_optimizer_locks(self):
        return 0


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manager(clock):
    return LockManager(MemoryStore(clock=clock))


def test_generate_instance_id_format():
    first = generate_instance_id()
    second = generate_instance_id()
    assert re.fullmatch(r"py_\d+_\d+_[0-9a-z]{6}", first)
    assert first != second


async def test_second_acquire_fails_until_release(manager):
    assert await manager.acquire("recluster:s1", "node-a") is True
    assert await manager.acquire("recluster:s1", "node-b") is False

    assert await manager.release("recluster:s1", "node-a") is True
    assert await manager.acquire("recluster:s1", "node-b") is True


async def test_release_by_other_holder_is_refused(manager):
    await manager.acquire("lock", "node-a")

    assert await manager.release("lock", "node-b") is False

    status = await manager.check_status("lock")
    assert status.is_locked is True
    assert status.locked_by == "node-a"


async def test_expired_lock_can_be_taken_without_release(manager, clock):
    await manager.acquire("lock", "node-a", timeout_seconds=10)
    clock.advance(10)

    assert await manager.acquire("lock", "node-b") is True
    status = await manager.check_status("lock")
    assert status.locked_by == "node-b"
    # the stale holder can no longer release the reassigned lock
    assert await manager.release("lock", "node-a") is False


async def test_check_status_reports_unlocked_without_error(manager):
    status = await manager.check_status("never-taken")

    assert status.is_locked is False
    assert status.locked_by is None
    assert status.locked_at is None
    assert status.expires_at is None
    assert status.time_remaining_seconds is None
    assert status.metadata is None


async def test_check_status_reports_holder_and_remaining_time(manager, clock):
    await manager.acquire("lock", "node-a", timeout_seconds=120, metadata={"skill_id": "s1"})
    clock.advance(20)

    status = await manager.check_status("lock")

    assert status.is_locked is True
    assert status.locked_by == "node-a"
    assert status.time_remaining_seconds == 100
    assert status.expires_at - status.locked_at == timedelta(seconds=120)
    assert status.metadata == {"skill_id": "s1"}


async def test_cleanup_expired_is_idempotent(manager, clock):
    await manager.acquire("a", "node", timeout_seconds=5)
    await manager.acquire("b", "node", timeout_seconds=50)
    clock.advance(10)

    assert await manager.cleanup_expired() == 1
    assert await manager.cleanup_expired() == 0
    assert (await manager.check_status("b")).is_locked is True


async def test_release_without_identity_never_matches_generated_holder(manager):
    assert await manager.acquire("lock") is True
    holder = (await manager.check_status("lock")).locked_by
    assert holder.startswith("py_")

    assert await manager.release("lock") is False
    assert (await manager.check_status("lock")).locked_by == holder

    assert await manager.release("lock", holder) is True
    assert (await manager.check_status("lock")).is_locked is False


async def test_release_without_identity_keeps_lock_reassigned_after_expiry(manager, clock):
    assert await manager.acquire("recluster:s1", timeout_seconds=10) is True
    first_holder = (await manager.check_status("recluster:s1")).locked_by
    clock.advance(11)

    assert await manager.acquire("recluster:s1", timeout_seconds=10) is True
    second_holder = (await manager.check_status("recluster:s1")).locked_by
    assert second_holder != first_holder

    # the first caller lost the lock to expiry and must not free the new holder's lock
    assert await manager.release("recluster:s1") is False
    status = await manager.check_status("recluster:s1")
    assert status.is_locked is True
    assert status.locked_by == second_holder


async def test_release_without_identity_cannot_steal_foreign_lock(manager):
    await manager.acquire("lock", "someone-else")

    assert await manager.release("lock") is False
    assert (await manager.check_status("lock")).locked_by == "someone-else"


async def test_acquire_with_retry_calls_at_most_attempts_plus_one():
    store = RecordingLockStore(acquire_results=[False])
    manager = LockManager(store)
    sleeps = []

    async def mock_sleep(delay):
        sleeps.append(delay)

    with patch("asyncio.sleep", mock_sleep):
        acquired = await manager.acquire_with_retry(
            "lock", "node", retry_attempts=3, retry_delay_ms=250
        )

    assert acquired is False
    assert len(store.acquire_calls) == 4
    # sleeps between attempts, never after the last
    assert sleeps == [0.25, 0.25, 0.25]


async def test_acquire_with_retry_stops_on_success():
    store = RecordingLockStore(acquire_results=[False, True])
    manager = LockManager(store)
    sleeps = []

    async def mock_sleep(delay):
        sleeps.append(delay)

    with patch("asyncio.sleep", mock_sleep):
        acquired = await manager.acquire_with_retry("lock", "node", retry_delay_ms=1000)

    assert acquired is True
    assert len(store.acquire_calls) == 2
    assert sleeps == [1.0]


async def test_acquire_passes_default_timeout_and_metadata():
    store = RecordingLockStore()
    manager = LockManager(store, default_timeout_seconds=42)

    await manager.acquire("lock", "node", metadata={"k": "v"})
    await manager.acquire("other", "node", timeout_seconds=7)

    assert store.acquire_calls[0] == ("lock", "node", 42, {"k": "v"})
    assert store.acquire_calls[1] == ("other", "node", 7, {})


async def test_with_lock_returns_result_and_releases(manager):
    calls = []

    async def work():
        calls.append("ran")
        status = await manager.check_status("job")
        assert status.is_locked
        return "done"

    assert await manager.with_lock("job", work, locked_by="node-a") == "done"
    assert calls == ["ran"]
    assert (await manager.check_status("job")).is_locked is False


async def test_with_lock_accepts_sync_callable(manager):
    assert await manager.with_lock("job", lambda: 5) == 5
    assert (await manager.check_status("job")).is_locked is False


async def test_with_lock_raises_without_running_when_contended(manager):
    await manager.acquire("job", "other-node")
    calls = []

    with pytest.raises(LockNotAcquiredError) as excinfo:
        await manager.with_lock("job", lambda: calls.append("ran"))

    assert calls == []
    assert excinfo.value.lock_name == "job"
    assert str(excinfo.value) == "Failed to acquire lock: job"
    # the other holder keeps its lock
    assert (await manager.check_status("job")).locked_by == "other-node"


async def test_with_lock_releases_when_function_raises(manager):
    async def boom():
        raise ValueError("pass failed")

    with pytest.raises(ValueError, match="pass failed"):
        await manager.with_lock("job", boom)

    assert (await manager.check_status("job")).is_locked is False


async def test_with_lock_release_failure_does_not_mask_result():
    store = RecordingLockStore(release_error=ConnectionError("store down"))
    manager = LockManager(store)

    result = await manager.with_lock("job", lambda: "value", locked_by="node-a")

    assert result == "value"
    assert store.release_calls == [("job", "node-a")]


async def test_with_lock_release_failure_does_not_mask_error():
    store = RecordingLockStore(release_error=ConnectionError("store down"))
    manager = LockManager(store)

    def fail():
        raise KeyError("wrapped failure")

    with pytest.raises(KeyError, match="wrapped failure"):
        await manager.with_lock("job", fail)
    assert len(store.release_calls) == 1


async def test_with_lock_releases_with_acquiring_identity():
    store = RecordingLockStore()
    manager = LockManager(store)

    await manager.with_lock("job", lambda: None)

    acquired_by = store.acquire_calls[0][1]
    assert store.release_calls == [("job", acquired_by)]


async def test_store_errors_propagate_from_acquire():
    class BrokenStore(RecordingLockStore):
        def acquire_optimizer_lock(self, *args):
            raise ConnectionError("unreachable")

    manager = LockManager(BrokenStore())

    with pytest.raises(ConnectionError):
        await manager.acquire("lock", "node")


async def test_hold_context_manager(manager):
    async with manager.hold("job", metadata={"purpose": "test"}) as holder:
        status = await manager.check_status("job")
        assert status.locked_by == holder
        assert status.metadata == {"purpose": "test"}

    assert (await manager.check_status("job")).is_locked is False


async def test_hold_raises_when_contended(manager):
    await manager.acquire("job", "other-node")

    with pytest.raises(LockNotAcquiredError):
        async with manager.hold("job"):
            pytest.fail("body must not run")
