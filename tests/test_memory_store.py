from datetime import datetime, timedelta, timezone

import pytest

from skillopt.storage.errors import ConstraintViolation
from skillopt.storage.memory import MemoryStore
from skillopt.storage.models import EvaluationResult


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


def _seed_arm(store):
    skill = store.create_skill("agent-1", "summarize")
    cluster = store.create_skill_optimization_cluster(skill.id, name="1", centroid=[0.0, 1.0])
    arm = store.create_skill_optimization_arm(cluster.id, name="arm-1", params={"temperature": 0.2})
    return skill, cluster, arm


def test_lock_overlap_allows_single_holder(store):
    assert store.acquire_optimizer_lock("l", "a", 60, {}) is True
    assert store.acquire_optimizer_lock("l", "b", 60, {}) is False
    assert store.check_optimizer_lock("l")[0].locked_by == "a"


def test_lock_expiry_boundary_is_inclusive(store, clock):
    store.acquire_optimizer_lock("l", "a", 30, {})
    clock.advance(seconds=29)
    assert store.acquire_optimizer_lock("l", "b", 30, {}) is False
    clock.advance(seconds=1)
    assert store.check_optimizer_lock("l") == []
    assert store.acquire_optimizer_lock("l", "b", 30, {}) is True


def test_duplicate_skill_name_per_agent_rejected(store):
    store.create_skill("agent-1", "summarize")
    with pytest.raises(ConstraintViolation):
        store.create_skill("agent-1", "summarize")
    # same name under another agent is fine
    store.create_skill("agent-2", "summarize")


def test_reclustering_gate_opens_once_per_window(store, clock):
    skill = store.create_skill("agent-1", "summarize")

    first = store.try_acquire_reclustering_lock(skill.id, 60_000)
    assert len(first) == 1
    assert first[0].last_clustering_at == clock.now

    clock.advance(seconds=30)
    assert store.try_acquire_reclustering_lock(skill.id, 60_000) == []

    clock.advance(seconds=30)
    # elapsed must exceed the threshold, not merely reach it
    assert store.try_acquire_reclustering_lock(skill.id, 60_000) == []

    clock.advance(milliseconds=1)
    again = store.try_acquire_reclustering_lock(skill.id, 60_000)
    assert again[0].last_clustering_at == clock.now


def test_reclustering_gate_unknown_skill_returns_empty(store):
    assert store.try_acquire_reclustering_lock("missing", 1000) == []


def test_increment_skill_total_requests(store):
    skill = store.create_skill("agent-1", "summarize")

    store.increment_skill_total_requests(skill.id)
    updated = store.increment_skill_total_requests(skill.id)

    assert updated.total_requests == 2
    assert updated.total_steps == 0
    assert store.increment_skill_total_requests("missing") is None


def test_increment_cluster_counters(store):
    skill, cluster, _ = _seed_arm(store)

    updated = store.increment_cluster_counters(cluster.id)

    assert updated.total_steps == 1
    assert store.increment_cluster_counters("missing") is None


def test_update_arm_counts_one_step_per_batch(store):
    skill, cluster, arm = _seed_arm(store)

    result = store.update_arm_and_increment_counters(
        arm.id,
        [EvaluationResult("e1", 0.8), EvaluationResult("e2", 0.6)],
    )

    assert result.arm.stats.n == 1
    assert result.arm.stats.total_reward == pytest.approx(0.7)
    assert result.arm.stats.mean == pytest.approx(0.7)
    assert result.arm.stats.n2 == pytest.approx(0.49)
    assert result.cluster.total_steps == 1
    assert result.skill.total_steps == 1
    # persisted, not just returned
    assert store.get_skill_optimization_arm(arm.id).stats.n == 1
    assert store.get_skill(skill.id).total_steps == 1


def test_update_arm_accumulates_running_mean(store):
    _, _, arm = _seed_arm(store)

    store.update_arm_and_increment_counters(arm.id, [EvaluationResult("e1", 1.0)])
    result = store.update_arm_and_increment_counters(arm.id, [EvaluationResult("e2", 0.0)])

    assert result.arm.stats.n == 2
    assert result.arm.stats.mean == pytest.approx(0.5)
    assert result.arm.stats.n2 == pytest.approx(1.0)
    assert result.cluster.total_steps == 2


def test_update_arm_missing_returns_none(store):
    assert store.update_arm_and_increment_counters("missing", [EvaluationResult("e", 1.0)]) is None


def test_update_arm_rejects_empty_batch(store):
    _, _, arm = _seed_arm(store)
    with pytest.raises(ValueError):
        store.update_arm_and_increment_counters(arm.id, [])


def test_returned_rows_are_copies(store):
    skill = store.create_skill("agent-1", "summarize")
    fetched = store.get_skill(skill.id)
    fetched.total_requests = 99

    assert store.get_skill(skill.id).total_requests == 0


def test_update_skill_rejects_unknown_fields(store):
    skill = store.create_skill("agent-1", "summarize")
    with pytest.raises(ValueError):
        store.update_skill(skill.id, total_requests=5)
