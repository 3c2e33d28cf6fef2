import pytest

from skillopt.service.counters import (
    OptimizationCounterCoordinator,
    normalize_evaluation_results,
)
from skillopt.service.errors import NotFoundError, ValidationError
from skillopt.storage.memory import MemoryStore
from skillopt.storage.models import EvaluationResult


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def counters(store):
    return OptimizationCounterCoordinator(store)


@pytest.fixture
def seeded(store):
    skill = store.create_skill("agent-1", "classify")
    cluster = store.create_skill_optimization_cluster(skill.id, name="1", centroid=[1.0])
    arm = store.create_skill_optimization_arm(cluster.id, name="a")
    return skill, cluster, arm


class CountingStore:
    """Wraps a store and counts every call made through it."""

    def __init__(self, inner, fail_with=None):
        self.inner = inner
        self.fail_with = fail_with
        self.calls = []

    def update_arm_and_increment_counters(self, arm_id, results):
        self.calls.append(("update_arm_and_increment_counters", arm_id, list(results)))
        if self.fail_with:
            raise self.fail_with
        return self.inner.update_arm_and_increment_counters(arm_id, results)

    def increment_skill_total_requests(self, skill_id):
        self.calls.append(("increment_skill_total_requests", skill_id))
        if self.fail_with:
            raise self.fail_with
        return self.inner.increment_skill_total_requests(skill_id)


async def test_increment_skill_total_requests(counters, seeded):
    skill, _, _ = seeded

    await counters.increment_skill_total_requests(skill.id)
    updated = await counters.increment_skill_total_requests(skill.id)

    assert updated.total_requests == 2


async def test_increment_missing_skill_is_not_found(counters):
    with pytest.raises(NotFoundError) as excinfo:
        await counters.increment_skill_total_requests("nope")
    assert excinfo.value.detail == {"skill_id": "nope"}


async def test_increment_cluster_counters(counters, seeded):
    _, cluster, _ = seeded

    updated = await counters.increment_cluster_counters(cluster.id)

    assert updated.total_steps == 1
    with pytest.raises(NotFoundError):
        await counters.increment_cluster_counters("nope")


async def test_batch_counts_as_one_step(counters, seeded):
    skill, cluster, arm = seeded

    update = await counters.update_arm_and_increment_counters(
        arm.id,
        [{"evaluation_id": "e1", "score": 0.8}, {"evaluation_id": "e2", "score": 0.6}],
    )

    assert update.cluster.total_steps == cluster.total_steps + 1
    assert update.skill.total_steps == skill.total_steps + 1
    assert update.arm.stats.n == 1
    assert update.arm.stats.mean == pytest.approx(0.7)
    assert update.arm.id == arm.id


async def test_arm_cluster_and_skill_stay_in_step(counters, seeded):
    _, _, arm = seeded

    for score in (0.1, 0.5, 0.9):
        update = await counters.update_arm_and_increment_counters(
            arm.id, [EvaluationResult("e", score)]
        )

    assert update.arm.stats.n == update.cluster.total_steps == update.skill.total_steps == 3
    assert update.arm.stats.total_reward == pytest.approx(1.5)
    assert update.arm.stats.n2 == pytest.approx(0.01 + 0.25 + 0.81)


async def test_empty_batch_rejected_before_store_call(store, seeded):
    _, _, arm = seeded
    counting = CountingStore(store)
    counters = OptimizationCounterCoordinator(counting)

    with pytest.raises(ValidationError):
        await counters.update_arm_and_increment_counters(arm.id, [])
    assert counting.calls == []


async def test_missing_arm_is_not_found(counters):
    with pytest.raises(NotFoundError) as excinfo:
        await counters.update_arm_and_increment_counters("nope", [EvaluationResult("e", 1.0)])
    assert excinfo.value.status_code == 404


async def test_store_failure_propagates_without_retry(store, seeded):
    skill, _, arm = seeded
    counting = CountingStore(store, fail_with=ConnectionError("gateway down"))
    counters = OptimizationCounterCoordinator(counting)

    with pytest.raises(ConnectionError):
        await counters.update_arm_and_increment_counters(arm.id, [EvaluationResult("e", 1.0)])
    with pytest.raises(ConnectionError):
        await counters.increment_skill_total_requests(skill.id)

    assert len(counting.calls) == 2


def test_normalize_rejects_malformed_results():
    with pytest.raises(ValidationError):
        normalize_evaluation_results([{"evaluation_id": "e1"}])
    with pytest.raises(ValidationError):
        normalize_evaluation_results([{"evaluation_id": "e1", "score": "high"}])
    with pytest.raises(ValidationError):
        normalize_evaluation_results([{"evaluation_id": "e1", "score": float("nan")}])
    with pytest.raises(ValidationError):
        normalize_evaluation_results(["e1"])


def test_normalize_accepts_mixed_inputs():
    results = normalize_evaluation_results(
        [EvaluationResult("e1", 1.0), {"evaluation_id": 7, "score": "0.5"}]
    )
    assert results == [EvaluationResult("e1", 1.0), EvaluationResult("7", 0.5)]
