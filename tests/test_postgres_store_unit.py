import json
from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors

from skillopt.storage.errors import ConstraintViolation, StaleWriteError
from skillopt.storage.models import (
    ConfigurationVersion,
    EvaluationResult,
    VersionedConfigurationData,
)
from skillopt.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, rows):
        self.rows = rows

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, results):
        self.results = results
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return FakeCursor(result)


class FakePool:
    def __init__(self, *results):
        self.conn = FakeConnection(list(results))

    @contextmanager
    def connection(self):
        yield self.conn


def make_store(*results) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(*results)
    return store


NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)

SKILL_ROW = {
    "id": "skill-1",
    "agent_id": "agent-1",
    "name": "summarize",
    "description": None,
    "configuration_count": 3,
    "clustering_interval": 15,
    "total_requests": 1,
    "total_steps": 0,
    "last_clustering_at": NOW,
    "last_clustering_log_start_time": None,
    "metadata": {},
    "created_at": NOW,
    "updated_at": NOW,
}


def test_acquire_calls_stored_procedure_with_json_metadata():
    store = make_store([{"acquired": True}])

    assert store.acquire_optimizer_lock("l", "node", 60, {"skill_id": "s"}) is True

    sql, params = store.pool.conn.executed[0]
    assert sql == "SELECT acquire_optimizer_lock(%s, %s, %s, %s::jsonb) AS acquired"
    assert params[:3] == ("l", "node", 60)
    assert json.loads(params[3]) == {"skill_id": "s"}


def test_release_and_cleanup():
    store = make_store([{"released": False}], [{"removed": 4}])

    assert store.release_optimizer_lock("l", "node") is False
    assert store.cleanup_expired_optimizer_locks() == 4


def test_check_lock_maps_rows():
    store = make_store(
        [
            {
                "is_locked": True,
                "locked_by": "node",
                "locked_at": NOW,
                "expires_at": NOW,
                "time_remaining_seconds": 0,
                "metadata": {"a": 1},
            }
        ]
    )

    rows = store.check_optimizer_lock("l")

    assert rows[0].locked_by == "node"
    assert rows[0].metadata == {"a": 1}
    assert store.pool.conn.executed[0][0] == "SELECT * FROM check_optimizer_lock(%s)"


def test_reclustering_gate_returns_updated_row():
    store = make_store([SKILL_ROW])

    rows = store.try_acquire_reclustering_lock("skill-1", 60_000)

    assert rows[0].last_clustering_at == NOW
    assert store.pool.conn.executed[0][1] == ("skill-1", 60_000)


def test_reclustering_gate_contended_returns_empty():
    store = make_store([])
    assert store.try_acquire_reclustering_lock("skill-1", 60_000) == []


def test_increment_missing_row_maps_to_none():
    store = make_store(errors.NoDataFound("skill not found"), errors.NoDataFound("cluster not found"))

    assert store.increment_skill_total_requests("missing") is None
    assert store.increment_cluster_counters("missing") is None


def test_update_arm_sends_batch_and_parses_result():
    result = {
        "arm": {
            "id": "arm-1",
            "skill_id": "skill-1",
            "cluster_id": "cluster-1",
            "name": "a",
            "params": {},
            "stats": {"n": 1, "mean": 0.7, "n2": 0.49, "total_reward": 0.7},
        },
        "cluster": {"id": "cluster-1", "skill_id": "skill-1", "centroid": [1.0], "total_steps": 1},
        "skill": dict(SKILL_ROW, total_steps=1, last_clustering_at=NOW.isoformat(),
                      created_at=NOW.isoformat(), updated_at=NOW.isoformat()),
    }
    store = make_store([{"result": result}])

    update = store.update_arm_and_increment_counters(
        "arm-1", [EvaluationResult("e1", 0.8), EvaluationResult("e2", 0.6)]
    )

    sql, params = store.pool.conn.executed[0]
    assert "update_arm_and_increment_counters(%s, %s::jsonb)" in sql
    assert json.loads(params[1]) == [
        {"evaluation_id": "e1", "score": 0.8},
        {"evaluation_id": "e2", "score": 0.6},
    ]
    assert update.arm.stats.n == 1
    assert update.cluster.total_steps == 1
    assert update.skill.total_steps == 1


def test_update_arm_missing_maps_to_none():
    store = make_store(errors.NoDataFound("arm not found"))
    assert store.update_arm_and_increment_counters("nope", [EvaluationResult("e", 1.0)]) is None


def test_duplicate_skill_raises_constraint_violation():
    store = make_store(errors.UniqueViolation("duplicate key"))

    with pytest.raises(ConstraintViolation):
        store.create_skill("agent-1", "summarize")


def test_update_skill_rejects_unknown_columns_without_query():
    store = make_store()

    with pytest.raises(ValueError):
        store.update_skill("skill-1", total_requests=10)
    assert store.pool.conn.executed == []


def test_schema_check_reports_missing_objects():
    store = make_store(
        *([[{"oid": "skills"}]] * 4),
        [{"oid": None}],
        [{"oid": "skill_events"}],
        [{"proname": "acquire_optimizer_lock"}],
    )

    with pytest.raises(RuntimeError) as excinfo:
        store._verify_required_schema()

    message = str(excinfo.value)
    assert "optimizer_locks" in message
    assert "release_optimizer_lock" in message
    assert "coordination_schema.sql" in message


CONFIGURATION_ROW = {
    "id": "conf-1",
    "skill_id": "skill-1",
    "agent_id": "agent-1",
    "description": None,
    "data": {"current": {"hash": "bbbbbb", "created_at": "2025-01-01T00:00:01+00:00", "params": {}}},
    "created_at": NOW,
    "updated_at": NOW,
}

NEW_DATA = VersionedConfigurationData(current=ConfigurationVersion("bbbbbb", NOW, {}))


def test_conditional_configuration_update_filters_on_current_hash():
    store = make_store([CONFIGURATION_ROW])

    updated = store.update_skill_configuration("conf-1", data=NEW_DATA, expected_hash="aaaaaa")

    sql, params = store.pool.conn.executed[0]
    assert "data->'current'->>'hash' = %s" in sql
    assert params[2:] == ("conf-1", "aaaaaa", "aaaaaa")
    assert updated.data.current.hash == "bbbbbb"


def test_conditional_configuration_update_on_changed_row_is_stale():
    store = make_store([], [{"?column?": 1}])

    with pytest.raises(StaleWriteError):
        store.update_skill_configuration("conf-1", data=NEW_DATA, expected_hash="aaaaaa")
    assert len(store.pool.conn.executed) == 2


def test_conditional_configuration_update_on_missing_row_is_none():
    store = make_store([], [])

    assert store.update_skill_configuration("nope", data=NEW_DATA, expected_hash="aaaaaa") is None


def test_create_skill_event_inserts_skill_wide_row():
    store = make_store(
        [
            {
                "id": "event-1",
                "agent_id": "agent-1",
                "skill_id": "skill-1",
                "cluster_id": None,
                "event_type": "clusters_updated",
                "metadata": {"cluster_count": 3, "log_count": 15},
                "created_at": NOW,
            }
        ]
    )

    event = store.create_skill_event(
        "skill-1", "clusters_updated", metadata={"cluster_count": 3, "log_count": 15}
    )

    sql, params = store.pool.conn.executed[0]
    assert sql.startswith("INSERT INTO skill_events")
    assert params[1] is None
    assert json.loads(params[3]) == {"cluster_count": 3, "log_count": 15}
    assert event.cluster_id is None
    assert event.metadata["log_count"] == 15


def test_create_skill_event_for_missing_skill_raises():
    store = make_store([])

    with pytest.raises(ConstraintViolation):
        store.create_skill_event("nope", "clusters_updated")
