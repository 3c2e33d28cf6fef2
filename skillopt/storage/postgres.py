from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from skillopt.logging import get_logger
from skillopt.storage.common import (
    arm_from_row,
    arm_update_from_payload,
    cluster_from_row,
    configuration_from_row,
    lock_status_from_row,
    skill_event_from_row,
    skill_from_row,
)
from skillopt.storage.errors import ConstraintViolation, StaleWriteError
from skillopt.storage.models import (
    ArmUpdateResult,
    EvaluationResult,
    LockStatus,
    Skill,
    SkillConfiguration,
    SkillEvent,
    SkillOptimizationArm,
    SkillOptimizationCluster,
    VersionedConfigurationData,
)

REQUIRED_TABLES = (
    "skills",
    "skill_configurations",
    "skill_optimization_clusters",
    "skill_optimization_arms",
    "optimizer_locks",
    "skill_events",
)

REQUIRED_FUNCTIONS = (
    "acquire_optimizer_lock",
    "release_optimizer_lock",
    "check_optimizer_lock",
    "cleanup_expired_optimizer_locks",
    "try_acquire_reclustering_lock",
    "increment_skill_total_requests",
    "increment_cluster_counters",
    "update_arm_and_increment_counters",
)

_SKILL_COLUMNS = {
    "name",
    "description",
    "configuration_count",
    "clustering_interval",
    "last_clustering_at",
    "last_clustering_log_start_time",
    "metadata",
}


class PostgresStore:
    """Postgres-backed store; every coordination step is one stored procedure call."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()
        self.logger.info("postgres_store_ready", min_size=min_size, max_size=max_size)

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Fail fast when the coordination tables or procedures are missing."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            rows = conn.execute(
                "SELECT proname FROM pg_proc WHERE proname = ANY(%s)",
                (list(REQUIRED_FUNCTIONS),),
            ).fetchall()
            present = {row["proname"] for row in rows}
            missing_functions = [f for f in REQUIRED_FUNCTIONS if f not in present]

        if missing_tables or missing_functions:
            raise RuntimeError(
                "Postgres schema incomplete (tables: {}; functions: {}). "
                "Apply sql/coordination_schema.sql first.".format(
                    ", ".join(sorted(missing_tables)) or "ok",
                    ", ".join(sorted(missing_functions)) or "ok",
                )
            )

    # ------------------------------------------------------------------
    # Named optimizer locks
    # ------------------------------------------------------------------

    def acquire_optimizer_lock(
        self,
        lock_name: str,
        locked_by: str,
        timeout_seconds: int = 300,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT acquire_optimizer_lock(%s, %s, %s, %s::jsonb) AS acquired",
                (lock_name, locked_by, timeout_seconds, json.dumps(metadata or {})),
            ).fetchone()
        return bool(row and row["acquired"])

    def release_optimizer_lock(self, lock_name: str, locked_by: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT release_optimizer_lock(%s, %s) AS released",
                (lock_name, locked_by),
            ).fetchone()
        return bool(row and row["released"])

    def check_optimizer_lock(self, lock_name: str) -> List[LockStatus]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM check_optimizer_lock(%s)", (lock_name,)
            ).fetchall()
        return [lock_status_from_row(row) for row in rows]

    def cleanup_expired_optimizer_locks(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT cleanup_expired_optimizer_locks() AS removed"
            ).fetchone()
        return int(row["removed"]) if row else 0

    # ------------------------------------------------------------------
    # Skills and the reclustering gate
    # ------------------------------------------------------------------

    def create_skill(
        self,
        agent_id: str,
        name: str,
        *,
        description: Optional[str] = None,
        configuration_count: int = 3,
        clustering_interval: int = 15,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Skill:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO skills (agent_id, name, description, configuration_count, clustering_interval, metadata)
                    VALUES (%s, %s, %s, %s, %s, %s::jsonb)
                    RETURNING *
                    """,
                    (
                        agent_id,
                        name,
                        description,
                        configuration_count,
                        clustering_interval,
                        json.dumps(metadata or {}),
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "skill name already exists for agent",
                {"agent_id": agent_id, "name": name},
            ) from exc
        return skill_from_row(row)

    def get_skill(self, skill_id: str) -> Optional[Skill]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM skills WHERE id = %s", (skill_id,)).fetchone()
        return skill_from_row(row) if row else None

    def update_skill(self, skill_id: str, **fields: Any) -> Optional[Skill]:
        unknown = set(fields) - _SKILL_COLUMNS
        if unknown:
            raise ValueError(f"unsupported skill fields: {sorted(unknown)}")
        if not fields:
            return self.get_skill(skill_id)
        assignments = []
        values: List[Any] = []
        for column, value in fields.items():
            if column == "metadata":
                assignments.append("metadata = %s::jsonb")
                values.append(json.dumps(value or {}))
            else:
                assignments.append(f"{column} = %s")
                values.append(value)
        values.append(skill_id)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE skills SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                values,
            ).fetchone()
        return skill_from_row(row) if row else None

    def try_acquire_reclustering_lock(
        self, skill_id: str, lock_timeout_ms: int
    ) -> List[Skill]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM try_acquire_reclustering_lock(%s, %s)",
                (skill_id, lock_timeout_ms),
            ).fetchall()
        return [skill_from_row(row) for row in rows]

    def increment_skill_total_requests(self, skill_id: str) -> Optional[Skill]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM increment_skill_total_requests(%s)", (skill_id,)
                ).fetchone()
        except errors.NoDataFound:
            return None
        return skill_from_row(row)

    # ------------------------------------------------------------------
    # Skill configurations
    # ------------------------------------------------------------------

    def create_skill_configuration(
        self,
        skill_id: str,
        data: VersionedConfigurationData,
        *,
        agent_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> SkillConfiguration:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO skill_configurations (agent_id, skill_id, description, data)
                    SELECT COALESCE(%s::uuid, s.agent_id), s.id, %s, %s::jsonb
                    FROM skills s WHERE s.id = %s
                    RETURNING *
                    """,
                    (agent_id, description, json.dumps(data.to_payload()), skill_id),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("skill missing", {"skill_id": skill_id}) from exc
        if not row:
            raise ConstraintViolation("skill missing", {"skill_id": skill_id})
        return configuration_from_row(row)

    def get_skill_configuration(self, configuration_id: str) -> Optional[SkillConfiguration]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM skill_configurations WHERE id = %s", (configuration_id,)
            ).fetchone()
        return configuration_from_row(row) if row else None

    def list_skill_configurations(self, skill_id: str) -> List[SkillConfiguration]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM skill_configurations WHERE skill_id = %s ORDER BY created_at DESC",
                (skill_id,),
            ).fetchall()
        return [configuration_from_row(row) for row in rows]

    def update_skill_configuration(
        self,
        configuration_id: str,
        *,
        description: Optional[str] = None,
        data: Optional[VersionedConfigurationData] = None,
        expected_hash: Optional[str] = None,
    ) -> Optional[SkillConfiguration]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE skill_configurations
                SET description = COALESCE(%s, description),
                    data = COALESCE(%s::jsonb, data)
                WHERE id = %s
                  AND (%s::text IS NULL OR data->'current'->>'hash' = %s)
                RETURNING *
                """,
                (
                    description,
                    json.dumps(data.to_payload()) if data is not None else None,
                    configuration_id,
                    expected_hash,
                    expected_hash,
                ),
            ).fetchone()
            if row is None and expected_hash is not None:
                exists = conn.execute(
                    "SELECT 1 FROM skill_configurations WHERE id = %s", (configuration_id,)
                ).fetchone()
                if exists:
                    raise StaleWriteError(
                        "configuration changed since it was read",
                        {"configuration_id": configuration_id, "expected_hash": expected_hash},
                    )
        return configuration_from_row(row) if row else None

    # ------------------------------------------------------------------
    # Clusters and arms
    # ------------------------------------------------------------------

    def create_skill_optimization_cluster(
        self,
        skill_id: str,
        *,
        name: str,
        centroid: Sequence[float],
        agent_id: Optional[str] = None,
    ) -> SkillOptimizationCluster:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO skill_optimization_clusters (agent_id, skill_id, name, centroid)
                SELECT COALESCE(%s::uuid, s.agent_id), s.id, %s, %s
                FROM skills s WHERE s.id = %s
                RETURNING *
                """,
                (agent_id, name, list(centroid), skill_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("skill missing", {"skill_id": skill_id})
        return cluster_from_row(row)

    def list_skill_optimization_clusters(self, skill_id: str) -> List[SkillOptimizationCluster]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM skill_optimization_clusters WHERE skill_id = %s ORDER BY created_at",
                (skill_id,),
            ).fetchall()
        return [cluster_from_row(row) for row in rows]

    def get_skill_optimization_cluster(self, cluster_id: str) -> Optional[SkillOptimizationCluster]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM skill_optimization_clusters WHERE id = %s", (cluster_id,)
            ).fetchone()
        return cluster_from_row(row) if row else None

    def update_skill_optimization_cluster(
        self,
        cluster_id: str,
        *,
        centroid: Optional[Sequence[float]] = None,
        name: Optional[str] = None,
    ) -> Optional[SkillOptimizationCluster]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE skill_optimization_clusters
                SET centroid = COALESCE(%s, centroid),
                    name = COALESCE(%s, name)
                WHERE id = %s
                RETURNING *
                """,
                (list(centroid) if centroid is not None else None, name, cluster_id),
            ).fetchone()
        return cluster_from_row(row) if row else None

    def increment_cluster_counters(self, cluster_id: str) -> Optional[SkillOptimizationCluster]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM increment_cluster_counters(%s)", (cluster_id,)
                ).fetchone()
        except errors.NoDataFound:
            return None
        return cluster_from_row(row)

    def create_skill_optimization_arm(
        self,
        cluster_id: str,
        *,
        name: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> SkillOptimizationArm:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO skill_optimization_arms (agent_id, skill_id, cluster_id, name, params)
                SELECT c.agent_id, c.skill_id, c.id, %s, %s::jsonb
                FROM skill_optimization_clusters c WHERE c.id = %s
                RETURNING *
                """,
                (name, json.dumps(params or {}), cluster_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("cluster missing", {"cluster_id": cluster_id})
        return arm_from_row(row)

    def get_skill_optimization_arm(self, arm_id: str) -> Optional[SkillOptimizationArm]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM skill_optimization_arms WHERE id = %s", (arm_id,)
            ).fetchone()
        return arm_from_row(row) if row else None

    def list_skill_optimization_arms(
        self, *, skill_id: Optional[str] = None, cluster_id: Optional[str] = None
    ) -> List[SkillOptimizationArm]:
        clauses = []
        params: List[Any] = []
        if skill_id is not None:
            clauses.append("skill_id = %s")
            params.append(skill_id)
        if cluster_id is not None:
            clauses.append("cluster_id = %s")
            params.append(cluster_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM skill_optimization_arms {where} ORDER BY created_at",
                params,
            ).fetchall()
        return [arm_from_row(row) for row in rows]

    def update_arm_and_increment_counters(
        self, arm_id: str, evaluation_results: Sequence[EvaluationResult]
    ) -> Optional[ArmUpdateResult]:
        payload = [result.to_dict() for result in evaluation_results]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT update_arm_and_increment_counters(%s, %s::jsonb) AS result",
                    (arm_id, json.dumps(payload)),
                ).fetchone()
        except errors.NoDataFound:
            return None
        return arm_update_from_payload(row["result"])

    # ------------------------------------------------------------------
    # Skill events
    # ------------------------------------------------------------------

    def create_skill_event(
        self,
        skill_id: str,
        event_type: str,
        *,
        cluster_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        agent_id: Optional[str] = None,
    ) -> SkillEvent:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO skill_events (agent_id, skill_id, cluster_id, event_type, metadata)
                SELECT COALESCE(%s::uuid, s.agent_id), s.id, %s::uuid, %s, %s::jsonb
                FROM skills s WHERE s.id = %s
                RETURNING *
                """,
                (agent_id, cluster_id, event_type, json.dumps(metadata or {}), skill_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("skill missing", {"skill_id": skill_id})
        return skill_event_from_row(row)

    def list_skill_events(self, skill_id: str) -> List[SkillEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM skill_events WHERE skill_id = %s ORDER BY created_at DESC",
                (skill_id,),
            ).fetchall()
        return [skill_event_from_row(row) for row in rows]

    def close(self) -> None:
        self.pool.close()
