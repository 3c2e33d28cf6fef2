from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from skillopt.logging import get_logger
from skillopt.storage.errors import ConstraintViolation, StaleWriteError
from skillopt.storage.models import (
    ArmStats,
    ArmUpdateResult,
    EvaluationResult,
    LockStatus,
    OptimizerLock,
    Skill,
    SkillConfiguration,
    SkillEvent,
    SkillOptimizationArm,
    SkillOptimizationCluster,
    VersionedConfigurationData,
    batch_reward,
    utcnow,
)

_SKILL_FIELDS = {
    "name",
    "description",
    "configuration_count",
    "clustering_interval",
    "last_clustering_at",
    "last_clustering_log_start_time",
    "metadata",
}


class MemoryStore:
    """In-process store with the same atomic operations as the SQL schema.

    Every public method runs under one re-entrant lock, so each call is a
    single atomic step for all threads and coroutines of this process. It
    gives no cross-process guarantees and is meant for tests and
    single-instance development.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.logger = get_logger(__name__)
        self.clock = clock
        self.locks: Dict[str, OptimizerLock] = {}
        self.skills: Dict[str, Skill] = {}
        self.configurations: Dict[str, SkillConfiguration] = {}
        self.clusters: Dict[str, SkillOptimizationCluster] = {}
        self.arms: Dict[str, SkillOptimizationArm] = {}
        self.events: Dict[str, SkillEvent] = {}
        self._data_lock = threading.RLock()

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
        with self._data_lock:
            now = self.clock()
            existing = self.locks.get(lock_name)
            if existing and not existing.is_expired(now):
                return False
            self.locks[lock_name] = OptimizerLock(
                lock_name=lock_name,
                locked_by=locked_by,
                locked_at=now,
                expires_at=now + timedelta(seconds=timeout_seconds),
                metadata=dict(metadata or {}),
            )
            return True

    def release_optimizer_lock(self, lock_name: str, locked_by: str) -> bool:
        with self._data_lock:
            existing = self.locks.get(lock_name)
            if not existing or existing.locked_by != locked_by:
                return False
            del self.locks[lock_name]
            return True

    def check_optimizer_lock(self, lock_name: str) -> List[LockStatus]:
        with self._data_lock:
            now = self.clock()
            existing = self.locks.get(lock_name)
            if not existing or existing.is_expired(now):
                return []
            return [LockStatus.from_lock(existing, now)]

    def cleanup_expired_optimizer_locks(self) -> int:
        with self._data_lock:
            now = self.clock()
            expired = [name for name, lock in self.locks.items() if lock.is_expired(now)]
            for name in expired:
                del self.locks[name]
            if expired:
                self.logger.debug("optimizer_locks_swept", count=len(expired))
            return len(expired)

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
        skill_id: Optional[str] = None,
    ) -> Skill:
        with self._data_lock:
            if any(s.agent_id == agent_id and s.name == name for s in self.skills.values()):
                raise ConstraintViolation(
                    "skill name already exists for agent",
                    {"agent_id": agent_id, "name": name},
                )
            now = self.clock()
            skill = Skill(
                id=skill_id or str(uuid.uuid4()),
                agent_id=agent_id,
                name=name,
                description=description,
                configuration_count=configuration_count,
                clustering_interval=clustering_interval,
                metadata=dict(metadata or {}),
                created_at=now,
                updated_at=now,
            )
            self.skills[skill.id] = skill
            return copy.deepcopy(skill)

    def get_skill(self, skill_id: str) -> Optional[Skill]:
        with self._data_lock:
            skill = self.skills.get(skill_id)
            return copy.deepcopy(skill) if skill else None

    def update_skill(self, skill_id: str, **fields: Any) -> Optional[Skill]:
        unknown = set(fields) - _SKILL_FIELDS
        if unknown:
            raise ValueError(f"unsupported skill fields: {sorted(unknown)}")
        with self._data_lock:
            skill = self.skills.get(skill_id)
            if not skill:
                return None
            for name, value in fields.items():
                setattr(skill, name, value)
            skill.updated_at = self.clock()
            return copy.deepcopy(skill)

    def try_acquire_reclustering_lock(
        self, skill_id: str, lock_timeout_ms: int
    ) -> List[Skill]:
        with self._data_lock:
            skill = self.skills.get(skill_id)
            if not skill:
                return []
            now = self.clock()
            last = skill.last_clustering_at
            if last is not None and now - last <= timedelta(milliseconds=lock_timeout_ms):
                return []
            skill.last_clustering_at = now
            skill.updated_at = now
            return [copy.deepcopy(skill)]

    def increment_skill_total_requests(self, skill_id: str) -> Optional[Skill]:
        with self._data_lock:
            skill = self.skills.get(skill_id)
            if not skill:
                return None
            skill.total_requests += 1
            skill.updated_at = self.clock()
            return copy.deepcopy(skill)

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
        with self._data_lock:
            skill = self.skills.get(skill_id)
            if skill is None:
                raise ConstraintViolation("skill missing", {"skill_id": skill_id})
            now = self.clock()
            configuration = SkillConfiguration(
                id=str(uuid.uuid4()),
                skill_id=skill_id,
                agent_id=agent_id or skill.agent_id,
                description=description,
                data=copy.deepcopy(data),
                created_at=now,
                updated_at=now,
            )
            self.configurations[configuration.id] = configuration
            return copy.deepcopy(configuration)

    def get_skill_configuration(self, configuration_id: str) -> Optional[SkillConfiguration]:
        with self._data_lock:
            configuration = self.configurations.get(configuration_id)
            return copy.deepcopy(configuration) if configuration else None

    def list_skill_configurations(self, skill_id: str) -> List[SkillConfiguration]:
        with self._data_lock:
            rows = [c for c in self.configurations.values() if c.skill_id == skill_id]
            rows.sort(key=lambda c: c.created_at, reverse=True)
            return copy.deepcopy(rows)

    def update_skill_configuration(
        self,
        configuration_id: str,
        *,
        description: Optional[str] = None,
        data: Optional[VersionedConfigurationData] = None,
        expected_hash: Optional[str] = None,
    ) -> Optional[SkillConfiguration]:
        with self._data_lock:
            configuration = self.configurations.get(configuration_id)
            if not configuration:
                return None
            if expected_hash is not None and configuration.data.current.hash != expected_hash:
                raise StaleWriteError(
                    "configuration changed since it was read",
                    {"configuration_id": configuration_id, "expected_hash": expected_hash},
                )
            if description is not None:
                configuration.description = description
            if data is not None:
                configuration.data = copy.deepcopy(data)
            configuration.updated_at = self.clock()
            return copy.deepcopy(configuration)

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
        with self._data_lock:
            skill = self.skills.get(skill_id)
            if skill is None:
                raise ConstraintViolation("skill missing", {"skill_id": skill_id})
            now = self.clock()
            cluster = SkillOptimizationCluster(
                id=str(uuid.uuid4()),
                skill_id=skill_id,
                agent_id=agent_id or skill.agent_id,
                name=name,
                centroid=list(centroid),
                created_at=now,
                updated_at=now,
            )
            self.clusters[cluster.id] = cluster
            return copy.deepcopy(cluster)

    def list_skill_optimization_clusters(self, skill_id: str) -> List[SkillOptimizationCluster]:
        with self._data_lock:
            rows = [c for c in self.clusters.values() if c.skill_id == skill_id]
            rows.sort(key=lambda c: c.created_at)
            return copy.deepcopy(rows)

    def get_skill_optimization_cluster(self, cluster_id: str) -> Optional[SkillOptimizationCluster]:
        with self._data_lock:
            cluster = self.clusters.get(cluster_id)
            return copy.deepcopy(cluster) if cluster else None

    def update_skill_optimization_cluster(
        self,
        cluster_id: str,
        *,
        centroid: Optional[Sequence[float]] = None,
        name: Optional[str] = None,
    ) -> Optional[SkillOptimizationCluster]:
        with self._data_lock:
            cluster = self.clusters.get(cluster_id)
            if not cluster:
                return None
            if centroid is not None:
                cluster.centroid = list(centroid)
            if name is not None:
                cluster.name = name
            cluster.updated_at = self.clock()
            return copy.deepcopy(cluster)

    def increment_cluster_counters(self, cluster_id: str) -> Optional[SkillOptimizationCluster]:
        with self._data_lock:
            cluster = self.clusters.get(cluster_id)
            if not cluster:
                return None
            cluster.total_steps += 1
            cluster.updated_at = self.clock()
            return copy.deepcopy(cluster)

    def create_skill_optimization_arm(
        self,
        cluster_id: str,
        *,
        name: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> SkillOptimizationArm:
        with self._data_lock:
            cluster = self.clusters.get(cluster_id)
            if cluster is None:
                raise ConstraintViolation("cluster missing", {"cluster_id": cluster_id})
            now = self.clock()
            arm = SkillOptimizationArm(
                id=str(uuid.uuid4()),
                skill_id=cluster.skill_id,
                cluster_id=cluster_id,
                agent_id=cluster.agent_id,
                name=name,
                params=dict(params or {}),
                stats=ArmStats(),
                created_at=now,
                updated_at=now,
            )
            self.arms[arm.id] = arm
            return copy.deepcopy(arm)

    def get_skill_optimization_arm(self, arm_id: str) -> Optional[SkillOptimizationArm]:
        with self._data_lock:
            arm = self.arms.get(arm_id)
            return copy.deepcopy(arm) if arm else None

    def list_skill_optimization_arms(
        self, *, skill_id: Optional[str] = None, cluster_id: Optional[str] = None
    ) -> List[SkillOptimizationArm]:
        with self._data_lock:
            rows = [
                a
                for a in self.arms.values()
                if (skill_id is None or a.skill_id == skill_id)
                and (cluster_id is None or a.cluster_id == cluster_id)
            ]
            rows.sort(key=lambda a: a.created_at)
            return copy.deepcopy(rows)

    def update_arm_and_increment_counters(
        self, arm_id: str, evaluation_results: Sequence[EvaluationResult]
    ) -> Optional[ArmUpdateResult]:
        results = list(evaluation_results)
        if not results:
            raise ValueError("evaluation_results must not be empty")
        with self._data_lock:
            arm = self.arms.get(arm_id)
            if not arm:
                return None
            cluster = self.clusters.get(arm.cluster_id)
            skill = self.skills.get(arm.skill_id)
            if cluster is None or skill is None:
                raise ConstraintViolation(
                    "arm references a missing cluster or skill",
                    {"arm_id": arm_id, "cluster_id": arm.cluster_id, "skill_id": arm.skill_id},
                )
            now = self.clock()
            arm.stats = arm.stats.with_reward(batch_reward(results))
            arm.updated_at = now
            cluster.total_steps += 1
            cluster.updated_at = now
            skill.total_steps += 1
            skill.updated_at = now
            return ArmUpdateResult(
                arm=copy.deepcopy(arm),
                cluster=copy.deepcopy(cluster),
                skill=copy.deepcopy(skill),
            )

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
        with self._data_lock:
            skill = self.skills.get(skill_id)
            if skill is None:
                raise ConstraintViolation("skill missing", {"skill_id": skill_id})
            event = SkillEvent(
                id=str(uuid.uuid4()),
                skill_id=skill_id,
                event_type=event_type,
                agent_id=agent_id or skill.agent_id,
                cluster_id=cluster_id,
                metadata=copy.deepcopy(metadata or {}),
                created_at=self.clock(),
            )
            self.events[event.id] = event
            return copy.deepcopy(event)

    def list_skill_events(self, skill_id: str) -> List[SkillEvent]:
        with self._data_lock:
            rows = [e for e in self.events.values() if e.skill_id == skill_id]
            rows.sort(key=lambda e: e.created_at, reverse=True)
            return copy.deepcopy(rows)

    def close(self) -> None:
        return None
