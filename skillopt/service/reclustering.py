from __future__ import annotations

import inspect
import math
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, Union

from skillopt.logging import get_logger
from skillopt.service.counters import OptimizationCounterCoordinator
from skillopt.service.errors import LockNotAcquiredError, ValidationError
from skillopt.service.locks import LockManager
from skillopt.storage.models import SKILL_EVENT_CLUSTERS_UPDATED, RequestLog, Skill

DEFAULT_GATE_THRESHOLD_MS = 60_000

Centroids = List[List[float]]
ClusterFn = Callable[[List[List[float]], int], Union[Centroids, Awaitable[Centroids]]]
FetchLogsFn = Callable[[Skill], Union[List[RequestLog], Awaitable[List[RequestLog]]]]

STATUS_NOT_DUE = "not_due"
STATUS_GATED = "gated"
STATUS_LOCKED = "locked"
STATUS_RECLUSTERED = "reclustered"
STATUS_FAILED = "failed"


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def recluster_lock_name(skill_id: str) -> str:
    return f"recluster:{skill_id}"


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        return math.inf
    return math.sqrt(sum((x - y) ** 2 for x, y in zip(a, b)))


def extract_embeddings(logs: Iterable[RequestLog]) -> List[List[float]]:
    """Embeddings of the logs that have one; all must share a dimension."""

    embeddings = [list(log.embedding) for log in logs if log.embedding]
    if not embeddings:
        raise ValidationError("no logs with embeddings found")
    dimension = len(embeddings[0])
    if any(len(embedding) != dimension for embedding in embeddings):
        raise ValidationError(
            "inconsistent embedding dimensions", detail={"expected_dimension": dimension}
        )
    return embeddings


def match_centroids(
    existing: Sequence[Sequence[float]], new_centroids: Sequence[Sequence[float]]
) -> List[Optional[int]]:
    """Greedily pair each existing centroid with its nearest unused new one.

    Returns, per existing centroid, the index into ``new_centroids`` or None
    when every new centroid was already taken.
    """

    used: set[int] = set()
    matches: List[Optional[int]] = []
    for centroid in existing:
        best_index: Optional[int] = None
        best_distance = math.inf
        for index, candidate in enumerate(new_centroids):
            if index in used:
                continue
            distance = euclidean_distance(centroid, candidate)
            if best_index is None or distance < best_distance:
                best_index = index
                best_distance = distance
        if best_index is not None:
            used.add(best_index)
        matches.append(best_index)
    return matches


@dataclass
class ReclusteringOutcome:
    status: str
    cluster_count: int = 0
    log_count: int = 0
    duration_ms: int = 0

    @property
    def reclustered(self) -> bool:
        return self.status == STATUS_RECLUSTERED


class ReclusteringGate:
    """Row-level compare-and-swap on ``skills.last_clustering_at``."""

    logger = get_logger(__name__)

    def __init__(self, store) -> None:
        self.store = store

    async def try_acquire(
        self, skill_id: str, lock_threshold_ms: int = DEFAULT_GATE_THRESHOLD_MS
    ) -> Optional[Skill]:
        rows = await _resolve(self.store.try_acquire_reclustering_lock(skill_id, lock_threshold_ms))
        if not rows:
            self.logger.debug("reclustering_gate_closed", skill_id=skill_id)
            return None
        self.logger.debug("reclustering_gate_opened", skill_id=skill_id)
        return rows[0]


class ReclusteringService:
    """Decide when a skill is due for reclustering and apply the new partition.

    The gate keeps the per-request check cheap; the named lock serializes the
    pass itself across instances.
    """

    logger = get_logger(__name__)

    def __init__(
        self,
        store,
        locks: LockManager,
        *,
        gate: Optional[ReclusteringGate] = None,
        counters: Optional[OptimizationCounterCoordinator] = None,
        gate_threshold_ms: int = DEFAULT_GATE_THRESHOLD_MS,
    ) -> None:
        self.store = store
        self.locks = locks
        self.gate = gate or ReclusteringGate(store)
        self.counters = counters or OptimizationCounterCoordinator(store)
        self.gate_threshold_ms = gate_threshold_ms

    @staticmethod
    def pending_logs(skill: Skill, logs: Iterable[RequestLog]) -> List[RequestLog]:
        """Logs with an embedding recorded after the last clustered log."""
        since = skill.last_clustering_log_start_time
        return [
            log
            for log in logs
            if log.embedding and (since is None or log.start_time > since)
        ]

    def is_due(self, skill: Skill, logs: Iterable[RequestLog]) -> bool:
        return len(self.pending_logs(skill, logs)) >= skill.clustering_interval

    async def maybe_recluster(
        self, skill: Skill, logs: Iterable[RequestLog], cluster_fn: ClusterFn
    ) -> ReclusteringOutcome:
        pending = self.pending_logs(skill, logs)
        if len(pending) < skill.clustering_interval:
            return ReclusteringOutcome(status=STATUS_NOT_DUE, log_count=len(pending))

        started = time.monotonic()
        gated = await self.gate.try_acquire(skill.id, self.gate_threshold_ms)
        if gated is None:
            self.logger.info(
                "reclustering_gated",
                skill_id=skill.id,
                last_clustering_at=skill.last_clustering_at.isoformat()
                if skill.last_clustering_at
                else None,
            )
            return ReclusteringOutcome(status=STATUS_GATED, log_count=len(pending))

        self.logger.info("reclustering_started", skill_id=skill.id, log_count=len(pending))
        try:
            cluster_count = await self.locks.with_lock(
                recluster_lock_name(skill.id),
                lambda: self._recluster(gated, pending, cluster_fn),
                metadata={"skill_id": skill.id, "log_count": len(pending)},
            )
        except LockNotAcquiredError:
            self.logger.info("reclustering_locked", skill_id=skill.id)
            return ReclusteringOutcome(status=STATUS_LOCKED, log_count=len(pending))
        except Exception as exc:
            # with_lock has already released the named lock
            duration_ms = int((time.monotonic() - started) * 1000)
            self.logger.error(
                "reclustering_failed",
                skill_id=skill.id,
                log_count=len(pending),
                duration_ms=duration_ms,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return ReclusteringOutcome(
                status=STATUS_FAILED, log_count=len(pending), duration_ms=duration_ms
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        self.logger.info(
            "reclustering_completed",
            skill_id=skill.id,
            cluster_count=cluster_count,
            log_count=len(pending),
            duration_ms=duration_ms,
        )
        return ReclusteringOutcome(
            status=STATUS_RECLUSTERED,
            cluster_count=cluster_count,
            log_count=len(pending),
            duration_ms=duration_ms,
        )

    async def _recluster(
        self, skill: Skill, logs: List[RequestLog], cluster_fn: ClusterFn
    ) -> int:
        embeddings = extract_embeddings(logs)
        k = skill.configuration_count
        new_centroids = [list(c) for c in await _resolve(cluster_fn(embeddings, k))]
        existing = await _resolve(self.store.list_skill_optimization_clusters(skill.id))

        if not existing:
            for index, centroid in enumerate(new_centroids):
                await _resolve(
                    self.store.create_skill_optimization_cluster(
                        skill.id,
                        name=str(index + 1),
                        centroid=centroid,
                        agent_id=skill.agent_id,
                    )
                )
            cluster_count = len(new_centroids)
        else:
            matches = match_centroids([c.centroid for c in existing], new_centroids)
            for cluster, match in zip(existing, matches):
                if match is None:
                    continue
                await _resolve(
                    self.store.update_skill_optimization_cluster(
                        cluster.id, centroid=new_centroids[match]
                    )
                )
            cluster_count = len(existing)

        newest = max(logs, key=lambda log: log.start_time)
        await _resolve(
            self.store.update_skill(skill.id, last_clustering_log_start_time=newest.start_time)
        )
        await _resolve(
            self.store.create_skill_event(
                skill.id,
                SKILL_EVENT_CLUSTERS_UPDATED,
                cluster_id=None,
                metadata={"cluster_count": cluster_count, "log_count": len(logs)},
                agent_id=skill.agent_id,
            )
        )
        return cluster_count

    async def handle_request(
        self, skill_id: str, fetch_logs: FetchLogsFn, cluster_fn: ClusterFn
    ) -> ReclusteringOutcome:
        """Count one inbound request for the skill, then recluster if due."""

        skill = await self.counters.increment_skill_total_requests(skill_id)
        logs = await _resolve(fetch_logs(skill))
        return await self.maybe_recluster(skill, logs, cluster_fn)
