from __future__ import annotations

import inspect
import math
from typing import Any, Iterable, List, Mapping, Union

from skillopt.logging import get_logger
from skillopt.service.errors import NotFoundError, ValidationError
from skillopt.storage.models import (
    ArmUpdateResult,
    EvaluationResult,
    Skill,
    SkillOptimizationCluster,
)

EvaluationInput = Union[EvaluationResult, Mapping[str, Any]]


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def normalize_evaluation_results(results: Iterable[EvaluationInput]) -> List[EvaluationResult]:
    """Coerce ``{evaluation_id, score}`` mappings into :class:`EvaluationResult`."""

    normalized: List[EvaluationResult] = []
    for item in results:
        if isinstance(item, EvaluationResult):
            result = item
        elif isinstance(item, Mapping):
            if "evaluation_id" not in item or "score" not in item:
                raise ValidationError(
                    "evaluation result requires evaluation_id and score",
                    detail={"result": dict(item)},
                )
            try:
                score = float(item["score"])
            except (TypeError, ValueError) as exc:
                raise ValidationError(
                    "evaluation score must be numeric",
                    detail={"evaluation_id": str(item["evaluation_id"])},
                ) from exc
            result = EvaluationResult(evaluation_id=str(item["evaluation_id"]), score=score)
        else:
            raise ValidationError("evaluation result must be an object")
        if not math.isfinite(result.score):
            raise ValidationError(
                "evaluation score must be finite",
                detail={"evaluation_id": result.evaluation_id},
            )
        normalized.append(result)
    return normalized


class OptimizationCounterCoordinator:
    """Thin wrappers over the store's atomic counter operations.

    Each call is one atomic step on the store. Nothing here retries: a blind
    retry of a non-idempotent increment would double-count.
    """

    logger = get_logger(__name__)

    def __init__(self, store) -> None:
        self.store = store

    async def increment_skill_total_requests(self, skill_id: str) -> Skill:
        skill = await _resolve(self.store.increment_skill_total_requests(skill_id))
        if skill is None:
            raise NotFoundError("skill not found", detail={"skill_id": skill_id})
        self.logger.debug(
            "skill_requests_incremented", skill_id=skill_id, total_requests=skill.total_requests
        )
        return skill

    async def increment_cluster_counters(self, cluster_id: str) -> SkillOptimizationCluster:
        cluster = await _resolve(self.store.increment_cluster_counters(cluster_id))
        if cluster is None:
            raise NotFoundError("cluster not found", detail={"cluster_id": cluster_id})
        self.logger.debug(
            "cluster_counters_incremented", cluster_id=cluster_id, total_steps=cluster.total_steps
        )
        return cluster

    async def update_arm_and_increment_counters(
        self, arm_id: str, evaluation_results: Iterable[EvaluationInput]
    ) -> ArmUpdateResult:
        """Fold one evaluated batch into the arm and advance its cluster and skill.

        The whole batch counts as a single step whose reward is the mean score.
        """

        results = normalize_evaluation_results(evaluation_results)
        if not results:
            raise ValidationError("evaluation_results must not be empty", detail={"arm_id": arm_id})
        update = await _resolve(self.store.update_arm_and_increment_counters(arm_id, results))
        if update is None:
            raise NotFoundError("arm not found", detail={"arm_id": arm_id})
        self.logger.info(
            "arm_statistics_updated",
            arm_id=arm_id,
            cluster_id=update.cluster.id,
            skill_id=update.skill.id,
            evaluations=len(results),
            arm_n=update.arm.stats.n,
            arm_mean=update.arm.stats.mean,
        )
        return update
