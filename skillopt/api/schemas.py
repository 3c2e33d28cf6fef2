from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from skillopt.storage.models import (
    ArmUpdateResult,
    Skill,
    SkillConfiguration,
    SkillOptimizationArm,
    SkillOptimizationCluster,
    format_timestamp,
)

# Upper bound on one evaluated batch
MAX_EVALUATION_RESULTS = 1000

_VALID_ERROR_CODES = frozenset({
    "not_found",
    "validation_error",
    "conflict",
    "lock_not_acquired",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class ConfigurationCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    params: Dict[str, Any]
    description: Optional[str] = Field(default=None, max_length=2000)


class ConfigurationUpdateRequest(BaseModel):
    """Omitting ``params`` changes only the description."""

    model_config = ConfigDict(extra="forbid")

    params: Optional[Dict[str, Any]] = None
    description: Optional[str] = Field(default=None, max_length=2000)


class EvaluationResultIn(BaseModel):
    evaluation_id: str = Field(..., min_length=1)
    score: float = Field(..., allow_inf_nan=False)


class EvaluationBatchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    evaluation_results: List[EvaluationResultIn] = Field(
        ..., min_length=1, max_length=MAX_EVALUATION_RESULTS
    )


def _ts(value: Optional[datetime]) -> Optional[str]:
    return format_timestamp(value)


def configuration_payload(configuration: SkillConfiguration) -> Dict[str, Any]:
    return {
        "id": configuration.id,
        "skill_id": configuration.skill_id,
        "agent_id": configuration.agent_id,
        "description": configuration.description,
        "data": configuration.data.to_payload(),
        "created_at": _ts(configuration.created_at),
        "updated_at": _ts(configuration.updated_at),
    }


def skill_payload(skill: Skill) -> Dict[str, Any]:
    return {
        "id": skill.id,
        "agent_id": skill.agent_id,
        "name": skill.name,
        "description": skill.description,
        "configuration_count": skill.configuration_count,
        "clustering_interval": skill.clustering_interval,
        "total_requests": skill.total_requests,
        "total_steps": skill.total_steps,
        "last_clustering_at": _ts(skill.last_clustering_at),
        "last_clustering_log_start_time": _ts(skill.last_clustering_log_start_time),
        "metadata": skill.metadata,
        "created_at": _ts(skill.created_at),
        "updated_at": _ts(skill.updated_at),
    }


def cluster_payload(cluster: SkillOptimizationCluster) -> Dict[str, Any]:
    return {
        "id": cluster.id,
        "skill_id": cluster.skill_id,
        "agent_id": cluster.agent_id,
        "name": cluster.name,
        "centroid": cluster.centroid,
        "total_steps": cluster.total_steps,
        "observability_total_requests": cluster.observability_total_requests,
        "created_at": _ts(cluster.created_at),
        "updated_at": _ts(cluster.updated_at),
    }


def arm_payload(arm: SkillOptimizationArm) -> Dict[str, Any]:
    return {
        "id": arm.id,
        "skill_id": arm.skill_id,
        "cluster_id": arm.cluster_id,
        "agent_id": arm.agent_id,
        "name": arm.name,
        "params": arm.params,
        "stats": arm.stats.to_dict(),
        "created_at": _ts(arm.created_at),
        "updated_at": _ts(arm.updated_at),
    }


def arm_update_payload(update: ArmUpdateResult) -> Dict[str, Any]:
    return {
        "arm": arm_payload(update.arm),
        "cluster": cluster_payload(update.cluster),
        "skill": skill_payload(update.skill),
    }
