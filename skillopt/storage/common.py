"""Row conversion shared between the Postgres and PostgREST backends.

psycopg hands back UUID/datetime/list values while PostgREST hands back JSON
strings; every converter here accepts both.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional

from skillopt.storage.models import (
    ArmStats,
    ArmUpdateResult,
    LockStatus,
    Skill,
    SkillConfiguration,
    SkillEvent,
    SkillOptimizationArm,
    SkillOptimizationCluster,
    VersionedConfigurationData,
    parse_timestamp,
)


def _str_or_none(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _json_value(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def skill_from_row(row: Mapping[str, Any]) -> Skill:
    return Skill(
        id=str(row["id"]),
        agent_id=str(row["agent_id"]),
        name=row["name"],
        description=row.get("description"),
        configuration_count=int(row.get("configuration_count") or 3),
        clustering_interval=int(row.get("clustering_interval") or 15),
        total_requests=int(row.get("total_requests") or 0),
        total_steps=int(row.get("total_steps") or 0),
        last_clustering_at=parse_timestamp(row.get("last_clustering_at")),
        last_clustering_log_start_time=parse_timestamp(
            row.get("last_clustering_log_start_time")
        ),
        metadata=_json_value(row.get("metadata"), {}),
        created_at=parse_timestamp(row.get("created_at")),
        updated_at=parse_timestamp(row.get("updated_at")),
    )


def configuration_from_row(row: Mapping[str, Any]) -> SkillConfiguration:
    return SkillConfiguration(
        id=str(row["id"]),
        skill_id=str(row["skill_id"]),
        agent_id=_str_or_none(row.get("agent_id")),
        description=row.get("description"),
        data=VersionedConfigurationData.from_payload(_json_value(row["data"], {})),
        created_at=parse_timestamp(row.get("created_at")),
        updated_at=parse_timestamp(row.get("updated_at")),
    )


def cluster_from_row(row: Mapping[str, Any]) -> SkillOptimizationCluster:
    return SkillOptimizationCluster(
        id=str(row["id"]),
        skill_id=str(row["skill_id"]),
        agent_id=_str_or_none(row.get("agent_id")),
        name=row.get("name") or "",
        centroid=[float(v) for v in (row.get("centroid") or [])],
        total_steps=int(row.get("total_steps") or 0),
        observability_total_requests=int(row.get("observability_total_requests") or 0),
        created_at=parse_timestamp(row.get("created_at")),
        updated_at=parse_timestamp(row.get("updated_at")),
    )


def arm_stats_from_value(value: Any) -> ArmStats:
    raw: Dict[str, Any] = _json_value(value, {})
    return ArmStats(
        n=int(raw.get("n") or 0),
        mean=float(raw.get("mean") or 0.0),
        n2=float(raw.get("n2") or 0.0),
        total_reward=float(raw.get("total_reward") or 0.0),
    )


def arm_from_row(row: Mapping[str, Any]) -> SkillOptimizationArm:
    return SkillOptimizationArm(
        id=str(row["id"]),
        skill_id=str(row["skill_id"]),
        cluster_id=str(row["cluster_id"]),
        agent_id=_str_or_none(row.get("agent_id")),
        name=row.get("name") or "",
        params=_json_value(row.get("params"), {}),
        stats=arm_stats_from_value(row.get("stats")),
        created_at=parse_timestamp(row.get("created_at")),
        updated_at=parse_timestamp(row.get("updated_at")),
    )


def arm_update_from_payload(payload: Any) -> ArmUpdateResult:
    data = _json_value(payload, {})
    return ArmUpdateResult(
        arm=arm_from_row(data["arm"]),
        cluster=cluster_from_row(data["cluster"]),
        skill=skill_from_row(data["skill"]),
    )


def lock_status_from_row(row: Mapping[str, Any]) -> LockStatus:
    remaining = row.get("time_remaining_seconds")
    return LockStatus(
        is_locked=bool(row.get("is_locked")),
        locked_by=row.get("locked_by"),
        locked_at=parse_timestamp(row.get("locked_at")),
        expires_at=parse_timestamp(row.get("expires_at")),
        time_remaining_seconds=None if remaining is None else int(remaining),
        metadata=_json_value(row.get("metadata"), None),
    )


def skill_event_from_row(row: Mapping[str, Any]) -> SkillEvent:
    return SkillEvent(
        id=str(row["id"]),
        skill_id=str(row["skill_id"]),
        event_type=row["event_type"],
        agent_id=_str_or_none(row.get("agent_id")),
        cluster_id=_str_or_none(row.get("cluster_id")),
        metadata=_json_value(row.get("metadata"), {}),
        created_at=parse_timestamp(row.get("created_at")),
    )
