from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pydantic import BaseModel, ConfigDict, StrictBool, StrictInt, TypeAdapter

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
from skillopt.storage.errors import (
    ConstraintViolation,
    RpcError,
    RpcResponseError,
    StaleWriteError,
)
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
    format_timestamp,
)

logger = get_logger(__name__)


class _Row(BaseModel):
    model_config = ConfigDict(extra="allow")


class LockStatusRow(BaseModel):
    is_locked: StrictBool
    locked_by: Optional[str] = None
    locked_at: Optional[str] = None
    expires_at: Optional[str] = None
    time_remaining_seconds: Optional[float] = None
    metadata: Optional[Dict[str, Any]] = None


class SkillRow(_Row):
    id: str
    agent_id: str
    name: str


class ClusterRow(_Row):
    id: str
    skill_id: str


class ArmRow(_Row):
    id: str
    skill_id: str
    cluster_id: str


class ConfigurationRow(_Row):
    id: str
    skill_id: str
    data: Dict[str, Any]


class SkillEventRow(_Row):
    id: str
    skill_id: str
    event_type: str


class ArmUpdatePayload(BaseModel):
    arm: ArmRow
    cluster: ClusterRow
    skill: SkillRow


_BOOL = TypeAdapter(StrictBool)
_INT = TypeAdapter(StrictInt)
_LOCK_STATUS_ROWS = TypeAdapter(List[LockStatusRow])
_SKILL = TypeAdapter(SkillRow)
_SKILL_ROWS = TypeAdapter(List[SkillRow])
_CLUSTER = TypeAdapter(ClusterRow)
_CLUSTER_ROWS = TypeAdapter(List[ClusterRow])
_ARM_ROWS = TypeAdapter(List[ArmRow])
_CONFIGURATION_ROWS = TypeAdapter(List[ConfigurationRow])
_ARM_UPDATE = TypeAdapter(ArmUpdatePayload)
_SKILL_EVENT_ROWS = TypeAdapter(List[SkillEventRow])


def _error_code(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    return body.get("code") if isinstance(body, dict) else None


class PostgrestStore:
    """Store speaking to Postgres through a PostgREST gateway.

    Coordination steps are ``POST /rpc/<name>`` calls to the stored procedures
    of ``sql/coordination_schema.sql``; plain reads and writes use PostgREST
    table filters.
    """

    def __init__(
        self,
        base_url: Optional[str],
        service_role_key: Optional[str],
        *,
        api_key: Optional[str] = None,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not base_url:
            raise RuntimeError("POSTGREST_URL is not set")
        if not service_role_key:
            raise RuntimeError("POSTGREST_SERVICE_ROLE_KEY is not set")
        headers = {"Authorization": f"Bearer {service_role_key}"}
        if api_key:
            headers["apikey"] = api_key
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Transport helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse(operation: str, response: httpx.Response, adapter: TypeAdapter) -> Any:
        if response.is_error:
            raise RpcError(
                operation,
                response.status_code,
                response.text,
                code=_error_code(response),
            )
        try:
            return adapter.validate_python(response.json())
        except ValueError as exc:
            # json.JSONDecodeError and pydantic.ValidationError are both ValueErrors
            raise RpcResponseError(operation, str(exc)) from exc

    async def _rpc(self, function_name: str, params: Dict[str, Any], adapter: TypeAdapter) -> Any:
        response = await self._client.post(f"/rpc/{function_name}", json=params)
        return self._parse(f"rpc/{function_name}", response, adapter)

    async def _select(self, table: str, params: Dict[str, str], adapter: TypeAdapter) -> Any:
        response = await self._client.get(f"/{table}", params=params)
        return self._parse(f"select {table}", response, adapter)

    async def _insert(self, table: str, data: Dict[str, Any], adapter: TypeAdapter) -> Any:
        response = await self._client.post(
            f"/{table}",
            content=json.dumps(data),
            headers={"Content-Type": "application/json", "Prefer": "return=representation"},
        )
        if response.status_code == 409:
            raise ConstraintViolation(f"{table} constraint violated", {"body": response.text})
        return self._parse(f"insert {table}", response, adapter)

    async def _update(
        self,
        table: str,
        row_id: str,
        data: Dict[str, Any],
        adapter: TypeAdapter,
        filters: Optional[Dict[str, str]] = None,
    ) -> Any:
        response = await self._client.patch(
            f"/{table}",
            params={"id": f"eq.{row_id}", **(filters or {})},
            content=json.dumps(data),
            headers={"Content-Type": "application/json", "Prefer": "return=representation"},
        )
        return self._parse(f"update {table}", response, adapter)

    # ------------------------------------------------------------------
    # Named optimizer locks
    # ------------------------------------------------------------------

    async def acquire_optimizer_lock(
        self,
        lock_name: str,
        locked_by: str,
        timeout_seconds: int = 300,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return await self._rpc(
            "acquire_optimizer_lock",
            {
                "p_lock_name": lock_name,
                "p_locked_by": locked_by,
                "p_timeout_seconds": timeout_seconds,
                "p_metadata": metadata or {},
            },
            _BOOL,
        )

    async def release_optimizer_lock(self, lock_name: str, locked_by: str) -> bool:
        return await self._rpc(
            "release_optimizer_lock",
            {"p_lock_name": lock_name, "p_locked_by": locked_by},
            _BOOL,
        )

    async def check_optimizer_lock(self, lock_name: str) -> List[LockStatus]:
        rows = await self._rpc(
            "check_optimizer_lock", {"p_lock_name": lock_name}, _LOCK_STATUS_ROWS
        )
        return [lock_status_from_row(row.model_dump()) for row in rows]

    async def cleanup_expired_optimizer_locks(self) -> int:
        return await self._rpc("cleanup_expired_optimizer_locks", {}, _INT)

    # ------------------------------------------------------------------
    # Skills and the reclustering gate
    # ------------------------------------------------------------------

    async def create_skill(
        self,
        agent_id: str,
        name: str,
        *,
        description: Optional[str] = None,
        configuration_count: int = 3,
        clustering_interval: int = 15,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Skill:
        rows = await self._insert(
            "skills",
            {
                "agent_id": agent_id,
                "name": name,
                "description": description,
                "configuration_count": configuration_count,
                "clustering_interval": clustering_interval,
                "metadata": metadata or {},
            },
            _SKILL_ROWS,
        )
        return skill_from_row(rows[0].model_dump())

    async def get_skill(self, skill_id: str) -> Optional[Skill]:
        rows = await self._select("skills", {"id": f"eq.{skill_id}"}, _SKILL_ROWS)
        return skill_from_row(rows[0].model_dump()) if rows else None

    async def update_skill(self, skill_id: str, **fields: Any) -> Optional[Skill]:
        body = {
            key: format_timestamp(value) if hasattr(value, "isoformat") else value
            for key, value in fields.items()
        }
        rows = await self._update("skills", skill_id, body, _SKILL_ROWS)
        return skill_from_row(rows[0].model_dump()) if rows else None

    async def try_acquire_reclustering_lock(
        self, skill_id: str, lock_timeout_ms: int
    ) -> List[Skill]:
        rows = await self._rpc(
            "try_acquire_reclustering_lock",
            {"p_skill_id": skill_id, "p_lock_timeout_ms": lock_timeout_ms},
            _SKILL_ROWS,
        )
        return [skill_from_row(row.model_dump()) for row in rows]

    async def increment_skill_total_requests(self, skill_id: str) -> Optional[Skill]:
        try:
            row = await self._rpc(
                "increment_skill_total_requests", {"p_skill_id": skill_id}, _SKILL
            )
        except RpcError as exc:
            if exc.is_not_found:
                return None
            raise
        return skill_from_row(row.model_dump())

    # ------------------------------------------------------------------
    # Skill configurations
    # ------------------------------------------------------------------

    async def create_skill_configuration(
        self,
        skill_id: str,
        data: VersionedConfigurationData,
        *,
        agent_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> SkillConfiguration:
        if agent_id is None:
            skill = await self.get_skill(skill_id)
            if skill is None:
                raise ConstraintViolation("skill missing", {"skill_id": skill_id})
            agent_id = skill.agent_id
        rows = await self._insert(
            "skill_configurations",
            {
                "agent_id": agent_id,
                "skill_id": skill_id,
                "description": description,
                "data": data.to_payload(),
            },
            _CONFIGURATION_ROWS,
        )
        return configuration_from_row(rows[0].model_dump())

    async def get_skill_configuration(self, configuration_id: str) -> Optional[SkillConfiguration]:
        rows = await self._select(
            "skill_configurations", {"id": f"eq.{configuration_id}"}, _CONFIGURATION_ROWS
        )
        return configuration_from_row(rows[0].model_dump()) if rows else None

    async def list_skill_configurations(self, skill_id: str) -> List[SkillConfiguration]:
        rows = await self._select(
            "skill_configurations",
            {"skill_id": f"eq.{skill_id}", "order": "created_at.desc"},
            _CONFIGURATION_ROWS,
        )
        return [configuration_from_row(row.model_dump()) for row in rows]

    async def update_skill_configuration(
        self,
        configuration_id: str,
        *,
        description: Optional[str] = None,
        data: Optional[VersionedConfigurationData] = None,
        expected_hash: Optional[str] = None,
    ) -> Optional[SkillConfiguration]:
        body: Dict[str, Any] = {}
        if description is not None:
            body["description"] = description
        if data is not None:
            body["data"] = data.to_payload()
        if not body:
            return await self.get_skill_configuration(configuration_id)
        filters = {}
        if expected_hash is not None:
            filters["data->current->>hash"] = f"eq.{expected_hash}"
        rows = await self._update(
            "skill_configurations", configuration_id, body, _CONFIGURATION_ROWS, filters
        )
        if not rows and expected_hash is not None:
            if await self.get_skill_configuration(configuration_id) is not None:
                raise StaleWriteError(
                    "configuration changed since it was read",
                    {"configuration_id": configuration_id, "expected_hash": expected_hash},
                )
        return configuration_from_row(rows[0].model_dump()) if rows else None

    # ------------------------------------------------------------------
    # Clusters and arms
    # ------------------------------------------------------------------

    async def create_skill_optimization_cluster(
        self,
        skill_id: str,
        *,
        name: str,
        centroid: Sequence[float],
        agent_id: Optional[str] = None,
    ) -> SkillOptimizationCluster:
        if agent_id is None:
            skill = await self.get_skill(skill_id)
            if skill is None:
                raise ConstraintViolation("skill missing", {"skill_id": skill_id})
            agent_id = skill.agent_id
        rows = await self._insert(
            "skill_optimization_clusters",
            {
                "agent_id": agent_id,
                "skill_id": skill_id,
                "name": name,
                "centroid": list(centroid),
                "total_steps": 0,
                "observability_total_requests": 0,
            },
            _CLUSTER_ROWS,
        )
        return cluster_from_row(rows[0].model_dump())

    async def list_skill_optimization_clusters(self, skill_id: str) -> List[SkillOptimizationCluster]:
        rows = await self._select(
            "skill_optimization_clusters",
            {"skill_id": f"eq.{skill_id}", "order": "created_at.asc"},
            _CLUSTER_ROWS,
        )
        return [cluster_from_row(row.model_dump()) for row in rows]

    async def get_skill_optimization_cluster(self, cluster_id: str) -> Optional[SkillOptimizationCluster]:
        rows = await self._select(
            "skill_optimization_clusters", {"id": f"eq.{cluster_id}"}, _CLUSTER_ROWS
        )
        return cluster_from_row(rows[0].model_dump()) if rows else None

    async def update_skill_optimization_cluster(
        self,
        cluster_id: str,
        *,
        centroid: Optional[Sequence[float]] = None,
        name: Optional[str] = None,
    ) -> Optional[SkillOptimizationCluster]:
        body: Dict[str, Any] = {}
        if centroid is not None:
            body["centroid"] = list(centroid)
        if name is not None:
            body["name"] = name
        if not body:
            return await self.get_skill_optimization_cluster(cluster_id)
        rows = await self._update("skill_optimization_clusters", cluster_id, body, _CLUSTER_ROWS)
        return cluster_from_row(rows[0].model_dump()) if rows else None

    async def increment_cluster_counters(self, cluster_id: str) -> Optional[SkillOptimizationCluster]:
        try:
            row = await self._rpc(
                "increment_cluster_counters", {"p_cluster_id": cluster_id}, _CLUSTER
            )
        except RpcError as exc:
            if exc.is_not_found:
                return None
            raise
        return cluster_from_row(row.model_dump())

    async def create_skill_optimization_arm(
        self,
        cluster_id: str,
        *,
        name: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> SkillOptimizationArm:
        cluster = await self.get_skill_optimization_cluster(cluster_id)
        if cluster is None:
            raise ConstraintViolation("cluster missing", {"cluster_id": cluster_id})
        rows = await self._insert(
            "skill_optimization_arms",
            {
                "agent_id": cluster.agent_id,
                "skill_id": cluster.skill_id,
                "cluster_id": cluster_id,
                "name": name,
                "params": params or {},
            },
            _ARM_ROWS,
        )
        return arm_from_row(rows[0].model_dump())

    async def get_skill_optimization_arm(self, arm_id: str) -> Optional[SkillOptimizationArm]:
        rows = await self._select("skill_optimization_arms", {"id": f"eq.{arm_id}"}, _ARM_ROWS)
        return arm_from_row(rows[0].model_dump()) if rows else None

    async def list_skill_optimization_arms(
        self, *, skill_id: Optional[str] = None, cluster_id: Optional[str] = None
    ) -> List[SkillOptimizationArm]:
        params = {"order": "created_at.asc"}
        if skill_id is not None:
            params["skill_id"] = f"eq.{skill_id}"
        if cluster_id is not None:
            params["cluster_id"] = f"eq.{cluster_id}"
        rows = await self._select("skill_optimization_arms", params, _ARM_ROWS)
        return [arm_from_row(row.model_dump()) for row in rows]

    async def update_arm_and_increment_counters(
        self, arm_id: str, evaluation_results: Sequence[EvaluationResult]
    ) -> Optional[ArmUpdateResult]:
        try:
            payload = await self._rpc(
                "update_arm_and_increment_counters",
                {
                    "p_arm_id": arm_id,
                    "p_evaluation_results": [r.to_dict() for r in evaluation_results],
                },
                _ARM_UPDATE,
            )
        except RpcError as exc:
            if exc.is_not_found:
                return None
            raise
        return arm_update_from_payload(payload.model_dump())

    # ------------------------------------------------------------------
    # Skill events
    # ------------------------------------------------------------------

    async def create_skill_event(
        self,
        skill_id: str,
        event_type: str,
        *,
        cluster_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        agent_id: Optional[str] = None,
    ) -> SkillEvent:
        if agent_id is None:
            skill = await self.get_skill(skill_id)
            if skill is None:
                raise ConstraintViolation("skill missing", {"skill_id": skill_id})
            agent_id = skill.agent_id
        rows = await self._insert(
            "skill_events",
            {
                "agent_id": agent_id,
                "skill_id": skill_id,
                "cluster_id": cluster_id,
                "event_type": event_type,
                "metadata": metadata or {},
            },
            _SKILL_EVENT_ROWS,
        )
        return skill_event_from_row(rows[0].model_dump())

    async def list_skill_events(self, skill_id: str) -> List[SkillEvent]:
        rows = await self._select(
            "skill_events",
            {"skill_id": f"eq.{skill_id}", "order": "created_at.desc"},
            _SKILL_EVENT_ROWS,
        )
        return [skill_event_from_row(row.model_dump()) for row in rows]

    async def close(self) -> None:
        await self._client.aclose()
        logger.debug("postgrest_client_closed", base_url=self.base_url)
