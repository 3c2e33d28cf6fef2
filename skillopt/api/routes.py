from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from skillopt.api.schemas import (
    ConfigurationCreateRequest,
    ConfigurationUpdateRequest,
    Envelope,
    EvaluationBatchRequest,
    arm_update_payload,
    configuration_payload,
    skill_payload,
)
from skillopt.logging import get_correlation_id
from skillopt.service.runtime import get_runtime
from skillopt.storage.models import EvaluationResult

router = APIRouter(prefix="/v1")


def _ok(data: Any) -> Envelope:
    cid = get_correlation_id()
    if cid:
        return Envelope(status="ok", data=data, request_id=cid)
    return Envelope(status="ok", data=data)


@router.get("/locks/{lock_name}", response_model=Envelope, tags=["locks"])
async def get_lock_status(lock_name: str):
    """Report who holds a named lock and for how long; unheld locks are not an error."""
    runtime = get_runtime()
    status = await runtime.locks.check_status(lock_name)
    return _ok(status.to_dict())


@router.post("/locks/cleanup", response_model=Envelope, tags=["locks"])
async def cleanup_locks():
    runtime = get_runtime()
    deleted = await runtime.locks.cleanup_expired()
    return _ok({"deleted": deleted})


@router.post(
    "/skills/{skill_id}/configurations",
    response_model=Envelope,
    status_code=201,
    tags=["configurations"],
)
async def create_configuration(skill_id: str, body: ConfigurationCreateRequest):
    """Create a configuration whose only version is the current one.

    Raises:
        404: If the skill does not exist
    """
    runtime = get_runtime()
    configuration = await runtime.configurations.create(
        skill_id, body.params, body.description
    )
    return _ok(configuration_payload(configuration))


@router.get("/configurations/{configuration_id}", response_model=Envelope, tags=["configurations"])
async def get_configuration(configuration_id: str):
    runtime = get_runtime()
    configuration = await runtime.configurations.get(configuration_id)
    return _ok(configuration_payload(configuration))


@router.patch(
    "/configurations/{configuration_id}", response_model=Envelope, tags=["configurations"]
)
async def update_configuration(configuration_id: str, body: ConfigurationUpdateRequest):
    """Update the description, and with ``params`` push a new current version.

    The superseded version stays retrievable under its hash.
    """
    runtime = get_runtime()
    configuration = await runtime.configurations.update(
        configuration_id, params=body.params, description=body.description
    )
    return _ok(configuration_payload(configuration))


@router.get(
    "/configurations/{configuration_id}/versions",
    response_model=Envelope,
    tags=["configurations"],
)
async def list_configuration_versions(configuration_id: str):
    runtime = get_runtime()
    versions = await runtime.configurations.list_versions(configuration_id)
    return _ok({"versions": [v.to_payload() for v in versions]})


@router.get(
    "/configurations/{configuration_id}/versions/{version_hash}",
    response_model=Envelope,
    tags=["configurations"],
)
async def get_configuration_version(configuration_id: str, version_hash: str):
    runtime = get_runtime()
    version = await runtime.configurations.get_version(configuration_id, version_hash)
    return _ok(version.to_payload())


@router.post("/skills/{skill_id}/requests", response_model=Envelope, tags=["counters"])
async def record_skill_request(skill_id: str):
    """Count one inbound request against the skill."""
    runtime = get_runtime()
    skill = await runtime.counters.increment_skill_total_requests(skill_id)
    return _ok(skill_payload(skill))


@router.post("/arms/{arm_id}/evaluations", response_model=Envelope, tags=["counters"])
async def record_arm_evaluations(arm_id: str, body: EvaluationBatchRequest):
    """Fold one evaluated batch into the arm, its cluster and its skill atomically."""
    runtime = get_runtime()
    results = [
        EvaluationResult(evaluation_id=item.evaluation_id, score=item.score)
        for item in body.evaluation_results
    ]
    update = await runtime.counters.update_arm_and_increment_counters(arm_id, results)
    return _ok(arm_update_payload(update))
