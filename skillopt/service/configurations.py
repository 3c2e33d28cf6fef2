from __future__ import annotations

import hashlib
import inspect
import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from skillopt.logging import get_logger
from skillopt.service.errors import ConflictError, NotFoundError, ValidationError
from skillopt.storage.errors import ConstraintViolation, StaleWriteError
from skillopt.storage.models import (
    CURRENT_VERSION_KEY,
    ConfigurationVersion,
    SkillConfiguration,
    VersionedConfigurationData,
    format_timestamp,
    utcnow,
)

HASH_LENGTH = 6
UPDATE_ATTEMPTS = 3


def compute_version_hash(params: Dict[str, Any], created_at: datetime) -> str:
    """First six hex chars of SHA-256 over the serialized params and timestamp.

    The timestamp is part of the input, so identical params submitted at two
    different times get two different hashes.
    """
    serialized = json.dumps(params, separators=(",", ":"), ensure_ascii=False)
    digest = hashlib.sha256((serialized + format_timestamp(created_at)).encode("utf-8"))
    return digest.hexdigest()[:HASH_LENGTH]


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class ConfigurationVersionStore:
    """History-preserving versions of a skill configuration's parameters."""

    logger = get_logger(__name__)

    def __init__(self, store, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    def _new_version(self, params: Dict[str, Any]) -> ConfigurationVersion:
        if not isinstance(params, dict):
            raise ValidationError("params must be an object")
        created_at = self.clock()
        return ConfigurationVersion(
            hash=compute_version_hash(params, created_at),
            created_at=created_at,
            params=dict(params),
        )

    async def create(
        self,
        skill_id: str,
        params: Dict[str, Any],
        description: Optional[str] = None,
        *,
        agent_id: Optional[str] = None,
    ) -> SkillConfiguration:
        version = self._new_version(params)
        data = VersionedConfigurationData(current=version)
        try:
            configuration = await _resolve(
                self.store.create_skill_configuration(
                    skill_id, data, agent_id=agent_id, description=description
                )
            )
        except ConstraintViolation as exc:
            raise NotFoundError("skill not found", detail={"skill_id": skill_id}) from exc
        self.logger.info(
            "configuration_created",
            configuration_id=configuration.id,
            skill_id=skill_id,
            version_hash=version.hash,
        )
        return configuration

    async def get(self, configuration_id: str) -> SkillConfiguration:
        configuration = await _resolve(self.store.get_skill_configuration(configuration_id))
        if configuration is None:
            raise NotFoundError(
                "configuration not found", detail={"configuration_id": configuration_id}
            )
        return configuration

    async def update(
        self,
        configuration_id: str,
        params: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> SkillConfiguration:
        """Apply an update; a new ``params`` version never drops a concurrent one.

        The version write only lands if ``current`` is still the one that was
        read. On a lost race the record is read again and the version rebuilt
        on top of the winner, up to ``UPDATE_ATTEMPTS`` times.

        Raises:
            NotFoundError: the configuration does not exist.
            ConflictError: every attempt lost to a concurrent writer.
        """

        if params is None:
            await self.get(configuration_id)
            updated = await _resolve(
                self.store.update_skill_configuration(configuration_id, description=description)
            )
        else:
            updated = await self._push_version(configuration_id, params, description)
        if updated is None:
            raise NotFoundError(
                "configuration not found", detail={"configuration_id": configuration_id}
            )
        return updated

    async def _push_version(
        self,
        configuration_id: str,
        params: Dict[str, Any],
        description: Optional[str],
    ) -> Optional[SkillConfiguration]:
        for attempt in range(1, UPDATE_ATTEMPTS + 1):
            existing = await self.get(configuration_id)
            previous = existing.data.current
            version = self._new_version(params)
            history = dict(existing.data.history)
            if version.hash != previous.hash:
                history[previous.hash] = previous
            data = VersionedConfigurationData(current=version, history=history)
            try:
                updated = await _resolve(
                    self.store.update_skill_configuration(
                        configuration_id,
                        description=description,
                        data=data,
                        expected_hash=previous.hash,
                    )
                )
            except StaleWriteError:
                self.logger.info(
                    "configuration_update_conflict",
                    configuration_id=configuration_id,
                    expected_hash=previous.hash,
                    attempt=attempt,
                )
                continue
            self.logger.info(
                "configuration_version_created",
                configuration_id=configuration_id,
                version_hash=version.hash,
                previous_hash=previous.hash,
                history_size=len(history),
            )
            return updated
        raise ConflictError(
            "configuration was updated concurrently",
            detail={"configuration_id": configuration_id, "attempts": UPDATE_ATTEMPTS},
        )

    async def get_version(self, configuration_id: str, version_hash: str) -> ConfigurationVersion:
        configuration = await self.get(configuration_id)
        data = configuration.data
        if version_hash in (CURRENT_VERSION_KEY, data.current.hash):
            return data.current
        version = data.history.get(version_hash)
        if version is None:
            raise NotFoundError(
                "configuration version not found",
                detail={"configuration_id": configuration_id, "hash": version_hash},
            )
        return version

    async def list_versions(self, configuration_id: str) -> List[ConfigurationVersion]:
        """Every retained version, newest first; the current one leads."""
        configuration = await self.get(configuration_id)
        history = sorted(
            configuration.data.history.values(),
            key=lambda v: v.created_at,
            reverse=True,
        )
        return [configuration.data.current] + history
