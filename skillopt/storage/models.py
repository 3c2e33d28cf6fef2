from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

CURRENT_VERSION_KEY = "current"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 value (or pass a datetime through) as aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        raw = str(value)
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        ts = datetime.fromisoformat(raw)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat(timespec="milliseconds")


@dataclass
class OptimizerLock:
    lock_name: str
    locked_by: str
    locked_at: datetime
    expires_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def remaining_seconds(self, now: datetime) -> int:
        return max(0, int((self.expires_at - now).total_seconds()))


@dataclass
class LockStatus:
    is_locked: bool
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    time_remaining_seconds: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def unlocked(cls) -> "LockStatus":
        return cls(is_locked=False)

    @classmethod
    def from_lock(cls, lock: OptimizerLock, now: datetime) -> "LockStatus":
        return cls(
            is_locked=True,
            locked_by=lock.locked_by,
            locked_at=lock.locked_at,
            expires_at=lock.expires_at,
            time_remaining_seconds=lock.remaining_seconds(now),
            metadata=dict(lock.metadata),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_locked": self.is_locked,
            "locked_by": self.locked_by,
            "locked_at": format_timestamp(self.locked_at),
            "expires_at": format_timestamp(self.expires_at),
            "time_remaining_seconds": self.time_remaining_seconds,
            "metadata": self.metadata,
        }


@dataclass
class Skill:
    id: str
    agent_id: str
    name: str
    description: Optional[str] = None
    configuration_count: int = 3
    clustering_interval: int = 15
    # advanced once per inbound request
    total_requests: int = 0
    # advanced once per evaluated batch, together with arm and cluster
    total_steps: int = 0
    last_clustering_at: Optional[datetime] = None
    last_clustering_log_start_time: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ConfigurationVersion:
    hash: str
    created_at: datetime
    params: Dict[str, Any]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "hash": self.hash,
            "created_at": format_timestamp(self.created_at),
            "params": self.params,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ConfigurationVersion":
        return cls(
            hash=payload["hash"],
            created_at=parse_timestamp(payload["created_at"]),
            params=dict(payload.get("params") or {}),
        )


@dataclass
class VersionedConfigurationData:
    """Active version plus superseded versions keyed by their hash.

    Persisted as one JSON object whose keys are ``"current"`` or a hash.
    """

    current: ConfigurationVersion
    history: Dict[str, ConfigurationVersion] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload = {key: version.to_payload() for key, version in self.history.items()}
        payload[CURRENT_VERSION_KEY] = self.current.to_payload()
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "VersionedConfigurationData":
        if CURRENT_VERSION_KEY not in payload:
            raise ValueError("configuration data has no current version")
        history = {
            key: ConfigurationVersion.from_payload(value)
            for key, value in payload.items()
            if key != CURRENT_VERSION_KEY
        }
        return cls(
            current=ConfigurationVersion.from_payload(payload[CURRENT_VERSION_KEY]),
            history=history,
        )


@dataclass
class SkillConfiguration:
    id: str
    skill_id: str
    data: VersionedConfigurationData
    agent_id: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class SkillOptimizationCluster:
    id: str
    skill_id: str
    agent_id: Optional[str] = None
    name: str = ""
    centroid: List[float] = field(default_factory=list)
    total_steps: int = 0
    observability_total_requests: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ArmStats:
    n: int = 0
    mean: float = 0.0
    n2: float = 0.0
    total_reward: float = 0.0

    def with_reward(self, reward: float) -> "ArmStats":
        n = self.n + 1
        total = self.total_reward + reward
        return ArmStats(
            n=n,
            mean=total / n,
            n2=self.n2 + reward * reward,
            total_reward=total,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n": self.n,
            "mean": self.mean,
            "n2": self.n2,
            "total_reward": self.total_reward,
        }


@dataclass
class SkillOptimizationArm:
    id: str
    skill_id: str
    cluster_id: str
    agent_id: Optional[str] = None
    name: str = ""
    params: Dict[str, Any] = field(default_factory=dict)
    stats: ArmStats = field(default_factory=ArmStats)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class EvaluationResult:
    evaluation_id: str
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {"evaluation_id": self.evaluation_id, "score": self.score}


def batch_reward(results: List[EvaluationResult]) -> float:
    """Reward credited to an arm for one evaluated request."""
    return sum(r.score for r in results) / len(results)


@dataclass
class ArmUpdateResult:
    arm: SkillOptimizationArm
    cluster: SkillOptimizationCluster
    skill: Skill


@dataclass
class RequestLog:
    id: str
    skill_id: str
    start_time: datetime
    embedding: Optional[List[float]] = None


SKILL_EVENT_CLUSTERS_UPDATED = "clusters_updated"


@dataclass
class SkillEvent:
    """Audit record of a change to a skill's optimization state."""

    id: str
    skill_id: str
    event_type: str
    agent_id: Optional[str] = None
    # None for skill-wide events
    cluster_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
