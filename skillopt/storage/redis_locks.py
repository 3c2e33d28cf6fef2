from __future__ import annotations

import json
from datetime import timedelta
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis

from skillopt.logging import get_logger
from skillopt.storage.models import LockStatus, format_timestamp, parse_timestamp, utcnow

logger = get_logger(__name__)


class RedisLockStore:
    """Named optimizer locks kept as Redis keys with native expiry.

    Only the lock half of the store interface lives here; expired keys vanish
    on their own, so the sweep is a no-op.
    """

    KEY_PREFIX = "optimizer:lock:"

    # Compare-and-delete so only the holder can release
    _RELEASE_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if not value then
  return 0
end
local record = cjson.decode(value)
if record['locked_by'] == ARGV[1] then
  redis.call('DEL', KEYS[1])
  return 1
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0, client: Any = None):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._release = self.client.register_script(self._RELEASE_SCRIPT)

    def _key(self, lock_name: str) -> str:
        return f"{self.KEY_PREFIX}{lock_name}"

    async def acquire_optimizer_lock(
        self,
        lock_name: str,
        locked_by: str,
        timeout_seconds: int = 300,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        record = {
            "locked_by": locked_by,
            "locked_at": format_timestamp(utcnow()),
            "metadata": metadata or {},
        }
        # Redis rejects a zero expiry
        acquired = await self.client.set(
            self._key(lock_name), json.dumps(record), ex=max(1, timeout_seconds), nx=True
        )
        return bool(acquired)

    async def release_optimizer_lock(self, lock_name: str, locked_by: str) -> bool:
        result = await self._release(keys=[self._key(lock_name)], args=[locked_by])
        return bool(result)

    async def check_optimizer_lock(self, lock_name: str) -> List[LockStatus]:
        key = self._key(lock_name)
        raw = await self.client.get(key)
        if raw is None:
            return []
        ttl_ms = await self.client.pttl(key)
        if ttl_ms is None or ttl_ms < 0:
            # key expired (or lost its TTL) between GET and PTTL
            if ttl_ms == -2:
                return []
            ttl_ms = 0
        try:
            record = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("redis_lock_record_invalid", lock_name=lock_name)
            return []
        now = utcnow()
        return [
            LockStatus(
                is_locked=True,
                locked_by=record.get("locked_by"),
                locked_at=parse_timestamp(record.get("locked_at")),
                expires_at=now + timedelta(milliseconds=ttl_ms),
                time_remaining_seconds=ttl_ms // 1000,
                metadata=record.get("metadata") or {},
            )
        ]

    async def cleanup_expired_optimizer_locks(self) -> int:
        return 0

    async def close(self) -> None:
        # a client built by from_url owns its pool, so aclose disconnects it too
        await self.client.aclose()
