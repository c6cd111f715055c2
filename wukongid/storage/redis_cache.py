from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from wukongid.storage.errors import StorageUnavailable


class RedisTokenStore:
    """Redis-backed code/token store shared by every instance.

    Records live as JSON under ``wukongid:<namespace>:<key>`` with a TTL
    taken from their expiry. The used flag is a sibling key so marking a
    record used never rewrites it.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0
    # Keys outlive their recorded expiry so reads still see the record and
    # report it expired rather than missing
    EXPIRY_GRACE_SECONDS = 60

    # Atomic existence check + first-writer-wins claim on the used flag
    _MARK_USED_SCRIPT = """
local ttl = redis.call('PTTL', KEYS[1])
if ttl == -2 then
  return 0
end
local ok
if ttl > 0 then
  ok = redis.call('SET', KEYS[2], '1', 'NX', 'PX', ttl)
else
  ok = redis.call('SET', KEYS[2], '1', 'NX')
end
if ok then
  return 1
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._mark_used = self.client.register_script(self._MARK_USED_SCRIPT)

    @staticmethod
    def _record_key(namespace: str, key: str) -> str:
        return f"wukongid:{namespace}:{key}"

    @staticmethod
    def _used_key(namespace: str, key: str) -> str:
        return f"wukongid:{namespace}:{key}:used"

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Key TTL: seconds until ``expires_at`` plus the grace period."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        remaining = int((expires_at - datetime.now(timezone.utc)).total_seconds())
        return max(0, remaining) + RedisTokenStore.EXPIRY_GRACE_SECONDS

    @staticmethod
    def _encode(record: Dict[str, Any]) -> str:
        stored = {k: v for k, v in record.items() if k != "used"}
        return json.dumps(stored)

    @staticmethod
    def _decode(raw: Optional[str], used: Any) -> Optional[Dict[str, Any]]:
        if raw is None:
            return None
        record = json.loads(raw)
        record["used"] = bool(used)
        return record

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the store is handed out."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def put(
        self, namespace: str, key: str, record: Dict[str, Any], expires_at: datetime
    ) -> None:
        ttl = self._ttl_seconds(expires_at)
        try:
            pipe = self.client.pipeline()
            pipe.set(self._record_key(namespace, key), self._encode(record), ex=ttl)
            pipe.delete(self._used_key(namespace, key))
            await pipe.execute()
        except RedisError as exc:
            raise StorageUnavailable("redis", exc) from exc

    async def get(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        try:
            pipe = self.client.pipeline()
            pipe.get(self._record_key(namespace, key))
            pipe.exists(self._used_key(namespace, key))
            raw, used = await pipe.execute()
        except RedisError as exc:
            raise StorageUnavailable("redis", exc) from exc
        return self._decode(raw, used)

    async def mark_used(self, namespace: str, key: str) -> bool:
        try:
            result = await self._mark_used(
                keys=[self._record_key(namespace, key), self._used_key(namespace, key)]
            )
        except RedisError as exc:
            raise StorageUnavailable("redis", exc) from exc
        return int(result) == 1

    async def delete(self, namespace: str, key: str) -> None:
        try:
            await self.client.delete(
                self._record_key(namespace, key), self._used_key(namespace, key)
            )
        except RedisError as exc:
            raise StorageUnavailable("redis", exc) from exc

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        # Redis expires records natively
        return 0


class SyncRedisTokenStore:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client to avoid event loop binding issues in pytest
    while exposing the same awaitable interface as RedisTokenStore.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = RedisTokenStore.DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._mark_used = self._sync_client.register_script(
            RedisTokenStore._MARK_USED_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def put(
        self, namespace: str, key: str, record: Dict[str, Any], expires_at: datetime
    ) -> None:
        ttl = RedisTokenStore._ttl_seconds(expires_at)
        try:
            pipe = self._sync_client.pipeline()
            pipe.set(
                RedisTokenStore._record_key(namespace, key),
                RedisTokenStore._encode(record),
                ex=ttl,
            )
            pipe.delete(RedisTokenStore._used_key(namespace, key))
            pipe.execute()
        except RedisError as exc:
            raise StorageUnavailable("redis", exc) from exc

    async def get(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        try:
            pipe = self._sync_client.pipeline()
            pipe.get(RedisTokenStore._record_key(namespace, key))
            pipe.exists(RedisTokenStore._used_key(namespace, key))
            raw, used = pipe.execute()
        except RedisError as exc:
            raise StorageUnavailable("redis", exc) from exc
        return RedisTokenStore._decode(raw, used)

    async def mark_used(self, namespace: str, key: str) -> bool:
        try:
            result = self._mark_used(
                keys=[
                    RedisTokenStore._record_key(namespace, key),
                    RedisTokenStore._used_key(namespace, key),
                ]
            )
        except RedisError as exc:
            raise StorageUnavailable("redis", exc) from exc
        return int(result) == 1

    async def delete(self, namespace: str, key: str) -> None:
        try:
            self._sync_client.delete(
                RedisTokenStore._record_key(namespace, key),
                RedisTokenStore._used_key(namespace, key),
            )
        except RedisError as exc:
            raise StorageUnavailable("redis", exc) from exc

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        return 0

    def close(self) -> None:
        self._sync_client.close()
