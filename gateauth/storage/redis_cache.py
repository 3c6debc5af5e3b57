from __future__ import annotations

from typing import Any, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from gateauth.storage.errors import StorageError


class RedisTokenStore:
    """Token store backed by Redis string keys.

    Keys are namespaced under ``gateauth:`` so several devices or test runs
    can share one database.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        namespace: str = "gateauth",
        client: Optional[Any] = None,
    ):
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the runtime relies on it."""
        # Short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def read(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(self._key(key))
        except RedisError as exc:
            raise StorageError(f"failed to read {key}", {"backend": "redis"}) from exc

    async def write(self, key: str, value: str) -> None:
        try:
            await self.client.set(self._key(key), value)
        except RedisError as exc:
            raise StorageError(f"failed to write {key}", {"backend": "redis"}) from exc

    async def close(self) -> None:
        await self.client.aclose()


__all__ = ["RedisTokenStore"]
