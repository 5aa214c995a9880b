from __future__ import annotations

import json
from typing import Any, List, Optional

import redis.asyncio as redis
import structlog

logger = structlog.get_logger("persistence.redis")


def create_redis_client(
    redis_url: str,
    *,
    decode_responses: bool = True,
) -> redis.Redis:
    """
    Create an async Redis client from a URL.

    Example:
        client = create_redis_client("redis://localhost:6379/0")
    """
    return redis.from_url(redis_url, decode_responses=decode_responses)


class RedisJsonStore:
    """
    JSON documents in Redis under a namespaced key.

    The store does not own the client; whoever created it closes it
    (see dependencies.close_resources()).
    """

    def __init__(self, client: redis.Redis, *, prefix: str = "topology-studio:"):
        self._client = client
        self._prefix = prefix if prefix.endswith(":") else f"{prefix}:"

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get_json(self, key: str) -> Optional[Any]:
        """
        Read and decode a document. Returns None when the key is missing or
        holds something that is not JSON.
        """
        raw = await self._client.get(self._key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("redis_json_decode_failed", key=self._key(key))
            return None

    async def set_json(
        self,
        key: str,
        value: Any,
        *,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        raw = json.dumps(value, separators=(",", ":"))
        if ttl_seconds is not None:
            await self._client.set(self._key(key), raw, ex=ttl_seconds)
        else:
            await self._client.set(self._key(key), raw)

    async def delete(self, key: str) -> bool:
        return bool(await self._client.delete(self._key(key)))

    async def keys(self, pattern: str = "*") -> List[str]:
        """
        Keys in this namespace matching `pattern`, returned without the prefix.
        Uses SCAN so large keyspaces are not blocked.
        """
        found: List[str] = []
        async for key in self._client.scan_iter(match=self._key(pattern)):
            if isinstance(key, bytes):
                key = key.decode("utf-8")
            found.append(key[len(self._prefix):])
        return found
