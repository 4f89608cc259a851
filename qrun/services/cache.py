import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.asyncio.cluster import RedisCluster

from qrun.domain.errors import UsageError

logger = logging.getLogger(__name__)

def create_redis_client(cache_uri: Optional[str]):
    if not cache_uri:
        raise UsageError("Caching requires the --cache-uri option")
    if cache_uri.startswith("redis-cluster://"):
        return RedisCluster.from_url("redis://" + cache_uri[len("redis-cluster://"):], decode_responses=True)
    if cache_uri.startswith(("redis://", "rediss://")):
        return aioredis.from_url(cache_uri, decode_responses=True)
    raise UsageError(f"Only redis:// or redis-cluster:// URLs are currently supported. Got: {cache_uri}")

class Cache:
    """
    Small JSON cache on Redis. Keys are namespaced with the configured
    cache prefix; values expire after cache_ttl_seconds.
    """

    def __init__(self, client, prefix: str = "qdone:", ttl_seconds: int = 10):
        self.client = client
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_settings(cls, settings) -> "Cache":
        return cls(create_redis_client(settings.cache_uri), settings.cache_prefix, settings.cache_ttl_seconds)

    def key(self, key: str) -> str:
        return self.prefix + key

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.client.get(self.key(key))
        return json.loads(raw) if raw else None

    async def set(self, key: str, value: Any):
        await self.client.setex(self.key(key), self.ttl_seconds, json.dumps(value))

    async def close(self):
        await self.client.aclose()
