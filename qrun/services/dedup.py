import hashlib
import logging
from typing import List

from qrun.services.cache import create_redis_client

logger = logging.getLogger(__name__)

class Deduplicator:
    """
    Content-hash deduplication on Redis.

    The first enqueue of a given command claims the key (INCR returns 1) and
    sets it to expire after dedup_period; later enqueues of the same command
    are skipped until the key expires or the worker clears it after
    successfully running the job.
    """

    def __init__(self, client, prefix: str = "qdone:", dedup_period: int = 300):
        self.client = client
        self.prefix = prefix
        self.dedup_period = dedup_period

    @classmethod
    def from_settings(cls, settings) -> "Deduplicator":
        return cls(create_redis_client(settings.cache_uri), settings.cache_prefix, settings.dedup_period)

    def cache_key(self, content: str) -> str:
        digest = hashlib.sha256(content.strip().encode("utf-8")).hexdigest()
        return f"{self.prefix}dedup:{digest}"

    async def should_enqueue(self, content: str) -> bool:
        key = self.cache_key(content)
        count = await self.client.incr(key)
        logger.debug("dedup key=%s count=%s", key, count)
        if count == 1:
            await self.client.expire(key, self.dedup_period)
            return True
        return False

    async def should_enqueue_multi(self, contents: List[str]) -> List[bool]:
        # Sequential INCRs: a command repeated within one batch is only
        # claimed by its first occurrence
        return [await self.should_enqueue(content) for content in contents]

    async def processed(self, content: str):
        await self.client.delete(self.cache_key(content))
