import logging
import random
import time
from typing import Callable, List, Optional

from qrun.domain.models import RunStats
from qrun.scheduler.job_runner import Callback, JobRunner
from qrun.scheduler.lease_manager import VisibilityLeaseManager
from qrun.scheduler.queue_resolver import QueueResolver
from qrun.scheduler.service import PollingScheduler
from qrun.services.cache import Cache
from qrun.services.dedup import Deduplicator
from qrun.services.events import EventLog
from qrun.services.idle_check import IdleChecker
from qrun.services.qrl_cache import QrlCache
from qrun.services.sqs import SqsClient
from qrun.settings import get_settings
from qrun.utils.shutdown import ShutdownToken

logger = logging.getLogger(__name__)

class Consumer:
    """
    Wires resolver, lease manager, runner and scheduler together for one set
    of queue patterns. Clients are built from settings unless injected.
    """

    def __init__(
        self,
        patterns: List[str],
        settings=None,
        callback: Optional[Callback] = None,
        token: Optional[ShutdownToken] = None,
        sqs: Optional[SqsClient] = None,
        cache: Optional[Cache] = None,
        dedup: Optional[Deduplicator] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
        lease_interval: float = 10.0,
        kill_grace_seconds: float = 1.0,
    ):
        self.settings = settings or get_settings()
        self.token = token or ShutdownToken()
        self.sqs = sqs or SqsClient.from_settings(self.settings)

        # Redis clients built here are closed by close()
        self._owned_redis = []
        if cache is None and self.settings.cache_uri and self.settings.active_only:
            cache = Cache.from_settings(self.settings)
            self._owned_redis.append(cache.client)
        if dedup is None and self.settings.external_dedup:
            dedup = Deduplicator.from_settings(self.settings)
            self._owned_redis.append(dedup.client)

        self.events = EventLog(self.settings)
        self.qrl_cache = QrlCache(self.sqs)
        self.resolver = QueueResolver(
            self.qrl_cache,
            self.settings,
            patterns,
            idle_checker=IdleChecker(self.sqs, self.settings, cache=cache),
            clock=clock,
            rng=rng,
        )
        self.lease_manager = VisibilityLeaseManager(
            self.sqs, self.settings, self.events, clock=clock, interval=lease_interval
        )
        self.runner = JobRunner(self.settings, self.events, callback=callback, kill_grace_seconds=kill_grace_seconds)
        self.scheduler = PollingScheduler(
            self.sqs,
            self.resolver,
            self.lease_manager,
            self.runner,
            self.settings,
            self.events,
            self.token,
            dedup=dedup,
        )
        self._started = False

    @property
    def stats(self) -> RunStats:
        return self.scheduler.stats

    @property
    def queue_count(self) -> int:
        return len(self.resolver.pairs)

    def _start(self):
        if not self._started:
            self.lease_manager.start()
            self._started = True

    async def listen(self) -> RunStats:
        """One drain pass over the queues the patterns resolve to right now."""
        self._start()
        await self.resolver.resolve()
        if not self.resolver.pairs:
            return RunStats()
        logger.info("Listening to %d queues: %s", len(self.resolver.pairs), ", ".join(p.name for p in self.resolver.pairs))
        return await self.scheduler.run_once()

    async def run_forever(self) -> RunStats:
        self._start()
        await self.resolver.refresh()
        self.resolver.start()
        return await self.scheduler.run_forever()

    async def close(self):
        await self.resolver.shutdown()
        await self.lease_manager.shutdown()
        for client in self._owned_redis:
            await client.aclose()
        logger.debug(
            "Consumer closed: %d SQS calls, %d timeouts extended, %d jobs deleted",
            self.sqs.calls,
            self.lease_manager.timeouts_extended,
            self.lease_manager.jobs_deleted,
        )

async def process_messages(
    patterns: List[str],
    callback: Callback,
    settings=None,
    token: Optional[ShutdownToken] = None,
    **deps,
) -> RunStats:
    """Runs callback on every message until shutdown is requested on token."""
    consumer = Consumer(patterns, settings=settings, callback=callback, token=token, **deps)
    try:
        return await consumer.run_forever()
    finally:
        await consumer.close()

async def listen(
    patterns: List[str],
    settings=None,
    token: Optional[ShutdownToken] = None,
    **deps,
) -> RunStats:
    """Single drain pass in subprocess mode; returns once in-flight work is reconciled."""
    consumer = Consumer(patterns, settings=settings, token=token, **deps)
    try:
        return await consumer.listen()
    finally:
        await consumer.close()
