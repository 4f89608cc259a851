import asyncio
import json
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Set

from qrun.domain.errors import DuplicateMessageError
from qrun.domain.models import Job, QueuePair, RunStats
from qrun.domain.states import JobEvent, JobStatus
from qrun.metrics import EMPTY_RECEIVES
from qrun.scheduler.job_runner import JobRunner
from qrun.scheduler.lease_manager import VisibilityLeaseManager
from qrun.scheduler.queue_resolver import QueueResolver
from qrun.services.dedup import Deduplicator
from qrun.services.events import EventLog
from qrun.services.sqs import SqsClient, is_queue_missing, MAX_BATCH_SIZE
from qrun.utils.shutdown import ShutdownToken

logger = logging.getLogger(__name__)

class PollingScheduler:
    """
    Top level run loop.

    One poll loop per selected queue. A poll loop keeps receiving while its
    queue has messages and returns as soon as a receive comes back empty, so
    busy queues are polled continuously and quiet ones only once per cycle
    (and less often still while they sit in the icehouse).
    """

    def __init__(
        self,
        sqs: SqsClient,
        resolver: QueueResolver,
        lease_manager: VisibilityLeaseManager,
        runner: JobRunner,
        settings,
        events: EventLog,
        token: ShutdownToken,
        dedup: Optional[Deduplicator] = None,
    ):
        self.sqs = sqs
        self.resolver = resolver
        self.lease_manager = lease_manager
        self.runner = runner
        self.settings = settings
        self.events = events
        self.token = token
        self.dedup = dedup

        self.stats = RunStats()
        self.duplicates = 0
        self._pollers: Dict[str, asyncio.Task] = {}
        self._job_tasks: Set[asyncio.Task] = set()
        self._active = 0
        self._capacity = asyncio.Event()
        token.on_request(self._capacity.set)

    # Run modes

    async def run_once(self) -> RunStats:
        """
        Polls every currently selected queue until it comes back empty and
        waits for the resulting jobs. Returns the stats of this pass only.
        """
        before = RunStats().add(self.stats)
        if not self.token.requested:
            self._spawn_pollers(self.resolver.get_pairs())
        await self._wait_idle()
        return RunStats(
            no_jobs=self.stats.no_jobs - before.no_jobs,
            jobs_succeeded=self.stats.jobs_succeeded - before.jobs_succeeded,
            jobs_failed=self.stats.jobs_failed - before.jobs_failed,
        )

    async def run_forever(self) -> RunStats:
        loop = asyncio.get_running_loop()
        logger.info("Polling started.")
        while not self.token.requested:
            cycle_start = loop.time()
            self._spawn_pollers(self.resolver.get_pairs())
            elapsed = loop.time() - cycle_start
            await self.token.wait(max(0.0, self.settings.poll_interval - elapsed))
        await self._wait_idle()
        logger.info("Polling stopped.")
        return self.stats

    @property
    def polling(self) -> List[str]:
        return list(self._pollers)

    @property
    def active_jobs(self) -> int:
        return self._active

    # Poll loops

    def _spawn_pollers(self, pairs: List[QueuePair]):
        for pair in pairs:
            if self.token.requested:
                return
            if pair.name in self._pollers:
                continue
            self._pollers[pair.name] = asyncio.create_task(self._poll_loop(pair))

    async def _wait_idle(self):
        while self._pollers or self._job_tasks:
            await asyncio.gather(*self._pollers.values(), *self._job_tasks, return_exceptions=True)

    async def _poll_loop(self, pair: QueuePair):
        try:
            await self._poll_queue(pair)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Poll loop for {pair.name} failed: {e}", exc_info=True)
        finally:
            self._pollers.pop(pair.name, None)

    async def _wait_for_capacity(self) -> int:
        while not self.token.requested:
            free = self.settings.max_concurrent_jobs - self._active
            if free > 0:
                return free
            self._capacity.clear()
            await self._capacity.wait()
        return 0

    async def _poll_queue(self, pair: QueuePair):
        while not self.token.requested:
            free = await self._wait_for_capacity()
            if free <= 0:
                return

            try:
                messages = await self.sqs.receive(
                    pair.url,
                    max_messages=min(MAX_BATCH_SIZE, free),
                    wait_seconds=self.settings.wait_time,
                    visibility_timeout=self.settings.visibility_timeout,
                )
            except Exception as e:
                if not is_queue_missing(e):
                    raise
                # Deleted, or not visible yet right after creation
                logger.info("Queue %s went missing, icing it", pair.name)
                self.resolver.qrl_cache.invalidate(pair.name)
                self.resolver.update_icehouse(pair.name, False)
                return

            if not messages:
                self.stats.no_jobs += 1
                EMPTY_RECEIVES.labels(queue=pair.name).inc()
                self.resolver.update_icehouse(pair.name, False)
                return

            self.resolver.update_icehouse(pair.name, True)
            # Messages in hand are always run, even when shutdown was requested meanwhile
            self._dispatch(pair, messages)

    # Dispatch

    def _decode(self, body: str) -> Any:
        if not self.settings.json_payload:
            return body
        try:
            return json.loads(body)
        except ValueError:
            logger.warning("Message body is not JSON, passing it through as text")
            return body

    def _dispatch(self, pair: QueuePair, messages: List[Dict[str, Any]]):
        jobs: List[Job] = []
        for message in messages:
            try:
                job = self.lease_manager.add_job(pair, message, self._decode(message.get("Body", "")))
            except DuplicateMessageError as e:
                self.duplicates += 1
                logger.error(
                    "DUPLICATE_MESSAGE %s: already tracked since %.1fs with status %s; "
                    "visibility extension is falling behind",
                    e.job.message_id,
                    self.lease_manager.clock() - e.job.started,
                    e.job.status,
                )
                continue
            self.events.emit(
                JobEvent.MESSAGE_RECEIVED,
                queue=pair.name,
                message_id=job.message_id,
                payload=job.body,
            )
            jobs.append(job)

        # Same FIFO group: strictly one after the other, in receipt order
        groups: "OrderedDict[str, List[Job]]" = OrderedDict()
        for job in jobs:
            self._active += 1
            if job.group_id:
                groups.setdefault(job.group_id, []).append(job)
            else:
                self._start_job_task(self._run_jobs([job]))
        for group in groups.values():
            self._start_job_task(self._run_jobs(group))

    def _start_job_task(self, coro):
        task = asyncio.create_task(coro)
        self._job_tasks.add(task)
        task.add_done_callback(self._job_tasks.discard)

    async def _run_jobs(self, jobs: List[Job]):
        for job in jobs:
            try:
                await self._run_job(job)
            finally:
                self._active -= 1
                self._capacity.set()

    async def _run_job(self, job: Job):
        try:
            outcome = await self.runner.run(job)
        except Exception as e:
            logger.error(f"Job {job.message_id} crashed the runner: {e}", exc_info=True)
            job.status = JobStatus.FAILED
            self.stats.jobs_failed += 1
            return

        self.stats.add(outcome.stats)
        if outcome.status == JobStatus.REFUSED:
            await self.lease_manager.release(job)
        elif outcome.succeeded and self.dedup is not None:
            try:
                await self.dedup.processed(job.body)
            except Exception as e:
                logger.warning("Could not clear dedup key for %s: %s", job.message_id, e)
