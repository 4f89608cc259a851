import asyncio
import logging
import time
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from qrun.domain.backoff import next_extend_at, next_visibility_timeout
from qrun.domain.errors import DuplicateMessageError, ShuttingDownError
from qrun.domain.models import Job, QueuePair
from qrun.domain.states import JobEvent, JobStatus
from qrun.metrics import JOBS_INFLIGHT, MESSAGES_DELETED, VISIBILITY_EXTENSIONS
from qrun.services.events import EventLog
from qrun.services.sqs import SqsClient, chunked

logger = logging.getLogger(__name__)

class VisibilityLeaseManager:
    """
    Keeps the SQS visibility timeout of every in-flight message ahead of the
    job's runtime and deletes messages whose jobs completed.

    The registry is keyed by message id and only this class mutates it.
    Each tick:
      1. complete jobs go to a per-queue delete batch (status -> deleting),
         failed jobs are dropped and left for the redrive policy,
         everything else past its extend_at_second is extended.
      2. extensions double the timeout, capped by the 12 hour job ceiling.
      3. extend and delete calls are chunked by queue, 10 entries per call.
    """

    def __init__(
        self,
        sqs: SqsClient,
        settings,
        events: EventLog,
        clock: Callable[[], float] = time.monotonic,
        interval: float = 10.0,
        drain_interval: float = 1.0,
    ):
        self.sqs = sqs
        self.settings = settings
        self.events = events
        self.clock = clock
        self.interval = interval
        self.drain_interval = drain_interval

        self.jobs: Dict[str, Job] = {}
        self.timeouts_extended = 0
        self.jobs_deleted = 0

        self._shutting_down = False
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # Registry

    def add_job(self, pair: QueuePair, message: Dict[str, Any], payload: Any) -> Job:
        if self._shutting_down:
            raise ShuttingDownError("Lease manager is shutting down, not accepting new jobs")

        message_id = message["MessageId"]
        existing = self.jobs.get(message_id)
        if existing is not None:
            raise DuplicateMessageError(existing)

        timeout = self.settings.visibility_timeout
        job = Job(
            message_id=message_id,
            receipt_handle=message["ReceiptHandle"],
            queue_name=pair.name,
            queue_url=pair.url,
            payload=payload,
            body=message.get("Body", ""),
            started=self.clock(),
            visibility_timeout=timeout,
            extend_at_second=round(timeout / 2),
            group_id=message.get("Attributes", {}).get("MessageGroupId"),
        )
        self.jobs[message_id] = job
        JOBS_INFLIGHT.set(len(self.jobs))
        return job

    async def release(self, job: Job):
        """Hands a refused message straight back to the queue (visibility 0)."""
        job.status = JobStatus.REFUSED
        try:
            await self.sqs.change_visibility(job.queue_url, job.receipt_handle, 0)
        except Exception as e:
            logger.warning("Failed to release message %s on %s: %s", job.message_id, job.queue_name, e)
        finally:
            self.jobs.pop(job.message_id, None)
            JOBS_INFLIGHT.set(len(self.jobs))

    # Maintenance

    async def maintain_visibility(self):
        now = self.clock()
        to_extend: Dict[str, List[tuple]] = defaultdict(list)
        to_delete: Dict[str, List[Job]] = defaultdict(list)
        dropped: List[Job] = []

        for job in list(self.jobs.values()):
            if job.status == JobStatus.COMPLETE:
                job.status = JobStatus.DELETING
                to_delete[job.queue_url].append(job)
            elif job.status == JobStatus.FAILED:
                dropped.append(job)
            elif job.status in (JobStatus.WAITING, JobStatus.RUNNING):
                elapsed = job.runtime(now)
                if elapsed >= job.extend_at_second:
                    new_timeout = next_visibility_timeout(job.visibility_timeout, elapsed)
                    to_extend[job.queue_url].append((job, new_timeout, next_extend_at(elapsed, new_timeout)))

        for job in dropped:
            self.jobs.pop(job.message_id, None)

        for queue_url, items in to_extend.items():
            for chunk in chunked(items):
                await self._extend_chunk(queue_url, chunk)

        for queue_url, jobs in to_delete.items():
            for chunk in chunked(jobs):
                await self._delete_chunk(queue_url, chunk)

        JOBS_INFLIGHT.set(len(self.jobs))

    async def _extend_chunk(self, queue_url: str, chunk: List[tuple]):
        queue_name = chunk[0][0].queue_name
        entries = [
            {"Id": job.message_id, "ReceiptHandle": job.receipt_handle, "VisibilityTimeout": timeout}
            for job, timeout, _ in chunk
        ]
        try:
            successful, failed = await self.sqs.change_visibility_batch(queue_url, entries)
        except Exception as e:
            # Leave the jobs as they are; the next tick tries again
            logger.error("Failed to extend %d messages on %s: %s", len(entries), queue_name, e)
            VISIBILITY_EXTENSIONS.labels(queue=queue_name, result="failed").inc(len(entries))
            return

        ok_ids = {item["Id"] for item in successful}
        for job, timeout, extend_at in chunk:
            if job.message_id in ok_ids:
                job.visibility_timeout = timeout
                job.extend_at_second = extend_at
        for item in failed:
            logger.error(
                "FAILED_TO_EXTEND_JOB %s on %s: %s %s",
                item.get("Id"), queue_name, item.get("Code"), item.get("Message"),
            )

        self.timeouts_extended += len(ok_ids)
        VISIBILITY_EXTENSIONS.labels(queue=queue_name, result="ok").inc(len(ok_ids))
        if failed:
            VISIBILITY_EXTENSIONS.labels(queue=queue_name, result="failed").inc(len(failed))
        self.events.emit(
            JobEvent.EXTEND_VISIBILITY_TIMEOUTS,
            queue=queue_name,
            count=len(entries),
            successful=len(ok_ids),
            failed=len(failed),
            message_ids=[entry["Id"] for entry in entries],
        )

    async def _delete_chunk(self, queue_url: str, jobs: List[Job]):
        queue_name = jobs[0].queue_name
        entries = [{"Id": job.message_id, "ReceiptHandle": job.receipt_handle} for job in jobs]
        try:
            successful, failed = await self.sqs.delete_batch(queue_url, entries)
        except Exception as e:
            # Whole call failed: put the jobs back so the next tick retries the delete
            logger.error("Failed to delete %d messages on %s: %s", len(entries), queue_name, e)
            for job in jobs:
                job.status = JobStatus.COMPLETE
            MESSAGES_DELETED.labels(queue=queue_name, result="failed").inc(len(entries))
            return

        for item in failed:
            logger.error(
                "FAILED_TO_DELETE_JOB %s on %s: %s %s",
                item.get("Id"), queue_name, item.get("Code"), item.get("Message"),
            )
        for job in jobs:
            self.jobs.pop(job.message_id, None)

        self.jobs_deleted += len(successful)
        MESSAGES_DELETED.labels(queue=queue_name, result="ok").inc(len(successful))
        if failed:
            MESSAGES_DELETED.labels(queue=queue_name, result="failed").inc(len(failed))
        self.events.emit(
            JobEvent.DELETE_MESSAGES,
            queue=queue_name,
            count=len(entries),
            successful=len(successful),
            failed=len(failed),
            message_ids=[entry["Id"] for entry in entries],
        )

    # Lifecycle

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._loop())
            logger.debug("Lease manager started.")

    def wake(self):
        self._wake.set()

    async def _loop(self):
        while True:
            try:
                await self.maintain_visibility()
            except Exception as e:
                logger.error(f"Error in visibility maintenance: {e}", exc_info=True)

            if self._shutting_down and not self.jobs:
                break

            interval = self.drain_interval if self._shutting_down else self.interval
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
        logger.debug("Lease manager drained.")

    async def shutdown(self):
        """
        Stops accepting jobs and returns once every tracked job reached a
        terminal queue-side action, after a final reconciliation tick.
        """
        self._shutting_down = True
        if self._task is None:
            # Never started: reconcile inline
            while self.jobs:
                await self.maintain_visibility()
                if self.jobs:
                    await asyncio.sleep(self.drain_interval)
            return
        self._wake.set()
        await self._task
