import json
import logging
import uuid
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from qrun.domain.errors import UsageError
from qrun.services.dedup import Deduplicator
from qrun.services.qrl_cache import (
    QrlCache,
    normalize_dlq_name,
    normalize_fail_queue_name,
    normalize_queue_name,
)
from qrun.services.sqs import SqsClient, chunked, is_queue_missing, is_throttled

logger = logging.getLogger(__name__)

class BatchSendError(Exception):
    """Some entries of a SendMessageBatch call were rejected."""
    def __init__(self, failed: List[Dict[str, Any]]):
        self.failed = failed
        code = failed[0].get("Code") if failed else "unknown"
        super().__init__(f"{len(failed)} messages failed to send: {code}")

def _is_retryable(exc: BaseException) -> bool:
    # Queues can be briefly invisible right after creation
    return is_throttled(exc) or is_queue_missing(exc) or isinstance(exc, BatchSendError)

def _redrive_policy(target_arn: str, max_receive_count: int) -> str:
    # Same shape SQS returns from GetQueueAttributes, so check can compare strings
    return json.dumps(
        {"deadLetterTargetArn": target_arn, "maxReceiveCount": max_receive_count},
        separators=(",", ":"),
    )

class Enqueuer:
    """
    Sends commands to queues, creating the queue / fail queue / DLQ
    triplet on first use.

    One instance is one "invocation": FIFO group and deduplication ids that
    default to a per-invocation value are generated once here.
    """

    def __init__(
        self,
        sqs: SqsClient,
        settings,
        qrl_cache: Optional[QrlCache] = None,
        dedup: Optional[Deduplicator] = None,
    ):
        self.sqs = sqs
        self.settings = settings
        self.qrl_cache = qrl_cache or QrlCache(sqs)
        self.dedup = dedup
        self.group_id = settings.group_id or str(uuid.uuid4())
        self.deduplication_id = settings.deduplication_id or str(uuid.uuid4())
        self.retry_wait = wait_random_exponential(multiplier=0.1, max=10)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(max(1, self.settings.send_retries)),
            wait=self.retry_wait,
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )

    # Queue parameters

    def base_attributes(self) -> Dict[str, str]:
        attributes = {"MessageRetentionPeriod": str(self.settings.message_retention_period)}
        if self.settings.fifo:
            attributes["FifoQueue"] = "true"
        return attributes

    def dlq_attributes(self) -> Dict[str, str]:
        return self.base_attributes()

    def fail_queue_attributes(self, dlq_arn: Optional[str]) -> Dict[str, str]:
        attributes = self.base_attributes()
        attributes["DelaySeconds"] = str(self.settings.fail_delay)
        if self.settings.dlq and dlq_arn:
            attributes["RedrivePolicy"] = _redrive_policy(dlq_arn, self.settings.dlq_after)
        return attributes

    def queue_attributes(self, fail_arn: str) -> Dict[str, str]:
        attributes = self.base_attributes()
        attributes["RedrivePolicy"] = _redrive_policy(fail_arn, 1)
        return attributes

    async def queue_arn(self, url: str) -> str:
        attributes = await self.sqs.get_attributes(url, ["QueueArn"])
        return attributes["QueueArn"]

    # Get or create

    async def _get_or_create(self, qname: str, attributes_fn) -> str:
        try:
            return await self.qrl_cache.get(qname)
        except Exception as e:
            if not is_queue_missing(e):
                raise
        attributes = await attributes_fn()
        logger.info("Creating queue %s", qname)
        url = await self.sqs.create_queue(qname, attributes, self.settings.tags)
        self.qrl_cache.set(qname, url)
        return url

    async def get_or_create_dlq(self, queue: str) -> str:
        async def attributes():
            return self.dlq_attributes()
        return await self._get_or_create(normalize_dlq_name(queue, self.settings), attributes)

    async def get_or_create_fail_queue(self, queue: str) -> str:
        async def attributes():
            dlq_arn = None
            if self.settings.dlq:
                dlq_arn = await self.queue_arn(await self.get_or_create_dlq(queue))
            return self.fail_queue_attributes(dlq_arn)
        return await self._get_or_create(normalize_fail_queue_name(queue, self.settings), attributes)

    async def get_or_create_queue(self, queue: str) -> str:
        async def attributes():
            fail_arn = await self.queue_arn(await self.get_or_create_fail_queue(queue))
            return self.queue_attributes(fail_arn)
        return await self._get_or_create(normalize_queue_name(queue, self.settings), attributes)

    # Messages

    def message_params(self, command: str, per_message_dedup: bool = False) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if self.settings.fifo:
            params["MessageGroupId"] = (
                str(uuid.uuid4()) if self.settings.group_id_per_message else self.group_id
            )
            if self.settings.deduplication_id:
                params["MessageDeduplicationId"] = self.settings.deduplication_id
            elif self.settings.dedup_id_per_message or per_message_dedup:
                params["MessageDeduplicationId"] = str(uuid.uuid4())
            else:
                params["MessageDeduplicationId"] = self.deduplication_id
        elif self.settings.delay:
            # FIFO queues only support queue-level delays
            params["DelaySeconds"] = self.settings.delay
        return params

    async def enqueue(self, queue: str, command: str) -> Optional[Dict[str, Any]]:
        """
        Sends one command. Returns the SendMessage response, or None when
        external dedup says the command is already queued.
        """
        if self.dedup is not None and not await self.dedup.should_enqueue(command):
            logger.info("Skipping duplicate command on %s", queue)
            return None

        qname = normalize_queue_name(queue, self.settings)
        params = self.message_params(command)
        async for attempt in self._retrying():
            with attempt:
                try:
                    url = await self.get_or_create_queue(queue)
                    return await self.sqs.send_message(url, command, **params)
                except Exception as e:
                    if is_queue_missing(e):
                        self.qrl_cache.invalidate(qname)
                    raise

    async def enqueue_batch(self, pairs: List[Tuple[str, str]]) -> int:
        """
        Sends (queue, command) pairs grouped by queue, ten per call.
        Returns the number of messages sent.
        """
        by_queue: "OrderedDict[str, List[str]]" = OrderedDict()
        for queue, command in pairs:
            by_queue.setdefault(queue, []).append(command)

        sent = 0
        for queue, commands in by_queue.items():
            if self.dedup is not None:
                allowed = await self.dedup.should_enqueue_multi(commands)
                skipped = allowed.count(False)
                if skipped:
                    logger.info("Skipping %d duplicate commands on %s", skipped, queue)
                commands = [command for command, ok in zip(commands, allowed) if ok]
            for chunk in chunked(commands):
                sent += await self._send_chunk(queue, chunk)
        return sent

    async def _send_chunk(self, queue: str, commands: List[str]) -> int:
        qname = normalize_queue_name(queue, self.settings)
        pending = [
            dict(Id=str(i), MessageBody=command, **self.message_params(command, per_message_dedup=True))
            for i, command in enumerate(commands)
        ]
        sent = 0
        async for attempt in self._retrying():
            with attempt:
                try:
                    url = await self.get_or_create_queue(queue)
                    resp = await self.sqs.send_message_batch(url, pending)
                except Exception as e:
                    if is_queue_missing(e):
                        self.qrl_cache.invalidate(qname)
                    raise
                ok_ids = {item["Id"] for item in resp.get("Successful", [])}
                sent += len(ok_ids)
                pending = [entry for entry in pending if entry["Id"] not in ok_ids]
                failed = resp.get("Failed", [])
                if pending:
                    if any(item.get("SenderFault") for item in failed):
                        logger.error("SQS rejected messages on %s: %s", qname, failed)
                        return sent
                    raise BatchSendError(failed)
        return sent

def parse_batch_lines(lines) -> List[Tuple[str, str]]:
    """
    Reads `<queue> <command...>` lines. Blank lines are skipped; a line with
    a queue but no command is a usage error.
    """
    pairs = []
    for number, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue
        parts = line.split(None, 1)
        if len(parts) != 2:
            raise UsageError(f"Line {number} needs both a queue and a command: {line!r}")
        pairs.append((parts[0], parts[1]))
    return pairs
