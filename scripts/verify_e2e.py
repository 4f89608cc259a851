#!/usr/bin/env python3
"""
End to end check against a real SQS endpoint (AWS, or a local emulator
such as ElasticMQ / LocalStack via QRUN_ENDPOINT_URL).

Enqueues a few commands on a throwaway queue, drains it with a worker and
checks that successes were deleted and the failure went to the fail queue.
"""
import asyncio
import logging
import os
import sys
import uuid

sys.path.append(os.getcwd())

from qrun.commands.enqueue import Enqueuer
from qrun.logging_config import configure_logging
from qrun.scheduler.consumer import listen
from qrun.services.qrl_cache import QrlCache, normalize_fail_queue_name, normalize_queue_name
from qrun.services.sqs import SqsClient
from qrun.settings import Settings

logger = logging.getLogger(__name__)

async def verify():
    queue = f"e2e_{uuid.uuid4().hex[:8]}"
    settings = Settings(wait_time=1, fail_delay=0, disable_log=True)
    sqs = SqsClient.from_settings(settings)

    print(f"Enqueueing on {queue}...")
    enqueuer = Enqueuer(sqs, settings)
    sent = await enqueuer.enqueue_batch([(queue, "true"), (queue, "sh -c 'sleep 2'"), (queue, "false")])
    assert sent == 3, f"expected 3 messages sent, got {sent}"

    print("Draining...")
    stats = await listen([queue], settings=settings, sqs=sqs)
    print(f"Ran {stats.jobs_run} jobs: {stats.jobs_succeeded} succeeded {stats.jobs_failed} failed")
    assert stats.jobs_succeeded == 2
    assert stats.jobs_failed == 1

    qrl_cache = QrlCache(sqs)
    url = await qrl_cache.get(normalize_queue_name(queue, settings))
    fail_url = await qrl_cache.get(normalize_fail_queue_name(queue, settings))
    # The failed message stays invisible until its lease runs out, then redrives to the fail queue
    attributes = await sqs.get_attributes(url, ["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"])
    if attributes.get("ApproximateNumberOfMessages") != "0" or attributes.get("ApproximateNumberOfMessagesNotVisible") != "1":
        print(f"FAILED: unexpected queue state {attributes}")
        sys.exit(1)

    print("Cleaning up...")
    for queue_url in (url, fail_url):
        await sqs.delete_queue(queue_url)
    await sqs.delete_queue(await qrl_cache.get(f"{settings.prefix}{queue}{settings.dlq_suffix}"))

    print(f"SUCCESS: {sqs.calls} SQS calls")

if __name__ == "__main__":
    configure_logging(verbose="-v" in sys.argv)
    asyncio.run(verify())
