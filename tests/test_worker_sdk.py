import asyncio

import pytest

from qrun.settings import Settings
from qrun_sdk import DoNotProcess, Worker


@pytest.fixture
def queue(boto_sqs):
    boto_sqs.add_queue("qdone_emails")
    return boto_sqs


def make_worker(sqs, rng, handler):
    settings = Settings(wait_time=0, disable_log=True, poll_interval=0.01)
    return Worker(["emails"], handler, settings=settings, sqs=sqs, rng=rng)


@pytest.mark.asyncio
async def test_middleware_wraps_handler_in_order(queue, sqs, rng):
    queue.put("qdone_emails", "hello")
    order = []

    async def handler(queue_name, payload):
        order.append(f"handler:{payload}")
        worker.request_shutdown()

    worker = make_worker(sqs, rng, handler)

    async def outer(queue_name, payload, call_next):
        order.append("outer:before")
        result = await call_next(queue_name, payload)
        order.append("outer:after")
        return result

    async def inner(queue_name, payload, call_next):
        order.append(f"inner:{queue_name}")
        return await call_next(queue_name, payload)

    worker.add_middleware(outer)
    worker.add_middleware(inner)

    stats = await asyncio.wait_for(worker.run(install_signal_handlers=False), timeout=5)

    assert order == ["outer:before", "inner:emails", "handler:hello", "outer:after"]
    assert stats.jobs_succeeded == 1


@pytest.mark.asyncio
async def test_middleware_can_refuse(queue, sqs, rng):
    queue.put("qdone_emails", "spam")
    handled = []

    async def handler(queue_name, payload):
        handled.append(payload)

    worker = make_worker(sqs, rng, handler)

    async def refuse_spam(queue_name, payload, call_next):
        worker.request_shutdown()
        if payload == "spam":
            raise DoNotProcess()
        return await call_next(queue_name, payload)

    worker.add_middleware(refuse_spam)
    stats = await asyncio.wait_for(worker.run(install_signal_handlers=False), timeout=5)

    assert handled == []
    assert stats.jobs_run == 0
    assert len(queue.visible[queue.url("qdone_emails")]) == 1
