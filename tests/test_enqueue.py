import json

import pytest
from botocore.exceptions import ClientError
from tenacity import wait_none

from qrun.commands.enqueue import BatchSendError, Enqueuer, parse_batch_lines
from qrun.domain.errors import UsageError
from qrun.services.dedup import Deduplicator
from qrun.settings import Settings

from tests.conftest import FakeRedis


def throttled():
    return ClientError({"Error": {"Code": "RequestThrottled", "Message": "slow down"}}, "SendMessage")


def make_enqueuer(sqs, **overrides):
    enqueuer = Enqueuer(sqs, Settings(**overrides))
    enqueuer.retry_wait = wait_none()
    return enqueuer


@pytest.mark.asyncio
async def test_enqueue_creates_queue_triplet(boto_sqs, sqs):
    enqueuer = make_enqueuer(sqs)

    resp = await enqueuer.enqueue("test", "echo hi")

    created = [call["QueueName"] for call in boto_sqs.calls("create_queue")]
    assert created == ["qdone_test_dead", "qdone_test_failed", "qdone_test"]
    assert [m["Body"] for m in boto_sqs.visible[boto_sqs.url("qdone_test")]] == ["echo hi"]
    assert resp["MessageId"]

    fail_attrs = boto_sqs.attributes[boto_sqs.url("qdone_test_failed")]
    assert fail_attrs["DelaySeconds"] == "120"
    assert json.loads(fail_attrs["RedrivePolicy"]) == {
        "deadLetterTargetArn": "arn:aws:sqs:us-east-1:123456789012:qdone_test_dead",
        "maxReceiveCount": 3,
    }
    queue_policy = json.loads(boto_sqs.attributes[boto_sqs.url("qdone_test")]["RedrivePolicy"])
    assert queue_policy == {
        "deadLetterTargetArn": "arn:aws:sqs:us-east-1:123456789012:qdone_test_failed",
        "maxReceiveCount": 1,
    }


@pytest.mark.asyncio
async def test_enqueue_reuses_existing_queue(boto_sqs, sqs):
    boto_sqs.add_queue("qdone_test")
    enqueuer = make_enqueuer(sqs)

    await enqueuer.enqueue("test", "one")
    await enqueuer.enqueue("test", "two")

    assert boto_sqs.calls("create_queue") == []
    assert len(boto_sqs.calls("get_queue_url")) == 1


@pytest.mark.asyncio
async def test_no_dlq(boto_sqs, sqs):
    await make_enqueuer(sqs, dlq=False).enqueue("test", "echo hi")

    created = [call["QueueName"] for call in boto_sqs.calls("create_queue")]
    assert created == ["qdone_test_failed", "qdone_test"]
    assert "RedrivePolicy" not in boto_sqs.attributes[boto_sqs.url("qdone_test_failed")]


@pytest.mark.asyncio
async def test_tags_and_retention(boto_sqs, sqs):
    await make_enqueuer(sqs, tags={"team": "data"}, message_retention_period=3600).enqueue("test", "x")
    url = boto_sqs.url("qdone_test")
    assert boto_sqs.tags[url] == {"team": "data"}
    assert boto_sqs.attributes[url]["MessageRetentionPeriod"] == "3600"


@pytest.mark.asyncio
async def test_delay_on_standard_queue(boto_sqs, sqs):
    boto_sqs.add_queue("qdone_test")
    await make_enqueuer(sqs, delay=30).enqueue("test", "x")
    assert boto_sqs.calls("send_message")[0]["DelaySeconds"] == 30


@pytest.mark.asyncio
async def test_fifo_ids_per_invocation(boto_sqs, sqs):
    boto_sqs.add_queue("qdone_test.fifo")
    enqueuer = make_enqueuer(sqs, fifo=True)

    await enqueuer.enqueue("test", "one")
    await enqueuer.enqueue("test", "two")

    first, second = boto_sqs.calls("send_message")
    assert first["QueueUrl"] == boto_sqs.url("qdone_test.fifo")
    assert first["MessageGroupId"] == second["MessageGroupId"] == enqueuer.group_id
    assert first["MessageDeduplicationId"] == second["MessageDeduplicationId"]
    assert "DelaySeconds" not in first


@pytest.mark.asyncio
async def test_fifo_ids_per_message(boto_sqs, sqs):
    boto_sqs.add_queue("qdone_test.fifo")
    enqueuer = make_enqueuer(sqs, fifo=True, group_id_per_message=True, dedup_id_per_message=True)

    await enqueuer.enqueue("test", "one")
    await enqueuer.enqueue("test", "two")

    first, second = boto_sqs.calls("send_message")
    assert first["MessageGroupId"] != second["MessageGroupId"]
    assert first["MessageDeduplicationId"] != second["MessageDeduplicationId"]


@pytest.mark.asyncio
async def test_fifo_explicit_ids(boto_sqs, sqs):
    boto_sqs.add_queue("qdone_test.fifo")
    await make_enqueuer(sqs, fifo=True, group_id="g", deduplication_id="d").enqueue("test", "one")
    sent = boto_sqs.calls("send_message")[0]
    assert sent["MessageGroupId"] == "g"
    assert sent["MessageDeduplicationId"] == "d"


@pytest.mark.asyncio
async def test_throttled_send_is_retried(boto_sqs, sqs):
    boto_sqs.add_queue("qdone_test")
    boto_sqs.fail_next["send_message"].extend([throttled(), throttled()])

    resp = await make_enqueuer(sqs).enqueue("test", "x")

    assert resp["MessageId"]
    assert len(boto_sqs.calls("send_message")) == 3


@pytest.mark.asyncio
async def test_retries_give_up(boto_sqs, sqs):
    boto_sqs.add_queue("qdone_test")
    boto_sqs.fail_next["send_message"].extend([throttled() for _ in range(5)])

    with pytest.raises(ClientError):
        await make_enqueuer(sqs, send_retries=3).enqueue("test", "x")
    assert len(boto_sqs.calls("send_message")) == 3


@pytest.mark.asyncio
async def test_external_dedup_skips_repeat(boto_sqs, sqs):
    boto_sqs.add_queue("qdone_test")
    enqueuer = make_enqueuer(sqs)
    enqueuer.dedup = Deduplicator(FakeRedis())

    assert await enqueuer.enqueue("test", "x") is not None
    assert await enqueuer.enqueue("test", "x") is None
    assert len(boto_sqs.calls("send_message")) == 1


@pytest.mark.asyncio
async def test_batch_groups_by_queue_in_chunks_of_ten(boto_sqs, sqs):
    boto_sqs.add_queue("qdone_a")
    boto_sqs.add_queue("qdone_b")
    pairs = [("a", f"job {n}") for n in range(25)] + [("b", f"job {n}") for n in range(3)]

    sent = await make_enqueuer(sqs).enqueue_batch(pairs)

    assert sent == 28
    sizes = [(call["QueueUrl"].rsplit("/", 1)[-1], len(call["Entries"])) for call in boto_sqs.calls("send_message_batch")]
    assert sizes == [("qdone_a", 10), ("qdone_a", 10), ("qdone_a", 5), ("qdone_b", 3)]


@pytest.mark.asyncio
async def test_fifo_batch_gets_unique_dedup_ids(boto_sqs, sqs):
    boto_sqs.add_queue("qdone_a.fifo")
    await make_enqueuer(sqs, fifo=True).enqueue_batch([("a", "x"), ("a", "x")])
    entries = boto_sqs.calls("send_message_batch")[0]["Entries"]
    assert entries[0]["MessageDeduplicationId"] != entries[1]["MessageDeduplicationId"]


@pytest.mark.asyncio
async def test_batch_resends_only_failed_entries(boto_sqs, sqs):
    boto_sqs.add_queue("qdone_a")
    original = boto_sqs.send_message_batch
    attempts = []

    def flaky(**kwargs):
        attempts.append([entry["Id"] for entry in kwargs["Entries"]])
        resp = original(**kwargs)
        if len(attempts) == 1:
            resp["Successful"] = resp["Successful"][:1]
            resp["Failed"] = [{"Id": "1", "Code": "InternalError", "SenderFault": False}]
        return resp

    boto_sqs.send_message_batch = flaky
    sent = await make_enqueuer(sqs).enqueue_batch([("a", "x"), ("a", "y")])

    assert sent == 2
    assert attempts == [["0", "1"], ["1"]]


def test_parse_batch_lines():
    lines = ["test echo hi\n", "\n", "other  ls -la /tmp\n"]
    assert parse_batch_lines(lines) == [("test", "echo hi"), ("other", "ls -la /tmp")]


def test_parse_batch_lines_needs_command():
    with pytest.raises(UsageError):
        parse_batch_lines(["test\n"])


def test_batch_send_error_without_failed_entries():
    error = BatchSendError([])
    assert "unknown" in str(error)
    assert error.failed == []
