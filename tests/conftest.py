import itertools
import random
from collections import defaultdict

import pytest
from botocore.exceptions import ClientError

from qrun.services.events import EventLog
from qrun.services.sqs import SqsClient
from qrun.settings import Settings, reset_settings

ACCOUNT_URL = "https://sqs.us-east-1.amazonaws.com/123456789012"


def missing_queue_error(operation: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "AWS.SimpleQueueService.NonExistentQueue", "Message": "The specified queue does not exist."}},
        operation,
    )


class FakeBotoSqs:
    """
    In-memory stand-in for a boto3 SQS client. Only the calls qrun makes
    are implemented; every call is recorded in `requests`.
    """

    def __init__(self):
        self.queues = {}
        self.attributes = {}
        self.tags = {}
        self.visible = defaultdict(list)
        self.inflight = {}
        self.requests = []
        self.fail_next = defaultdict(list)
        self._ids = itertools.count(1)

    # Helpers for tests

    def url(self, name: str) -> str:
        return f"{ACCOUNT_URL}/{name}"

    def add_queue(self, name: str, **attributes) -> str:
        url = self.url(name)
        self.queues[name] = url
        self.attributes[url] = {
            "QueueArn": f"arn:aws:sqs:us-east-1:123456789012:{name}",
            "ApproximateNumberOfMessages": "0",
            "ApproximateNumberOfMessagesNotVisible": "0",
            "ApproximateNumberOfMessagesDelayed": "0",
        }
        self.attributes[url].update({key: str(value) for key, value in attributes.items()})
        return url

    def put(self, name: str, body: str, group_id=None) -> str:
        message_id = f"msg-{next(self._ids)}"
        message = {"MessageId": message_id, "ReceiptHandle": f"rh-{message_id}", "Body": body, "Attributes": {}}
        if group_id:
            message["Attributes"]["MessageGroupId"] = group_id
        self.visible[self.url(name)].append(message)
        return message_id

    def calls(self, operation: str):
        return [kwargs for op, kwargs in self.requests if op == operation]

    def _record(self, operation: str, kwargs):
        self.requests.append((operation, kwargs))
        if self.fail_next[operation]:
            raise self.fail_next[operation].pop(0)

    def _check(self, url: str, operation: str):
        if url not in self.attributes:
            raise missing_queue_error(operation)

    # boto3 surface

    def receive_message(self, **kwargs):
        self._record("receive_message", kwargs)
        url = kwargs["QueueUrl"]
        self._check(url, "ReceiveMessage")
        batch = self.visible[url][: kwargs["MaxNumberOfMessages"]]
        del self.visible[url][: len(batch)]
        for message in batch:
            self.inflight[message["ReceiptHandle"]] = (url, message)
        return {"Messages": [dict(message) for message in batch]} if batch else {}

    def change_message_visibility(self, **kwargs):
        self._record("change_message_visibility", kwargs)
        if kwargs["VisibilityTimeout"] == 0:
            url, message = self.inflight.pop(kwargs["ReceiptHandle"])
            self.visible[url].append(message)
        return {}

    def change_message_visibility_batch(self, **kwargs):
        self._record("change_message_visibility_batch", kwargs)
        return {"Successful": [{"Id": entry["Id"]} for entry in kwargs["Entries"]], "Failed": []}

    def delete_message_batch(self, **kwargs):
        self._record("delete_message_batch", kwargs)
        for entry in kwargs["Entries"]:
            self.inflight.pop(entry["ReceiptHandle"], None)
        return {"Successful": [{"Id": entry["Id"]} for entry in kwargs["Entries"]], "Failed": []}

    def list_queues(self, **kwargs):
        self._record("list_queues", kwargs)
        urls = [url for name, url in sorted(self.queues.items()) if name.startswith(kwargs["QueueNamePrefix"])]
        return {"QueueUrls": urls} if urls else {}

    def get_queue_url(self, **kwargs):
        self._record("get_queue_url", kwargs)
        if kwargs["QueueName"] not in self.queues:
            raise missing_queue_error("GetQueueUrl")
        return {"QueueUrl": self.queues[kwargs["QueueName"]]}

    def get_queue_attributes(self, **kwargs):
        self._record("get_queue_attributes", kwargs)
        url = kwargs["QueueUrl"]
        self._check(url, "GetQueueAttributes")
        names = kwargs["AttributeNames"]
        if "All" in names:
            return {"Attributes": dict(self.attributes[url])}
        return {"Attributes": {name: self.attributes[url][name] for name in names if name in self.attributes[url]}}

    def set_queue_attributes(self, **kwargs):
        self._record("set_queue_attributes", kwargs)
        self.attributes[kwargs["QueueUrl"]].update(kwargs["Attributes"])
        return {}

    def create_queue(self, **kwargs):
        self._record("create_queue", kwargs)
        name = kwargs["QueueName"]
        url = self.queues.get(name) or self.add_queue(name)
        self.attributes[url].update(kwargs.get("Attributes", {}))
        self.tags[url] = kwargs.get("tags", {})
        return {"QueueUrl": url}

    def delete_queue(self, **kwargs):
        self._record("delete_queue", kwargs)
        url = kwargs["QueueUrl"]
        self._check(url, "DeleteQueue")
        del self.attributes[url]
        self.queues = {name: u for name, u in self.queues.items() if u != url}
        return {}

    def send_message(self, **kwargs):
        self._record("send_message", kwargs)
        url = kwargs["QueueUrl"]
        self._check(url, "SendMessage")
        message_id = f"msg-{next(self._ids)}"
        self.visible[url].append(
            {"MessageId": message_id, "ReceiptHandle": f"rh-{message_id}", "Body": kwargs["MessageBody"], "Attributes": {}}
        )
        return {"MessageId": message_id}

    def send_message_batch(self, **kwargs):
        self._record("send_message_batch", kwargs)
        url = kwargs["QueueUrl"]
        self._check(url, "SendMessageBatch")
        successful = []
        for entry in kwargs["Entries"]:
            message_id = f"msg-{next(self._ids)}"
            self.visible[url].append(
                {"MessageId": message_id, "ReceiptHandle": f"rh-{message_id}", "Body": entry["MessageBody"], "Attributes": {}}
            )
            successful.append({"Id": entry["Id"], "MessageId": message_id})
        return {"Successful": successful, "Failed": []}


class FakeBotoCloudWatch:
    def __init__(self, sums=None):
        # metric name -> sum returned for every queue
        self.sums = sums or {}
        self.requests = []

    def get_metric_statistics(self, **kwargs):
        self.requests.append(("get_metric_statistics", kwargs))
        value = self.sums.get(kwargs["MetricName"], 0)
        return {"Datapoints": [{"Sum": value}] if value else []}

    def put_metric_data(self, **kwargs):
        self.requests.append(("put_metric_data", kwargs))
        return {}


class FakeRedis:
    def __init__(self):
        self.store = {}
        self.expiry = {}
        self.closed = False

    async def incr(self, key):
        self.store[key] = int(self.store.get(key, 0)) + 1
        return self.store[key]

    async def expire(self, key, seconds):
        self.expiry[key] = seconds
        return True

    async def delete(self, key):
        existed = key in self.store
        self.store.pop(key, None)
        return int(existed)

    async def get(self, key):
        return self.store.get(key)

    async def setex(self, key, seconds, value):
        self.store[key] = value
        self.expiry[key] = seconds
        return True

    async def aclose(self):
        self.closed = True


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture(autouse=True)
def _reset_settings():
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings():
    return Settings(wait_time=0, disable_log=True)


@pytest.fixture
def boto_sqs():
    return FakeBotoSqs()


@pytest.fixture
def sqs(boto_sqs):
    return SqsClient(boto_sqs)


@pytest.fixture
def events(settings):
    return EventLog(settings)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rng():
    return random.Random(7)
