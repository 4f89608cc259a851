import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.exceptions import ClientError

from qrun.metrics import SQS_CALLS

logger = logging.getLogger(__name__)

# The SQS per-call batch limit for send/delete/change-visibility
MAX_BATCH_SIZE = 10

MISSING_QUEUE_CODES = {
    "AWS.SimpleQueueService.NonExistentQueue",
    "QueueDoesNotExist",
}

THROTTLING_CODES = {
    "RequestThrottled",
    "ThrottlingException",
    "KmsThrottled",
    "KMS.ThrottlingException",
}

def error_code(exc: BaseException) -> Optional[str]:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None

def is_queue_missing(exc: BaseException) -> bool:
    return error_code(exc) in MISSING_QUEUE_CODES

def is_throttled(exc: BaseException) -> bool:
    return error_code(exc) in THROTTLING_CODES

def queue_name_from_url(url: str) -> str:
    return url.rstrip("/").rsplit("/", 1)[-1]

def chunked(items: list, size: int = MAX_BATCH_SIZE):
    for i in range(0, len(items), size):
        yield items[i:i + size]

class SqsClient:
    """
    Async facade over a boto3 SQS client.

    boto3 is blocking, so every call runs in a worker thread. The wrapped
    client is injected so tests and alternative endpoints can swap it.
    """

    def __init__(self, client):
        self.client = client
        self.calls = 0

    @classmethod
    def from_settings(cls, settings) -> "SqsClient":
        session = boto3.session.Session(region_name=settings.region)
        return cls(session.client("sqs", endpoint_url=settings.endpoint_url))

    async def _call(self, operation: str, **kwargs) -> Dict[str, Any]:
        self.calls += 1
        SQS_CALLS.labels(operation=operation).inc()
        method = getattr(self.client, operation)
        return await asyncio.to_thread(method, **kwargs)

    async def receive(
        self,
        queue_url: str,
        max_messages: int = 1,
        wait_seconds: int = 20,
        visibility_timeout: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params = {
            "QueueUrl": queue_url,
            "MaxNumberOfMessages": max(1, min(max_messages, MAX_BATCH_SIZE)),
            "WaitTimeSeconds": wait_seconds,
            "AttributeNames": ["All"],
            "MessageAttributeNames": ["All"],
        }
        if visibility_timeout is not None:
            params["VisibilityTimeout"] = visibility_timeout
        resp = await self._call("receive_message", **params)
        return resp.get("Messages", [])

    async def change_visibility(self, queue_url: str, receipt_handle: str, timeout: int):
        return await self._call(
            "change_message_visibility",
            QueueUrl=queue_url,
            ReceiptHandle=receipt_handle,
            VisibilityTimeout=timeout,
        )

    async def change_visibility_batch(self, queue_url: str, entries: List[Dict[str, Any]]) -> Tuple[list, list]:
        resp = await self._call("change_message_visibility_batch", QueueUrl=queue_url, Entries=entries)
        return resp.get("Successful", []), resp.get("Failed", [])

    async def delete_batch(self, queue_url: str, entries: List[Dict[str, Any]]) -> Tuple[list, list]:
        resp = await self._call("delete_message_batch", QueueUrl=queue_url, Entries=entries)
        return resp.get("Successful", []), resp.get("Failed", [])

    async def list_queues(self, prefix: str) -> List[str]:
        """
        Returns every queue URL whose name starts with prefix, following
        NextToken until the listing is exhausted.
        """
        urls: List[str] = []
        params = {"QueueNamePrefix": prefix, "MaxResults": 1000}
        while True:
            resp = await self._call("list_queues", **params)
            urls.extend(resp.get("QueueUrls", []))
            token = resp.get("NextToken")
            if not token:
                return urls
            params["NextToken"] = token

    async def get_queue_url(self, name: str) -> str:
        resp = await self._call("get_queue_url", QueueName=name)
        return resp["QueueUrl"]

    async def get_attributes(self, queue_url: str, attribute_names: Optional[List[str]] = None) -> Dict[str, str]:
        resp = await self._call(
            "get_queue_attributes",
            QueueUrl=queue_url,
            AttributeNames=attribute_names or ["All"],
        )
        return resp.get("Attributes", {})

    async def set_attributes(self, queue_url: str, attributes: Dict[str, str]):
        return await self._call("set_queue_attributes", QueueUrl=queue_url, Attributes=attributes)

    async def create_queue(self, name: str, attributes: Dict[str, str], tags: Optional[Dict[str, str]] = None) -> str:
        params: Dict[str, Any] = {"QueueName": name, "Attributes": attributes}
        if tags:
            params["tags"] = tags
        resp = await self._call("create_queue", **params)
        return resp["QueueUrl"]

    async def delete_queue(self, queue_url: str):
        return await self._call("delete_queue", QueueUrl=queue_url)

    async def send_message(self, queue_url: str, body: str, **params) -> Dict[str, Any]:
        return await self._call("send_message", QueueUrl=queue_url, MessageBody=body, **params)

    async def send_message_batch(self, queue_url: str, entries: List[Dict[str, Any]]) -> Dict[str, Any]:
        return await self._call("send_message_batch", QueueUrl=queue_url, Entries=entries)
