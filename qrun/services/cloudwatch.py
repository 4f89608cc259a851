import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import boto3

logger = logging.getLogger(__name__)

MONITOR_NAMESPACE = "qmonitor"

class CloudWatchClient:
    """Async facade over a boto3 CloudWatch client, same shape as SqsClient."""

    def __init__(self, client):
        self.client = client
        self.calls = 0

    @classmethod
    def from_settings(cls, settings) -> "CloudWatchClient":
        session = boto3.session.Session(region_name=settings.region)
        return cls(session.client("cloudwatch", endpoint_url=settings.endpoint_url))

    async def _call(self, operation: str, **kwargs) -> Dict[str, Any]:
        self.calls += 1
        method = getattr(self.client, operation)
        return await asyncio.to_thread(method, **kwargs)

    async def get_metric_sum(self, queue_name: str, metric_name: str, minutes: int, now: Optional[datetime] = None) -> float:
        """Sum of an AWS/SQS metric for one queue over the last `minutes`."""
        now = now or datetime.now(timezone.utc)
        resp = await self._call(
            "get_metric_statistics",
            Namespace="AWS/SQS",
            MetricName=metric_name,
            Dimensions=[{"Name": "QueueName", "Value": queue_name}],
            StartTime=now - timedelta(minutes=minutes),
            EndTime=now,
            Period=3600,
            Statistics=["Sum"],
        )
        return sum(point.get("Sum", 0) for point in resp.get("Datapoints", []))

    async def put_aggregate_data(self, total: Dict[str, Any], timestamp: Optional[datetime] = None):
        """Publishes a monitor aggregate (see commands.monitor) under the qmonitor namespace."""
        now = timestamp or datetime.now(timezone.utc)
        dimensions = [{"Name": "queueName", "Value": total["queue_name"]}]

        values = {
            "totalQueues": total.get("total_queues", 0),
            "contributingQueueCount": len(total.get("contributing_queue_names", [])),
            "ApproximateNumberOfMessages": total.get("ApproximateNumberOfMessages", 0),
            "ApproximateNumberOfMessagesDelayed": total.get("ApproximateNumberOfMessagesDelayed", 0),
            "ApproximateNumberOfMessagesNotVisible": total.get("ApproximateNumberOfMessagesNotVisible", 0),
        }
        metric_data: List[Dict[str, Any]] = [
            {
                "MetricName": name,
                "Dimensions": dimensions,
                "Timestamp": now,
                "Value": value,
                "Unit": "Count",
            }
            for name, value in values.items()
        ]
        await self._call("put_metric_data", Namespace=MONITOR_NAMESPACE, MetricData=metric_data)
        logger.debug("Published %d monitor metrics for %s", len(metric_data), total["queue_name"])
