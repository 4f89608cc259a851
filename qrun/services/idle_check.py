import asyncio
import logging
from typing import Any, Dict, List, Optional

from qrun.domain.models import QueuePair
from qrun.services.cache import Cache
from qrun.services.cloudwatch import CloudWatchClient
from qrun.services.sqs import SqsClient

logger = logging.getLogger(__name__)

# Queue attributes that must all be "0" for a queue to look idle right now
ATTRIBUTE_NAMES = [
    "ApproximateNumberOfMessages",
    "ApproximateNumberOfMessagesNotVisible",
    "ApproximateNumberOfMessagesDelayed",
]

# CloudWatch metrics checked in order; the first is usually decisive
METRIC_NAMES = [
    "NumberOfMessagesSent",
    "NumberOfMessagesReceived",
    "NumberOfMessagesDeleted",
    "ApproximateNumberOfMessagesVisible",
    "ApproximateNumberOfMessagesNotVisible",
    "ApproximateNumberOfMessagesDelayed",
    "ApproximateAgeOfOldestMessage",
]

class IdleChecker:
    """
    Decides whether queues are idle.

    cheap_check costs one SQS call (or nothing, when the Redis cache has a
    fresh answer). check_idle follows up with CloudWatch, one metric at a
    time, only when the cheap check says the queue is empty right now.
    """

    def __init__(
        self,
        sqs: SqsClient,
        settings,
        cloudwatch: Optional[CloudWatchClient] = None,
        cache: Optional[Cache] = None,
    ):
        self.sqs = sqs
        self.settings = settings
        self.cloudwatch = cloudwatch
        self.cache = cache

    def _short_name(self, qname: str) -> str:
        prefix = self.settings.prefix
        return qname[len(prefix):] if qname.startswith(prefix) else qname

    async def cheap_check(self, pair: QueuePair) -> Dict[str, Any]:
        cache_key = f"cheap-idle-check:{pair.url}"
        result = None
        sqs_calls = 0
        if self.cache is not None:
            result = await self.cache.get(cache_key)
        if result is None:
            attributes = await self.sqs.get_attributes(pair.url, ATTRIBUTE_NAMES)
            sqs_calls = 1
            result = {
                "queue": self._short_name(pair.name),
                "attributes": attributes,
                "idle": all(attributes.get(name) == "0" for name in ATTRIBUTE_NAMES),
            }
            if self.cache is not None:
                await self.cache.set(cache_key, result)
        result["api_calls"] = {"SQS": sqs_calls, "CloudWatch": 0}
        return result

    async def check_idle(self, pair: QueuePair) -> Dict[str, Any]:
        cheap = await self.cheap_check(pair)
        result = {
            "queue": self._short_name(pair.name),
            "cheap": cheap,
            "idle": cheap["idle"],
            "api_calls": dict(cheap["api_calls"]),
        }
        if not cheap["idle"]:
            return result
        if self.cloudwatch is None:
            raise ValueError("check_idle needs a CloudWatch client")

        for metric_name in METRIC_NAMES:
            value = await self.cloudwatch.get_metric_sum(pair.name, metric_name, self.settings.idle_for)
            result[metric_name] = value
            result["api_calls"]["CloudWatch"] += 1
            if value != 0:
                result["idle"] = False
                break
        return result

    async def active_pairs(self, pairs: List[QueuePair]) -> List[QueuePair]:
        results = await asyncio.gather(*(self.cheap_check(pair) for pair in pairs))
        return [pair for pair, result in zip(pairs, results) if not result["idle"]]
