import logging
from typing import Any, Dict, Optional

from qrun.services.cloudwatch import CloudWatchClient
from qrun.services.qrl_cache import QrlCache, interpret_wildcard
from qrun.services.sqs import queue_name_from_url

logger = logging.getLogger(__name__)

MONITOR_ATTRIBUTES = [
    "ApproximateNumberOfMessages",
    "ApproximateNumberOfMessagesDelayed",
    "ApproximateNumberOfMessagesNotVisible",
]

async def get_aggregate_data(qrl_cache: QrlCache, queue_name: str) -> Dict[str, Any]:
    """
    Sums the message count attributes of every queue matching a single
    wildcard pattern. contributing_queue_names lists queues with any
    non-zero count.
    """
    prefix, suffix_re = interpret_wildcard(queue_name)
    urls = await qrl_cache.sqs.list_queues(prefix)
    if suffix_re is not None:
        urls = [url for url in urls if suffix_re.search(queue_name_from_url(url))]

    total: Dict[str, Any] = {"queue_name": queue_name, "total_queues": 0}
    contributing = []
    for url in urls:
        attributes = await qrl_cache.sqs.get_attributes(url, MONITOR_ATTRIBUTES)
        total["total_queues"] += 1
        for key, raw in attributes.items():
            value = int(raw)
            if value > 0:
                if queue_name_from_url(url) not in contributing:
                    contributing.append(queue_name_from_url(url))
                total[key] = total.get(key, 0) + value
    total["contributing_queue_names"] = contributing
    return total

async def monitor(qrl_cache: QrlCache, queue_name: str, cloudwatch: Optional[CloudWatchClient] = None, save: bool = False) -> Dict[str, Any]:
    total = await get_aggregate_data(qrl_cache, queue_name)
    if save and cloudwatch is not None:
        await cloudwatch.put_aggregate_data(total)
        logger.info("Saved aggregate for %s to CloudWatch", queue_name)
    return total
