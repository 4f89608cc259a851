import asyncio
import logging
from typing import Any, Dict, List, Optional

from qrun.domain.models import QueuePair
from qrun.services.idle_check import IdleChecker
from qrun.services.qrl_cache import QrlCache, normalize_fail_queue_name, normalize_queue_name
from qrun.services.sqs import SqsClient, is_queue_missing

logger = logging.getLogger(__name__)

def _add_calls(total: Dict[str, int], extra: Dict[str, int]) -> Dict[str, int]:
    return {key: total.get(key, 0) + extra.get(key, 0) for key in ("SQS", "CloudWatch")}

class IdleQueues:
    """
    Finds queues with no traffic for the last idle_for minutes, optionally
    deleting them. By default a queue and its fail queue are judged (and
    deleted) together; unpair checks every queue on its own.
    """

    def __init__(self, sqs: SqsClient, checker: IdleChecker, settings, qrl_cache: Optional[QrlCache] = None):
        self.sqs = sqs
        self.checker = checker
        self.settings = settings
        self.qrl_cache = qrl_cache or QrlCache(sqs)

    async def _delete(self, pair: QueuePair) -> Dict[str, int]:
        await self.sqs.delete_queue(pair.url)
        logger.info("Deleted %s", pair.name)
        return {"SQS": 1, "CloudWatch": 0}

    def _report(self, pair: QueuePair, idle: bool):
        state = "idle" if idle else "active"
        logger.info("Queue %s has been %s for the last %s minutes.", pair.name, state, self.settings.idle_for)

    async def process_queue(self, pair: QueuePair, delete: bool) -> Dict[str, Any]:
        result = await self.checker.check_idle(pair)
        self._report(pair, result["idle"])
        if result["idle"] and delete:
            result["api_calls"] = _add_calls(result["api_calls"], await self._delete(pair))
            result["deleted"] = True
        return result

    async def process_queue_pair(self, pair: QueuePair, delete: bool) -> Dict[str, Any]:
        result = await self.checker.check_idle(pair)
        self._report(pair, result["idle"])
        if not result["idle"]:
            return result

        fail_name = normalize_fail_queue_name(pair.name, self.settings)
        try:
            fail_pair = QueuePair(name=fail_name, url=await self.qrl_cache.get(fail_name))
        except Exception as e:
            if not is_queue_missing(e):
                raise
            # Fail queue never created or already gone
            logger.info("Queue %s does not exist.", fail_name)
            if delete:
                result["api_calls"] = _add_calls(result["api_calls"], await self._delete(pair))
                result["deleted"] = True
            return result

        fail_result = await self.checker.check_idle(fail_pair)
        self._report(fail_pair, fail_result["idle"])
        result["failq"] = fail_result
        result["idle"] = result["idle"] and fail_result["idle"]
        result["api_calls"] = _add_calls(result["api_calls"], fail_result["api_calls"])
        if result["idle"] and delete:
            for calls in await asyncio.gather(self._delete(pair), self._delete(fail_pair)):
                result["api_calls"] = _add_calls(result["api_calls"], calls)
            result["deleted"] = True
        return result

    async def run(self, queues: List[str], delete: bool = False, unpair: bool = False) -> List[Dict[str, Any]]:
        """Returns one result per checked queue; empty when nothing matched."""
        qnames = [normalize_queue_name(queue, self.settings) for queue in queues]
        pairs = await self.qrl_cache.get_qname_url_pairs(qnames)
        pairs = [
            pair for pair in pairs
            if self.settings.include_failed or not pair.is_fail(self.settings.fail_suffix)
        ]
        if not pairs:
            return []

        logger.debug("Checking queues: %s", ", ".join(pair.name for pair in pairs))
        process = self.process_queue if unpair else self.process_queue_pair
        return list(await asyncio.gather(*(process(pair, delete) for pair in pairs)))
