import logging
from typing import Any, Dict, List

from qrun.commands.enqueue import Enqueuer
from qrun.services.qrl_cache import normalize_dlq_name, normalize_fail_queue_name, normalize_queue_name
from qrun.services.sqs import is_queue_missing

logger = logging.getLogger(__name__)

def attributes_match(current: Dict[str, str], desired: Dict[str, str]) -> List[str]:
    """Returns the names of desired attributes whose current value differs."""
    mismatched = []
    for name, value in desired.items():
        if current.get(name) != value:
            logger.info("Attribute mismatch: %s should be %s but is %s", name, value, current.get(name))
            mismatched.append(name)
    return mismatched

class QueueChecker:
    """
    Verifies that each queue, its fail queue and its DLQ exist with the
    attributes enqueue would have created them with. create makes missing
    queues; overwrite rewrites mismatched attributes.
    """

    def __init__(self, enqueuer: Enqueuer, settings, create: bool = False, overwrite: bool = False):
        self.enqueuer = enqueuer
        self.sqs = enqueuer.sqs
        self.qrl_cache = enqueuer.qrl_cache
        self.settings = settings
        self.create = create
        self.overwrite = overwrite

    async def _check_one(self, qname: str, get_or_create, desired_fn) -> Dict[str, Any]:
        report: Dict[str, Any] = {"queue": qname, "exists": True, "created": False, "mismatched": [], "modified": False}
        try:
            url = await self.qrl_cache.get(qname)
        except Exception as e:
            if not is_queue_missing(e):
                raise
            logger.info("%s does not exist", qname)
            report["exists"] = False
            if not self.create:
                return report
            logger.info("Creating %s", qname)
            url = await get_or_create()
            report["created"] = True

        desired = await desired_fn()
        current = await self.sqs.get_attributes(url, ["All"])
        report["mismatched"] = attributes_match(current, desired)
        if not report["mismatched"]:
            logger.info("%s: all good", qname)
        elif self.overwrite:
            logger.info("Modifying %s", qname)
            await self.sqs.set_attributes(url, desired)
            report["modified"] = True
        return report

    async def check_dlq(self, queue: str) -> Dict[str, Any]:
        async def desired():
            return self.enqueuer.dlq_attributes()
        return await self._check_one(
            normalize_dlq_name(queue, self.settings),
            lambda: self.enqueuer.get_or_create_dlq(queue),
            desired,
        )

    async def _arn_or_none(self, qname: str):
        try:
            return await self.enqueuer.queue_arn(await self.qrl_cache.get(qname))
        except Exception as e:
            if not is_queue_missing(e):
                raise
            return None

    async def check_fail_queue(self, queue: str) -> Dict[str, Any]:
        async def desired():
            dlq_arn = None
            if self.settings.dlq:
                dlq_arn = await self._arn_or_none(normalize_dlq_name(queue, self.settings))
            return self.enqueuer.fail_queue_attributes(dlq_arn)
        return await self._check_one(
            normalize_fail_queue_name(queue, self.settings),
            lambda: self.enqueuer.get_or_create_fail_queue(queue),
            desired,
        )

    async def check_queue(self, queue: str) -> List[Dict[str, Any]]:
        reports = []
        if self.settings.dlq:
            reports.append(await self.check_dlq(queue))
        reports.append(await self.check_fail_queue(queue))

        async def desired():
            fail_arn = await self._arn_or_none(normalize_fail_queue_name(queue, self.settings))
            if fail_arn is None:
                logger.info("%s is missing its fail queue", queue)
                return self.enqueuer.base_attributes()
            return self.enqueuer.queue_attributes(fail_arn)
        reports.append(await self._check_one(
            normalize_queue_name(queue, self.settings),
            lambda: self.enqueuer.get_or_create_queue(queue),
            desired,
        ))
        return reports

    async def check(self, queues: List[str]) -> List[Dict[str, Any]]:
        qnames = [normalize_queue_name(queue, self.settings) for queue in queues]
        pairs = await self.qrl_cache.get_qname_url_pairs(qnames)
        if self.create:
            # Exact names that do not exist yet are still checked, and created
            known = {pair.name for pair in pairs}
            missing = [qname for qname in qnames if "*" not in qname and qname not in known]
        else:
            missing = []

        reports = []
        for pair in pairs:
            if pair.is_fail(self.settings.fail_suffix) and not self.settings.include_failed:
                continue
            if pair.is_dead(self.settings.dlq_suffix) and not self.settings.include_dead:
                continue
            logger.info("Checking %s", pair.name)
            reports.extend(await self.check_queue(pair.name))
        for qname in missing:
            reports.extend(await self.check_queue(qname))
        return reports
