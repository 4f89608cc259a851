import logging
import re
from typing import Dict, List, Optional, Pattern, Tuple

from qrun.domain.models import QueuePair
from qrun.services.sqs import SqsClient, is_queue_missing, queue_name_from_url

logger = logging.getLogger(__name__)

FIFO_SUFFIX = ".fifo"

def normalize_queue_name(queue: str, settings) -> str:
    """Adds the configured prefix, and .fifo for FIFO mode, unless already present."""
    name = queue if queue.startswith(settings.prefix) else settings.prefix + queue
    if settings.fifo and not name.endswith(FIFO_SUFFIX) and "*" not in name:
        name += FIFO_SUFFIX
    return name

def _base_name(queue: str, settings) -> str:
    name = queue if queue.startswith(settings.prefix) else settings.prefix + queue
    if name.endswith(FIFO_SUFFIX):
        name = name[: -len(FIFO_SUFFIX)]
    return name

def normalize_fail_queue_name(queue: str, settings) -> str:
    name = _base_name(queue, settings)
    if not name.endswith(settings.fail_suffix):
        name += settings.fail_suffix
    return name + settings.fifo_suffix()

def normalize_dlq_name(queue: str, settings) -> str:
    name = _base_name(queue, settings)
    if name.endswith(settings.fail_suffix):
        name = name[: -len(settings.fail_suffix)]
    if not name.endswith(settings.dlq_suffix):
        name += settings.dlq_suffix
    return name + settings.fifo_suffix()

def interpret_wildcard(qname: str) -> Tuple[str, Optional[Pattern[str]]]:
    """
    Splits `prefix*suffix` into the listing prefix and an end-anchored regex
    for the suffix. Characters outside [A-Za-z0-9_.] are dropped from the
    suffix so user input can never produce a malformed pattern.

    >>> interpret_wildcard("qdone_test*")
    ('qdone_test', None)
    """
    prefix, _, suffix = qname.partition("*")
    suffix = re.sub(r"[^a-zA-Z0-9_.]", "", suffix)
    if not suffix:
        return prefix, None
    return prefix, re.compile(re.escape(suffix) + "$")

class QrlCache:
    """Queue name -> queue URL cache in front of SqsClient."""

    def __init__(self, sqs: SqsClient):
        self.sqs = sqs
        self._urls: Dict[str, str] = {}

    async def get(self, qname: str) -> str:
        if qname not in self._urls:
            self._urls[qname] = await self.sqs.get_queue_url(qname)
        return self._urls[qname]

    def set(self, qname: str, url: str):
        self._urls[qname] = url

    def invalidate(self, qname: str):
        self._urls.pop(qname, None)

    def set_from_urls(self, urls: List[str]):
        for url in urls:
            self._urls[queue_name_from_url(url)] = url

    def clear(self):
        self._urls.clear()

    async def get_qname_url_pairs(self, qnames: List[str]) -> List[QueuePair]:
        """
        Expands each name (exact or single wildcard) into QueuePairs.
        Exact names that do not exist are skipped with a log line.
        """
        pairs: List[QueuePair] = []
        seen = set()
        for qname in qnames:
            if "*" in qname:
                prefix, suffix_re = interpret_wildcard(qname)
                urls = await self.sqs.list_queues(prefix)
                self.set_from_urls(urls)
                for url in urls:
                    name = queue_name_from_url(url)
                    if suffix_re and not suffix_re.search(name):
                        continue
                    if name not in seen:
                        seen.add(name)
                        pairs.append(QueuePair(name=name, url=url))
            else:
                try:
                    url = await self.get(qname)
                except Exception as e:
                    if not is_queue_missing(e):
                        raise
                    logger.info("Queue %s does not exist, skipping", qname)
                    continue
                if qname not in seen:
                    seen.add(qname)
                    pairs.append(QueuePair(name=qname, url=url))
        return pairs
