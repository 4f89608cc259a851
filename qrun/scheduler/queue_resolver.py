import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from qrun.domain.backoff import icehouse_wait_seconds
from qrun.domain.models import QueuePair
from qrun.metrics import QUEUES_ICED
from qrun.services.idle_check import IdleChecker
from qrun.services.qrl_cache import QrlCache, normalize_queue_name

logger = logging.getLogger(__name__)

@dataclass
class IcehouseEntry:
    last_check: float
    wait_seconds: float
    empty_streak: int

class QueueResolver:
    """
    Turns queue name patterns into the set of queues worth polling.

    Filters, in order: fail/dead queues (unless included), FIFO vs standard,
    queues cooling off in the icehouse, and, in active-only mode, queues
    whose cheap idle check shows nothing to do. The selection is shuffled on
    every resolution and refreshed in the background.
    """

    def __init__(
        self,
        qrl_cache: QrlCache,
        settings,
        patterns: List[str],
        idle_checker: Optional[IdleChecker] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.qrl_cache = qrl_cache
        self.settings = settings
        self.patterns = list(patterns)
        self.idle_checker = idle_checker
        self.clock = clock
        self.rng = rng or random.Random()
        self.refresh_seconds = settings.resolve_seconds

        self.pairs: List[QueuePair] = []
        self.icehouse: Dict[str, IcehouseEntry] = {}
        self.resolved = False

        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def _role_allowed(self, pair: QueuePair) -> bool:
        if pair.is_fail(self.settings.fail_suffix):
            return self.settings.include_failed
        if pair.is_dead(self.settings.dlq_suffix):
            return self.settings.include_dead
        return True

    async def resolve(self) -> List[QueuePair]:
        qnames = [normalize_queue_name(pattern, self.settings) for pattern in self.patterns]
        pairs = await self.qrl_cache.get_qname_url_pairs(qnames)

        pairs = [pair for pair in pairs if self._role_allowed(pair)]
        pairs = [pair for pair in pairs if pair.is_fifo == self.settings.fifo]
        pairs = [pair for pair in pairs if not self.is_iced(pair.name)]

        if self.settings.active_only and self.idle_checker is not None:
            pairs = await self.idle_checker.active_pairs(pairs)

        self.rng.shuffle(pairs)
        self.pairs = pairs
        self.resolved = True
        logger.debug("Resolved %d queues: %s", len(pairs), ", ".join(p.name for p in pairs))
        return list(pairs)

    async def refresh(self):
        try:
            await self.resolve()
        except Exception as e:
            # Keep the previous selection
            logger.warning(f"Queue resolution failed, keeping {len(self.pairs)} queues: {e}")

    # Icehouse

    def is_iced(self, qname: str) -> bool:
        entry = self.icehouse.get(qname)
        if entry is None:
            return False
        return self.clock() - entry.last_check < entry.wait_seconds

    def update_icehouse(self, qname: str, got_messages: bool):
        if got_messages:
            self.icehouse.pop(qname, None)
        else:
            previous = self.icehouse.get(qname)
            streak = previous.empty_streak + 1 if previous else 1
            wait = icehouse_wait_seconds(streak, previous.wait_seconds if previous else 0, self.rng)
            self.icehouse[qname] = IcehouseEntry(last_check=self.clock(), wait_seconds=wait, empty_streak=streak)
            logger.debug("Icing %s for %.0fs (empty %d times)", qname, wait, streak)
        QUEUES_ICED.set(sum(1 for name in self.icehouse if self.is_iced(name)))

    # Selection

    def get_pairs(self) -> List[QueuePair]:
        return [pair for pair in self.pairs if not self.is_iced(pair.name)]

    def next_pair(self) -> Optional[QueuePair]:
        if not self.pairs:
            return None
        pair = self.pairs.pop(0)
        self.pairs.append(pair)
        return pair

    # Lifecycle

    def start(self):
        if self._task is None:
            self._stop.clear()
            self._task = asyncio.create_task(self._loop())

    async def _loop(self):
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.refresh_seconds)
            except asyncio.TimeoutError:
                pass
            if self._stop.is_set():
                break
            await self.refresh()

    async def shutdown(self):
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
