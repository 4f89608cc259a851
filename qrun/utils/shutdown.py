import asyncio
import logging
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

class ShutdownToken:
    """
    Cancellation token shared by every loop in a worker.

    request() is idempotent and safe to call from a signal handler
    registered with loop.add_signal_handler. Loops check `requested` at
    their re-entry points and use wait() as an interruptible sleep.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    def request(self):
        if self._event.is_set():
            return
        logger.info("Shutdown requested")
        self._event.set()
        for callback in self._callbacks:
            callback()

    def on_request(self, callback: Callable[[], None]):
        """Runs callback when shutdown is requested (immediately if it already was)."""
        self._callbacks.append(callback)
        if self._event.is_set():
            callback()

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleeps up to timeout seconds; returns True if shutdown was requested."""
        if timeout is not None and timeout <= 0:
            return self._event.is_set()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self._event.is_set()
