import asyncio
import logging
import signal
from typing import Any, Callable, Coroutine, List, Optional

from qrun.domain.models import RunStats
from qrun.scheduler.consumer import process_messages
from qrun.utils.shutdown import ShutdownToken

logger = logging.getLogger(__name__)

Handler = Callable[[str, Any], Coroutine[Any, Any, Any]]
Middleware = Callable[[str, Any, Handler], Coroutine[Any, Any, Any]]

class Worker:
    """
    Callback-mode worker for library use.

        async def handle(queue, payload):
            ...

        worker = Worker(["emails*"], handle)
        await worker.run()

    Raise DoNotProcess from the handler (or a middleware) to hand a message
    back to the queue immediately.
    """

    def __init__(self, queues: List[str], handler: Handler, settings=None, **deps):
        self.queues = list(queues)
        self.handler = handler
        self.settings = settings
        self.deps = deps
        self.middlewares: List[Middleware] = []
        self.token = ShutdownToken()

    def add_middleware(self, middleware: Middleware):
        self.middlewares.append(middleware)

    def build_chain(self) -> Handler:
        chain = self.handler

        # Apply middleware in reverse order (onion)
        for mw in reversed(self.middlewares):
            def make_wrapper(current_mw, current_chain):
                async def wrapper(queue, payload):
                    return await current_mw(queue, payload, current_chain)
                return wrapper
            chain = make_wrapper(mw, chain)
        return chain

    async def run(self, install_signal_handlers: bool = True) -> RunStats:
        loop = asyncio.get_running_loop()
        if install_signal_handlers:
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, self.request_shutdown)
                except NotImplementedError:
                    # Windows support
                    pass

        logger.info(f"Worker started on {', '.join(self.queues)}")
        try:
            return await process_messages(
                self.queues,
                self.build_chain(),
                settings=self.settings,
                token=self.token,
                **self.deps,
            )
        finally:
            if install_signal_handlers:
                for sig in (signal.SIGINT, signal.SIGTERM):
                    try:
                        loop.remove_signal_handler(sig)
                    except NotImplementedError:
                        pass
            logger.info("Worker stopped")

    def request_shutdown(self):
        """Idempotent; safe to call from a signal handler."""
        self.token.request()
