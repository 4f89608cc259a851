from qrun.domain.errors import DoNotProcess
from qrun.domain.models import RunStats
from qrun.scheduler.consumer import listen, process_messages
from qrun.utils.shutdown import ShutdownToken

from .worker import Handler, Middleware, Worker

__all__ = [
    "DoNotProcess",
    "Handler",
    "Middleware",
    "RunStats",
    "ShutdownToken",
    "Worker",
    "listen",
    "process_messages",
]
