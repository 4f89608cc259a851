import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from qrun.domain.states import JobEvent

logger = logging.getLogger(__name__)

# Raw JSON lines, one per lifecycle event, on stdout
event_logger = logging.getLogger("qrun.events")

def install_event_handler(stream=None):
    """Attaches the stdout JSON handler to the event logger (once)."""
    if event_logger.handlers:
        return
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    event_logger.addHandler(handler)
    event_logger.setLevel(logging.INFO)
    event_logger.propagate = False

class EventLog:
    """
    Job lifecycle reporting.

    Default mode writes one JSON object per event to stdout for machine
    consumption. Verbose mode writes a human readable line to stderr through
    the regular logger instead. disable_log turns the JSON lines off.
    """

    def __init__(self, settings):
        self.verbose = settings.verbose
        # Archive mode prints the commands themselves on stdout
        self.disabled = settings.disable_log or settings.archive

    def emit(self, event: JobEvent, **fields: Any):
        if self.verbose:
            details = " ".join(f"{k}={v}" for k, v in fields.items() if v not in (None, "", []))
            logger.info("%s %s", event, details)
            return
        if self.disabled:
            return
        install_event_handler()
        record = {
            "event": str(event),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        record.update(fields)
        event_logger.info(json.dumps(record, default=str))
