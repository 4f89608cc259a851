from enum import StrEnum, auto

class JobStatus(StrEnum):
    WAITING = auto()     # Received, lease registered
    RUNNING = auto()     # Handed to the runner
    COMPLETE = auto()    # Succeeded, awaiting delete
    FAILED = auto()      # Left for the queue's redrive policy
    DELETING = auto()    # Delete batch issued
    REFUSED = auto()     # Callback declined; visibility reset to 0

# Event names are grepped by operators, keep them stable.
class JobEvent(StrEnum):
    MESSAGE_RECEIVED = "MESSAGE_RECEIVED"
    MESSAGE_PROCESSING_START = "MESSAGE_PROCESSING_START"
    MESSAGE_PROCESSING_COMPLETE = "MESSAGE_PROCESSING_COMPLETE"
    MESSAGE_PROCESSING_FAILED = "MESSAGE_PROCESSING_FAILED"
    EXTEND_VISIBILITY_TIMEOUTS = "EXTEND_VISIBILITY_TIMEOUTS"
    DELETE_MESSAGES = "DELETE_MESSAGES"
