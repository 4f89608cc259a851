class QrunError(Exception):
    """Base exception for qrun errors."""
    pass

class ConfigurationError(QrunError):
    pass

class UsageError(QrunError):
    pass

class LeaseError(QrunError):
    pass

class DuplicateMessageError(LeaseError):
    """
    The same message id was received while a job for it is still tracked.
    This means a visibility extension fell behind and the queue redelivered
    a message that is still running.
    """
    def __init__(self, job):
        self.job = job
        super().__init__(
            f"Saw job {job.message_id} twice (queue {job.queue_name}, status {job.status})"
        )

class ShuttingDownError(LeaseError):
    pass

class DoNotProcess(Exception):
    """
    Raised by a callback to hand the message back to the queue untouched.
    Not an error: refused jobs do not count as successes or failures.
    """
    pass
