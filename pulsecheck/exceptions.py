"""Exceptions raised by the check and notification pipeline."""


class PulseCheckError(Exception):
    """Base class for pipeline errors."""


class StateConflictError(PulseCheckError):
    """A conditional monitor update kept losing to concurrent writers.

    Transient: the job is retried by the queue.
    """

    def __init__(self, monitor_id: int, attempts: int):
        self.monitor_id = monitor_id
        self.attempts = attempts
        super().__init__(
            f"Monitor {monitor_id} state changed concurrently {attempts} times"
        )


class MailDeliveryError(PulseCheckError):
    """The SMTP transport failed to deliver a message."""
