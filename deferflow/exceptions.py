"""Error hierarchy shared by the queue, the dispatcher and the HTTP layer."""


class DeferflowError(Exception):
    """Base class for all deferflow errors."""


class QueueError(DeferflowError):
    """A job could not be durably written. Never swallowed."""

    def __init__(self, kind: str, message: str):
        super().__init__(f"failed to queue {kind!r}: {message}")
        self.kind = kind


class JobError(DeferflowError):
    """Raised while dispatching a job; these are not worth retrying."""


class UnknownJobKind(JobError):
    def __init__(self, kind: str):
        super().__init__(f"no handler registered for job kind {kind!r}")
        self.kind = kind


class InvalidJobArguments(JobError):
    pass


class PermanentJobError(JobError):
    """Raised by handlers when retrying cannot help (e.g. the record is gone)."""
