"""Queue-level exceptions."""


class PermanentJobError(Exception):
    """Raised by a handler when retrying cannot help. Skips remaining attempts."""


class JobTimeoutError(Exception):
    """A handler ran longer than its queue's timeout. Retryable."""

    def __init__(self, queue: str, job_id: str, timeout: float):
        super().__init__(f"Job {job_id} on '{queue}' timed out after {timeout:g}s")
        self.queue = queue
        self.job_id = job_id
        self.timeout = timeout


class JobFailedError(Exception):
    """Raised to whoever awaits a job that ended in the failed state."""

    def __init__(self, queue: str, job_id: str, reason: str):
        super().__init__(reason)
        self.queue = queue
        self.job_id = job_id
        self.reason = reason


class UnknownQueueError(KeyError):
    pass
