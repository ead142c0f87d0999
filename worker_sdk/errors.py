from typing import Optional


class TaskError(Exception):
    """
    Raised by a handler to fail the current attempt with a structured error.
    `retryable=False` asks the orchestrator to dead-letter the task right away.
    """

    def __init__(self, message: str, code: Optional[str] = None, retryable: bool = True):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable

    def to_dict(self) -> dict:
        error = {"message": self.message}
        if self.code:
            error["code"] = self.code
        return error


class NonRetryableError(TaskError):
    """The input itself is bad; another attempt cannot succeed."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message, code=code, retryable=False)


class LeaseLost(Exception):
    """The orchestrator no longer considers this worker the lease holder."""
