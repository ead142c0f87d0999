from .client import WorkerClient
from .errors import LeaseLost, NonRetryableError, TaskError
from .runner import Handler, WorkerRunner

__all__ = [
    "Handler",
    "LeaseLost",
    "NonRetryableError",
    "TaskError",
    "WorkerClient",
    "WorkerRunner",
]
