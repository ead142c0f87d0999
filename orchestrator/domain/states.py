from enum import StrEnum, auto


class TaskStatus(StrEnum):
    QUEUED = auto()         # Ready, waiting for a lease
    WAITING = auto()        # Held until upstream tasks succeed
    LEASED = auto()         # Claimed by a worker
    RUNNING = auto()        # Worker acknowledged start (optional ack)
    SUCCEEDED = auto()
    FAILED = auto()         # Transient: the retry coordinator decides what's next
    DEAD_LETTERED = auto()
    CANCELLED = auto()


TERMINAL_TASK_STATUSES = frozenset({
    TaskStatus.SUCCEEDED,
    TaskStatus.DEAD_LETTERED,
    TaskStatus.CANCELLED,
})

ACTIVE_TASK_STATUSES = frozenset({TaskStatus.LEASED, TaskStatus.RUNNING})


class PipelineStatus(StrEnum):
    PENDING = auto()
    RUNNING = auto()
    SUCCEEDED = auto()
    FAILED = auto()
    PARTIALLY_FAILED = auto()
    CANCELLED = auto()


TERMINAL_PIPELINE_STATUSES = frozenset({
    PipelineStatus.SUCCEEDED,
    PipelineStatus.FAILED,
    PipelineStatus.PARTIALLY_FAILED,
    PipelineStatus.CANCELLED,
})


class PipelineFailurePolicy(StrEnum):
    FAIL_FAST = auto()  # A dead-lettered required task cancels the rest of the run
    CONTINUE = auto()   # Independent branches keep running


class FailureMode(StrEnum):
    RETRYABLE = auto()
    NON_RETRYABLE = auto()


class BackoffStrategy(StrEnum):
    FIXED = auto()
    EXPONENTIAL = auto()
    EXPONENTIAL_JITTER = auto()


class DeadLetterReason(StrEnum):
    RETRIES_EXHAUSTED = auto()
    NON_RETRYABLE = auto()


class TaskEvent(StrEnum):
    CREATED = auto()
    LEASED = auto()
    RECLAIMED = auto()
    LEASE_RENEWED = auto()
    STARTED = auto()
    SUCCEEDED = auto()
    FAILED = auto()
    RETRIED = auto()
    DEAD_LETTERED = auto()
    CANCELLED = auto()
    RELEASED = auto()
    REPLAYED = auto()
