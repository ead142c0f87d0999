from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Any
from uuid import UUID

from orchestrator.domain.states import FailureMode, DeadLetterReason, TaskStatus

@dataclass
class TaskAttempt:
    attempt_number: int
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    worker_id: Optional[str]
    error: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        # Stored in a JSON column
        return {
            "attempt_number": self.attempt_number,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "worker_id": self.worker_id,
            "error": self.error,
        }

@dataclass
class TaskResult:
    """
    Outcome reported by a worker for one attempt.
    On failure, `error` carries at least a `message`; `failure_mode`
    tells the retry coordinator whether another attempt makes sense.
    """
    success: bool
    output: Any = None
    error: Optional[dict[str, Any]] = None
    failure_mode: FailureMode = FailureMode.RETRYABLE

    def error_record(self) -> dict[str, Any]:
        error = dict(self.error or {})
        error.setdefault("message", "Unknown error")
        error["failure_mode"] = str(self.failure_mode)
        return error

@dataclass
class QueueStatus:
    counts: dict[TaskStatus, int]
    oldest_queued_age: Optional[float] = None

@dataclass
class DLQFilter:
    pipeline_run_id: Optional[UUID] = None
    task_name: Optional[str] = None
    reason: Optional[DeadLetterReason] = None
    replayable: Optional[bool] = None

@dataclass
class NewTask:
    """Standalone enqueue request."""
    payload: Any = field(default_factory=dict)
    name: Optional[str] = None
    max_attempts: Optional[int] = None
    backoff_strategy: Optional[str] = None
    base_delay_seconds: Optional[float] = None
    max_delay_seconds: Optional[float] = None
    idempotency_key: Optional[str] = None
