import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

from orchestrator.api.v1.metrics import TASK_FAILURES, TASK_RETRIED_TOTAL
from orchestrator.db.models import Task
from orchestrator.dlq import DLQManager
from orchestrator.domain.errors import ConflictError, TaskNotFoundError
from orchestrator.domain.retry import decide
from orchestrator.domain.states import (
    TaskStatus,
    TaskEvent,
    FailureMode,
    DeadLetterReason,
    BackoffStrategy,
)
from orchestrator.settings import settings
from orchestrator.store import TaskStore
from orchestrator.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

TerminalHook = Callable[[Task], Awaitable[None]]

class RetryCoordinator:
    """
    Decides the fate of a failed attempt: requeue with backoff or dead-letter.
    Only ever moves tasks out of FAILED, always via compare-and-set.
    """

    def __init__(
        self,
        store: TaskStore,
        dlq: DLQManager,
        on_terminal: Optional[TerminalHook] = None,
        clock: Clock = utc_now,
        base_delay_seconds: Optional[float] = None,
        max_delay_seconds: Optional[float] = None,
        max_cas_retries: Optional[int] = None,
    ):
        self.store = store
        self.dlq = dlq
        self.on_terminal = on_terminal
        self.clock = clock
        self.base_delay_seconds = base_delay_seconds if base_delay_seconds is not None else settings.BACKOFF_BASE_DELAY_SECONDS
        self.max_delay_seconds = max_delay_seconds if max_delay_seconds is not None else settings.BACKOFF_MAX_DELAY_SECONDS
        self.max_cas_retries = max_cas_retries if max_cas_retries is not None else settings.MAX_CAS_RETRIES

    async def handle_failure(
        self,
        task: Task,
        error: dict[str, Any],
        failure_mode: FailureMode = FailureMode.RETRYABLE,
    ) -> Task:
        task_id = task.id
        for _ in range(self.max_cas_retries):
            if task.status != TaskStatus.FAILED:
                # Someone else already moved it on
                return task
            try:
                return await self._transition(task, error, FailureMode(failure_mode))
            except ConflictError:
                task = await self.store.get(task_id)
                if task is None:
                    raise TaskNotFoundError(task_id)
        return task

    async def _transition(self, task: Task, error: dict[str, Any], failure_mode: FailureMode) -> Task:
        now = self.clock()

        delay: Optional[float] = None
        if task.attempt < task.max_attempts:
            delay = decide(
                task.attempt,
                BackoffStrategy(task.backoff_strategy),
                failure_mode,
                _or_default(task.base_delay_seconds, self.base_delay_seconds),
                _or_default(task.max_delay_seconds, self.max_delay_seconds),
            )

        if delay is None:
            return await self._dead_letter(task, error, failure_mode)

        next_eligible_at = now + timedelta(seconds=delay)
        task = await self.store.compare_and_set_status(
            task.id,
            TaskStatus.FAILED,
            TaskStatus.QUEUED,
            {
                "next_eligible_at": next_eligible_at,
                "lease_owner": None,
                "lease_expiry": None,
            },
            expected_attempt=task.attempt,
        )

        TASK_FAILURES.labels(type="retryable").inc()
        TASK_RETRIED_TOTAL.inc()
        self.store.log_event(
            task.id,
            TaskEvent.RETRIED,
            attempt=task.attempt,
            max=task.max_attempts,
            delay_seconds=delay,
            error=error.get("message"),
        )
        logger.info(
            "Task %s attempt %s/%s failed, retrying in %.2fs",
            task.id, task.attempt, task.max_attempts, delay,
        )
        return task

    async def _dead_letter(self, task: Task, error: dict[str, Any], failure_mode: FailureMode) -> Task:
        now = self.clock()
        non_retryable = failure_mode == FailureMode.NON_RETRYABLE
        reason = DeadLetterReason.NON_RETRYABLE if non_retryable else DeadLetterReason.RETRIES_EXHAUSTED

        # The CAS out of FAILED is what makes dead-lettering happen once
        task = await self.store.compare_and_set_status(
            task.id,
            TaskStatus.FAILED,
            TaskStatus.DEAD_LETTERED,
            {
                "lease_owner": None,
                "lease_expiry": None,
                "next_eligible_at": None,
                "finished_at": now,
            },
            expected_attempt=task.attempt,
        )

        TASK_FAILURES.labels(type="final").inc()
        await self.dlq.record(
            task,
            task.attempt_history or [],
            reason,
            # Re-running a payload the worker rejected as malformed is pointless
            replayable=not non_retryable,
        )
        self.store.log_event(
            task.id,
            TaskEvent.DEAD_LETTERED,
            reason=str(reason),
            attempts=task.attempt,
            error=error.get("message"),
        )

        if self.on_terminal:
            await self.on_terminal(task)
        return task


def _or_default(value: Optional[float], default: float) -> float:
    return value if value is not None else default

