import logging
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError

from orchestrator.api.v1.metrics import (
    TASK_LEASE_TOTAL,
    TASK_LEASE_DELAY,
    TASK_DURATION,
    REAPER_RECOVERED_TASKS,
)
from orchestrator.db.models import Task
from orchestrator.domain.errors import (
    ConflictError,
    EmptyQueueError,
    InvalidTaskStateError,
    LeaseLostError,
    NotOwnerError,
    TaskNotFoundError,
)
from orchestrator.domain.models import NewTask, QueueStatus, TaskAttempt, TaskResult
from orchestrator.domain.states import (
    TaskStatus,
    TaskEvent,
    FailureMode,
    BackoffStrategy,
    ACTIVE_TASK_STATUSES,
    TERMINAL_TASK_STATUSES,
)
from orchestrator.retry import RetryCoordinator, TerminalHook
from orchestrator.settings import settings
from orchestrator.store import TaskStore, append_attempt
from orchestrator.utils.clock import Clock, utc_now, as_utc

logger = logging.getLogger(__name__)

LEASE_EXPIRED_ERROR = {"message": "Lease expired (worker crash?)", "code": "lease_expired"}

class DispatchQueue:
    """
    Hands ready tasks to workers, one lease per task, and reclaims abandoned leases.

    Holds no state of its own: every decision is a read from the store followed
    by a compare-and-set, so concurrent requests can only race in the database.
    """

    def __init__(
        self,
        store: TaskStore,
        retry: RetryCoordinator,
        on_terminal: Optional[TerminalHook] = None,
        clock: Clock = utc_now,
        lease_ttl_seconds: Optional[int] = None,
        max_cas_retries: Optional[int] = None,
    ):
        self.store = store
        self.retry = retry
        self.on_terminal = on_terminal
        self.clock = clock
        self.lease_ttl_seconds = lease_ttl_seconds if lease_ttl_seconds is not None else settings.DEFAULT_LEASE_TTL_SECONDS
        self.max_cas_retries = max_cas_retries if max_cas_retries is not None else settings.MAX_CAS_RETRIES

    # -- Enqueue ----------------------------------------------------------

    async def enqueue(self, request: NewTask) -> Task:
        key = request.idempotency_key
        if key:
            existing = await self.store.find_by_idempotency_key(key)
            if existing:
                return existing

        task = Task(
            name=request.name,
            status=TaskStatus.QUEUED,
            attempt=0,
            max_attempts=request.max_attempts or settings.DEFAULT_MAX_ATTEMPTS,
            backoff_strategy=BackoffStrategy(request.backoff_strategy or settings.DEFAULT_BACKOFF_STRATEGY),
            base_delay_seconds=request.base_delay_seconds,
            max_delay_seconds=request.max_delay_seconds,
            payload=request.payload,
            attempt_history=[],
            idempotency_key=key,
            created_at=self.clock(),
        )
        if not key:
            return await self.store.insert(task)

        # Savepoint: losing the unique-key race must not discard the caller's other work
        try:
            async with self.store.session.begin_nested():
                await self.store.insert(task)
        except IntegrityError:
            existing = await self.store.find_by_idempotency_key(key)
            if existing is None:
                raise
            logger.info("Idempotency key %r was taken concurrently, returning task %s", key, existing.id)
            return existing
        return task

    async def enqueue_batch(self, requests: list[NewTask]) -> list[Task]:
        # One transaction: the caller commits all or nothing
        return [await self.enqueue(request) for request in requests]

    # -- Worker protocol --------------------------------------------------

    async def lease(self, worker_id: str, count: int = 1, lease_ttl_seconds: Optional[int] = None) -> list[Task]:
        """
        Leases up to `count` ready tasks to `worker_id`.
        Raises EmptyQueueError when nothing could be leased.
        """
        ttl = lease_ttl_seconds or self.lease_ttl_seconds
        count = max(1, min(count, settings.MAX_LEASE_BATCH))

        leased: list[Task] = []
        for _ in range(self.max_cas_retries):
            candidates = await self.store.find_ready(count - len(leased))
            if not candidates:
                break

            rescan = False
            for task in candidates:
                try:
                    claimed = await self._claim(task, worker_id, ttl)
                except ConflictError:
                    rescan = True
                    continue
                if claimed is None:
                    # Dead-lettered instead; the slot is still free
                    rescan = True
                    continue
                leased.append(claimed)

            if len(leased) >= count or not rescan:
                break

        if not leased:
            raise EmptyQueueError(f"No ready tasks for worker {worker_id}")
        return leased

    async def _claim(self, task: Task, worker_id: str, ttl: int) -> Optional[Task]:
        now = self.clock()
        reclaim = task.status in ACTIVE_TASK_STATUSES

        history = task.attempt_history or []
        if reclaim:
            if task.attempt >= task.max_attempts:
                # No attempts left: dead-letter instead of handing it out again
                await self._expire(task)
                return None
            history = append_attempt(history, self._abandoned_attempt(task))

        previous_owner = task.lease_owner
        eligible_since = as_utc(task.next_eligible_at or task.created_at)

        claimed = await self.store.compare_and_set_status(
            task.id,
            task.status,
            TaskStatus.LEASED,
            {
                "attempt": task.attempt + 1,
                "lease_owner": worker_id,
                "lease_expiry": now + timedelta(seconds=ttl),
                "last_attempt_at": now,
                "next_eligible_at": None,
                "attempt_history": history,
            },
            expected_attempt=task.attempt,
        )

        if reclaim:
            TASK_LEASE_TOTAL.labels(kind="reclaim").inc()
            self.store.log_event(claimed.id, TaskEvent.RECLAIMED, worker_id=worker_id, previous_owner=previous_owner, attempt=claimed.attempt)
            logger.info("Task %s reclaimed from %s by %s (attempt %s)", claimed.id, previous_owner, worker_id, claimed.attempt)
        else:
            TASK_LEASE_TOTAL.labels(kind="fresh").inc()
            if eligible_since:
                delay = (now - eligible_since).total_seconds()
                if delay >= 0:
                    TASK_LEASE_DELAY.observe(delay)
            self.store.log_event(claimed.id, TaskEvent.LEASED, worker_id=worker_id, attempt=claimed.attempt, expires_at=str(claimed.lease_expiry))
            logger.info("Task %s leased to %s (attempt %s)", claimed.id, worker_id, claimed.attempt)
        return claimed

    async def start(self, task_id: UUID, worker_id: str) -> Task:
        """Optional acknowledgement: LEASED -> RUNNING."""
        for _ in range(self.max_cas_retries):
            task = await self._owned(task_id, worker_id, NotOwnerError)
            if task.status == TaskStatus.RUNNING:
                return task
            try:
                task = await self.store.compare_and_set_status(
                    task.id, TaskStatus.LEASED, TaskStatus.RUNNING, expected_attempt=task.attempt
                )
            except ConflictError:
                continue
            self.store.log_event(task.id, TaskEvent.STARTED, worker_id=worker_id)
            return task
        raise NotOwnerError(f"Task {task_id} kept changing under worker {worker_id}")

    async def renew_lease(self, task_id: UUID, worker_id: str, lease_ttl_seconds: Optional[int] = None) -> Task:
        """
        Extends the lease. Raises LeaseLostError if the task was reclaimed,
        cancelled or completed, or if the lease already expired.
        """
        ttl = lease_ttl_seconds or self.lease_ttl_seconds

        for _ in range(self.max_cas_retries):
            task = await self._owned(task_id, worker_id, LeaseLostError)
            now = self.clock()

            expiry = as_utc(task.lease_expiry)
            if expiry is not None and expiry < now:
                raise LeaseLostError(f"Lease for task {task_id} expired at {expiry.isoformat()}")

            try:
                task = await self.store.compare_and_set_status(
                    task.id,
                    task.status,
                    task.status,
                    {"lease_expiry": now + timedelta(seconds=ttl)},
                    expected_attempt=task.attempt,
                )
            except ConflictError:
                continue
            return task
        raise LeaseLostError(f"Lease for task {task_id} kept changing under worker {worker_id}")

    async def report(
        self,
        task_id: UUID,
        worker_id: str,
        result: TaskResult,
        attempt: Optional[TaskAttempt] = None,
    ) -> Task:
        """
        Records the outcome of the current attempt.
        Failures are handed to the retry coordinator before returning.
        """
        for _ in range(self.max_cas_retries):
            task = await self._owned(task_id, worker_id, NotOwnerError)
            now = self.clock()

            record = self._attempt_record(task, worker_id, now, attempt, result)
            history = append_attempt(task.attempt_history, record)

            if result.success:
                mutations = {
                    "result": result.output,
                    "lease_owner": None,
                    "lease_expiry": None,
                    "finished_at": now,
                    "attempt_history": history,
                }
                target = TaskStatus.SUCCEEDED
            else:
                mutations = {
                    "last_error": result.error_record(),
                    "lease_owner": None,
                    "lease_expiry": None,
                    "attempt_history": history,
                }
                target = TaskStatus.FAILED

            try:
                updated = await self.store.compare_and_set_status(
                    task.id, task.status, target, mutations, expected_attempt=task.attempt
                )
            except ConflictError:
                continue

            started = as_utc(task.last_attempt_at)
            if started:
                duration = (now - started).total_seconds()
                if duration > 0:
                    TASK_DURATION.observe(duration)

            if result.success:
                self.store.log_event(updated.id, TaskEvent.SUCCEEDED, worker_id=worker_id, attempt=updated.attempt)
                logger.info("Task %s succeeded on attempt %s", updated.id, updated.attempt)
                if self.on_terminal:
                    await self.on_terminal(updated)
                return updated

            error = result.error_record()
            self.store.log_event(updated.id, TaskEvent.FAILED, worker_id=worker_id, attempt=updated.attempt, error=error)
            logger.info("Task %s attempt %s failed: %s", updated.id, updated.attempt, error.get("message"))
            return await self.retry.handle_failure(updated, error, result.failure_mode)

        raise NotOwnerError(f"Task {task_id} kept changing under worker {worker_id}")

    # -- Operator actions -------------------------------------------------

    async def cancel(self, task_id: UUID) -> Task:
        """Cancels a non-terminal task and drops any outstanding lease."""
        for _ in range(self.max_cas_retries):
            task = await self.store.get(task_id)
            if not task:
                raise TaskNotFoundError(task_id)
            if task.status in TERMINAL_TASK_STATUSES:
                raise InvalidTaskStateError(task.status, TaskStatus.CANCELLED)
            try:
                task = await cancel_task(self.store, task, self.clock())
            except ConflictError:
                continue
            if self.on_terminal:
                await self.on_terminal(task)
            return task
        raise InvalidTaskStateError("contended", TaskStatus.CANCELLED)

    async def reap_expired(self, limit: int = 100) -> int:
        """
        Dead-letters expired leases that have no attempts left.
        Expired leases with attempts remaining are reclaimed by lease().
        """
        expired = await self.store.find_expired(limit, exhausted_only=True)
        count = 0
        for task in expired:
            try:
                await self._expire(task)
            except ConflictError:
                continue
            count += 1

        if count:
            REAPER_RECOVERED_TASKS.inc(count)
            logger.info("Reaper dead-lettered %s expired tasks", count)
        return count

    async def status(self) -> QueueStatus:
        counts = await self.store.count_by_status()
        oldest = as_utc(await self.store.oldest_queued_created_at())

        age = None
        if oldest is not None:
            age = max(0.0, (self.clock() - oldest).total_seconds())
        return QueueStatus(counts=counts, oldest_queued_age=age)

    # -- Helpers ----------------------------------------------------------

    async def _owned(self, task_id: UUID, worker_id: str, error_cls: type) -> Task:
        task = await self.store.get(task_id)
        if not task:
            raise TaskNotFoundError(task_id)
        if task.status not in ACTIVE_TASK_STATUSES or task.lease_owner != worker_id:
            raise error_cls(f"Worker {worker_id} does not hold the lease on task {task_id}")
        return task

    async def _expire(self, task: Task) -> Task:
        """Abandoned lease with no attempts left: fail it and let the coordinator dead-letter it."""
        owner = task.lease_owner
        failed = await self.store.compare_and_set_status(
            task.id,
            task.status,
            TaskStatus.FAILED,
            {
                "last_error": {**LEASE_EXPIRED_ERROR, "failure_mode": str(FailureMode.RETRYABLE)},
                "lease_owner": None,
                "lease_expiry": None,
                "attempt_history": append_attempt(task.attempt_history, self._abandoned_attempt(task)),
            },
            expected_attempt=task.attempt,
        )
        self.store.log_event(failed.id, TaskEvent.FAILED, reason="lease_expired", worker_id=owner)
        logger.warning("Task %s lease held by %s expired on final attempt", failed.id, owner)
        return await self.retry.handle_failure(failed, dict(LEASE_EXPIRED_ERROR), FailureMode.RETRYABLE)

    @staticmethod
    def _abandoned_attempt(task: Task) -> dict[str, Any]:
        return TaskAttempt(
            attempt_number=task.attempt,
            started_at=as_utc(task.last_attempt_at),
            finished_at=as_utc(task.lease_expiry),
            worker_id=task.lease_owner,
            error=dict(LEASE_EXPIRED_ERROR),
        ).to_dict()

    @staticmethod
    def _attempt_record(
        task: Task,
        worker_id: str,
        now: datetime,
        reported: Optional[TaskAttempt],
        result: TaskResult,
    ) -> dict[str, Any]:
        # The store's view of the attempt number wins over the worker's
        return TaskAttempt(
            attempt_number=task.attempt,
            started_at=(reported.started_at if reported and reported.started_at else as_utc(task.last_attempt_at)),
            finished_at=(reported.finished_at if reported and reported.finished_at else now),
            worker_id=worker_id,
            error=None if result.success else result.error_record(),
        ).to_dict()


async def cancel_task(store: TaskStore, task: Task, now: datetime) -> Task:
    """
    Single CAS into CANCELLED. Clearing the lease makes the holder's next
    renew/report fail; its in-flight work is not interrupted.
    """
    previous_status, owner = task.status, task.lease_owner
    cancelled = await store.compare_and_set_status(
        task.id,
        task.status,
        TaskStatus.CANCELLED,
        {
            "lease_owner": None,
            "lease_expiry": None,
            "next_eligible_at": None,
            "finished_at": now,
        },
        expected_attempt=task.attempt,
    )
    store.log_event(cancelled.id, TaskEvent.CANCELLED, previous_status=str(previous_status), lease_owner=owner)
    return cancelled
