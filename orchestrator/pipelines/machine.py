"""
Pipeline State Machine.

Owns the lifecycle of a pipeline run: creating its task rows, releasing
dependents as upstream tasks finish, and deriving the run's aggregate status.
Task rows reference each other by position within the run; the run row is
locked while its graph is being advanced so two completions of sibling tasks
cannot release the same dependent twice.
"""
import logging
from typing import Any, Iterable, Optional
from uuid import UUID

from sqlalchemy import select, func
from sqlalchemy.orm import selectinload

from orchestrator.api.v1.metrics import PIPELINE_RUNS_TOTAL
from orchestrator.db.models import PipelineRun, Task
from orchestrator.dispatch import cancel_task
from orchestrator.domain.errors import ConflictError, PipelineRunNotFoundError
from orchestrator.domain.states import (
    TaskStatus,
    TaskEvent,
    PipelineStatus,
    PipelineFailurePolicy,
    BackoffStrategy,
    TERMINAL_TASK_STATUSES,
    TERMINAL_PIPELINE_STATUSES,
)
from orchestrator.pipelines.registry import PipelineRegistry, registry as default_registry
from orchestrator.settings import settings
from orchestrator.store import TaskStore
from orchestrator.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)


def aggregate_status(outcomes: Iterable[tuple[TaskStatus, bool]]) -> PipelineStatus:
    """
    Derives a run's status from (task status, optional) pairs.

    Running while anything is unfinished. Failed if a required task did not
    succeed. PartiallyFailed if only optional tasks fell short.
    """
    outcomes = list(outcomes)
    if any(status not in TERMINAL_TASK_STATUSES for status, _ in outcomes):
        return PipelineStatus.RUNNING
    if any(status != TaskStatus.SUCCEEDED and not optional for status, optional in outcomes):
        return PipelineStatus.FAILED
    if any(status != TaskStatus.SUCCEEDED for status, _ in outcomes):
        return PipelineStatus.PARTIALLY_FAILED
    return PipelineStatus.SUCCEEDED


class PipelineStateMachine:
    def __init__(
        self,
        store: TaskStore,
        registry: PipelineRegistry = default_registry,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.session = store.session
        self.registry = registry
        self.clock = clock

    async def trigger(
        self,
        pipeline_name: str,
        params: Optional[dict[str, Any]] = None,
        failure_policy: Optional[PipelineFailurePolicy] = None,
    ) -> PipelineRun:
        """Creates a run of a registered pipeline. `failure_policy` overrides the definition's for this run only."""
        definition = self.registry.get(pipeline_name)
        params = dict(params or {})
        now = self.clock()

        run = PipelineRun(
            pipeline_name=definition.name,
            status=PipelineStatus.RUNNING,
            failure_policy=failure_policy or definition.failure_policy,
            params=params,
            task_ids=[],
            created_at=now,
            started_at=now,
        )
        self.session.add(run)
        await self.session.flush()

        task_ids = []
        for position, (spec, deps) in enumerate(zip(definition.tasks, definition.graph())):
            task = Task(
                pipeline_run_id=run.id,
                name=spec.name,
                position=position,
                depends_on=deps,
                optional=spec.optional,
                status=TaskStatus.WAITING if deps else TaskStatus.QUEUED,
                attempt=0,
                max_attempts=spec.max_attempts or settings.DEFAULT_MAX_ATTEMPTS,
                backoff_strategy=BackoffStrategy(spec.backoff_strategy or settings.DEFAULT_BACKOFF_STRATEGY),
                base_delay_seconds=spec.base_delay_seconds,
                max_delay_seconds=spec.max_delay_seconds,
                payload={**spec.payload, "params": params},
                attempt_history=[],
                created_at=now,
            )
            await self.store.insert(task)
            task_ids.append(str(task.id))
        run.task_ids = task_ids

        if not task_ids:
            self._finish(run, PipelineStatus.SUCCEEDED)
        await self.session.flush()

        logger.info("Triggered pipeline %r as run %s with %s tasks", definition.name, run.id, len(task_ids))
        return run

    async def on_task_terminal(self, task: Task) -> None:
        """Called once a task of a run reaches a terminal state."""
        if task.pipeline_run_id is None:
            return

        run = await self._lock_run(task.pipeline_run_id)
        if run is None or run.status in TERMINAL_PIPELINE_STATUSES:
            return

        tasks = await self.store.list_for_run(run.id)
        await self._advance(run, tasks)

        if run.failure_policy == PipelineFailurePolicy.FAIL_FAST and _required_failure(tasks):
            cancelled = 0
            for other in tasks:
                if other.status not in TERMINAL_TASK_STATUSES:
                    if await self._cancel(other):
                        cancelled += 1
            if cancelled:
                logger.info("Run %s failing fast: cancelled %s remaining tasks", run.id, cancelled)
            tasks = await self.store.list_for_run(run.id)

        status = aggregate_status((t.status, t.optional) for t in tasks)
        if status in TERMINAL_PIPELINE_STATUSES:
            self._finish(run, status)
        else:
            run.status = status
        await self.session.flush()

    async def cancel(self, run_id: UUID) -> PipelineRun:
        """Cancels every unfinished task of the run. A finished run is returned as-is."""
        run = await self._lock_run(run_id)
        if run is None:
            raise PipelineRunNotFoundError(run_id)
        if run.status in TERMINAL_PIPELINE_STATUSES:
            return run

        count = 0
        for task in await self.store.list_for_run(run.id):
            if task.status not in TERMINAL_TASK_STATUSES:
                if await self._cancel(task):
                    count += 1

        self._finish(run, PipelineStatus.CANCELLED)
        await self.session.flush()
        logger.info("Cancelled run %s (%s tasks cancelled)", run.id, count)
        return run

    async def get_run(self, run_id: UUID) -> PipelineRun:
        stmt = (
            select(PipelineRun)
            .where(PipelineRun.id == run_id)
            .options(selectinload(PipelineRun.tasks))
            .execution_options(populate_existing=True)
        )
        run = await self.session.scalar(stmt)
        if run is None:
            raise PipelineRunNotFoundError(run_id)
        return run

    async def list_runs(
        self,
        pipeline_name: Optional[str] = None,
        status: Optional[PipelineStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[PipelineRun], int]:
        conditions = []
        if pipeline_name is not None:
            conditions.append(PipelineRun.pipeline_name == pipeline_name)
        if status is not None:
            conditions.append(PipelineRun.status == status)

        total = await self.session.scalar(select(func.count(PipelineRun.id)).where(*conditions))
        stmt = (
            select(PipelineRun)
            .where(*conditions)
            .order_by(PipelineRun.created_at.desc(), PipelineRun.id.desc())
            .limit(limit)
            .offset(offset)
        )
        runs = list((await self.session.execute(stmt)).scalars().all())
        return runs, total or 0

    # -- Helpers ----------------------------------------------------------

    async def _lock_run(self, run_id: UUID) -> Optional[PipelineRun]:
        stmt = (
            select(PipelineRun)
            .where(PipelineRun.id == run_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return await self.session.scalar(stmt)

    async def _advance(self, run: PipelineRun, tasks: list[Task]) -> None:
        """
        Releases waiting tasks whose dependencies are satisfied and cancels those
        that can never run. Repeats until nothing changes, since a cancellation
        can block tasks further downstream.
        """
        by_position = {t.position: t for t in tasks}
        changed = True
        while changed:
            changed = False
            for task in tasks:
                if task.status != TaskStatus.WAITING:
                    continue
                deps = [by_position[i] for i in task.depends_on or []]

                if any(_blocks(dep) for dep in deps):
                    if await self._cancel(task):
                        changed = True
                elif all(dep.status == TaskStatus.SUCCEEDED for dep in deps):
                    if await self._release(task):
                        changed = True

    async def _release(self, task: Task) -> bool:
        try:
            await self.store.compare_and_set_status(
                task.id,
                TaskStatus.WAITING,
                TaskStatus.QUEUED,
                {"next_eligible_at": None},
                expected_attempt=task.attempt,
            )
        except ConflictError:
            # Cancelled directly in the meantime
            return False
        self.store.log_event(task.id, TaskEvent.RELEASED, run_id=str(task.pipeline_run_id))
        logger.debug("Task %s (%s) released", task.id, task.name)
        return True

    async def _cancel(self, task: Task) -> bool:
        task_id = task.id
        for _ in range(settings.MAX_CAS_RETRIES):
            try:
                await cancel_task(self.store, task, self.clock())
                return True
            except ConflictError:
                task = await self.store.get(task_id)
                if task is None or task.status in TERMINAL_TASK_STATUSES:
                    return False
        return False

    def _finish(self, run: PipelineRun, status: PipelineStatus) -> None:
        run.status = status
        run.finished_at = self.clock()
        PIPELINE_RUNS_TOTAL.labels(pipeline=run.pipeline_name, status=str(status)).inc()
        logger.info("Run %s of %r finished: %s", run.id, run.pipeline_name, status)


def _blocks(dep: Task) -> bool:
    # Optional or not, an upstream that fell short never feeds its dependents
    return dep.status in TERMINAL_TASK_STATUSES and dep.status != TaskStatus.SUCCEEDED


def _required_failure(tasks: list[Task]) -> bool:
    return any(
        t.status in (TaskStatus.DEAD_LETTERED, TaskStatus.CANCELLED) and not t.optional
        for t in tasks
    )
