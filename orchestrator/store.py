"""
Task Record Store: the single source of truth for task state.

Every status change goes through `compare_and_set_status`, a conditional
UPDATE ... RETURNING that only matches when the row is still in the state the
caller read. That one statement is what keeps two workers from holding the
same task at once; nothing in-process is trusted to serialize access.
"""
import logging
from datetime import datetime
from typing import Any, Iterable, Optional
from uuid import UUID

from sqlalchemy import select, update, func, case, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.db.models import Task, TaskEventLog
from orchestrator.domain.errors import ConflictError
from orchestrator.domain.states import TaskStatus, TaskEvent, ACTIVE_TASK_STATUSES
from orchestrator.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

class TaskStore:
    def __init__(self, session: AsyncSession, clock: Clock = utc_now):
        self.session = session
        self.clock = clock

    async def insert(self, task: Task) -> Task:
        if task.created_at is None:
            task.created_at = self.clock()
        if task.status is None:
            task.status = TaskStatus.QUEUED
        self.session.add(task)
        await self.session.flush()
        self.log_event(task.id, TaskEvent.CREATED, status=str(task.status))
        return task

    async def get(self, task_id: UUID) -> Optional[Task]:
        # Always hit the database: another transaction may have moved the row
        stmt = select(Task).where(Task.id == task_id).execution_options(populate_existing=True)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def compare_and_set_status(
        self,
        task_id: UUID,
        expected_status: TaskStatus,
        new_status: TaskStatus,
        mutations: Optional[dict[str, Any]] = None,
        *,
        expected_attempt: Optional[int] = None,
    ) -> Task:
        """
        Atomically moves a task from `expected_status` to `new_status`,
        applying `mutations` in the same statement.

        `expected_attempt` pins the attempt counter as well; since every lease
        bumps it, this rejects a writer whose lease was reclaimed in between.

        Raises ConflictError if the row no longer matches.
        """
        conditions = [Task.id == task_id, Task.status == expected_status]
        if expected_attempt is not None:
            conditions.append(Task.attempt == expected_attempt)

        values = dict(mutations or {})
        values["status"] = new_status

        stmt = (
            update(Task)
            .where(*conditions)
            .values(**values)
            .returning(Task)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        task = result.scalar_one_or_none()

        if task is None:
            logger.debug("CAS lost for task %s (expected %s -> %s)", task_id, expected_status, new_status)
            raise ConflictError(task_id, expected_status)
        return task

    async def find_ready(self, limit: int) -> list[Task]:
        """
        Queued tasks whose backoff has elapsed, plus leased/running tasks whose
        lease expired. Expired-lease reclaims come first, then oldest first.
        """
        now = self.clock()

        queued = and_(
            Task.status == TaskStatus.QUEUED,
            or_(Task.next_eligible_at.is_(None), Task.next_eligible_at <= now),
        )
        abandoned = and_(
            Task.status.in_(list(ACTIVE_TASK_STATUSES)),
            Task.lease_expiry <= now,
        )
        reclaim_first = case((Task.status == TaskStatus.QUEUED, 1), else_=0)

        stmt = (
            select(Task)
            .where(or_(queued, abandoned))
            .order_by(reclaim_first.asc(), Task.created_at.asc(), Task.position.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def find_expired(self, limit: int, exhausted_only: bool = False) -> list[Task]:
        now = self.clock()
        conditions = [
            Task.status.in_(list(ACTIVE_TASK_STATUSES)),
            Task.lease_expiry <= now,
        ]
        if exhausted_only:
            conditions.append(Task.attempt >= Task.max_attempts)

        stmt = (
            select(Task)
            .where(*conditions)
            .order_by(Task.lease_expiry.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def list_for_run(self, run_id: UUID) -> list[Task]:
        stmt = (
            select(Task)
            .where(Task.pipeline_run_id == run_id)
            .order_by(Task.position.asc())
            .execution_options(populate_existing=True)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def find_by_idempotency_key(self, key: str) -> Optional[Task]:
        stmt = select(Task).where(Task.idempotency_key == key)
        return await self.session.scalar(stmt)

    async def count_by_status(self) -> dict[TaskStatus, int]:
        stmt = select(Task.status, func.count(Task.id)).group_by(Task.status)
        rows = (await self.session.execute(stmt)).all()

        counts = {status: 0 for status in TaskStatus}
        for status, count in rows:
            counts[TaskStatus(status)] = count
        return counts

    async def oldest_queued_created_at(self) -> Optional[datetime]:
        stmt = select(func.min(Task.created_at)).where(Task.status == TaskStatus.QUEUED)
        return await self.session.scalar(stmt)

    async def count_inflight(self) -> int:
        now = self.clock()
        stmt = select(func.count(Task.id)).where(
            Task.status.in_(list(ACTIVE_TASK_STATUSES)),
            Task.lease_expiry > now,
        )
        return (await self.session.scalar(stmt)) or 0

    def log_event(self, task_id: UUID, event: TaskEvent, **meta: Any) -> None:
        self.session.add(TaskEventLog(
            task_id=task_id,
            event_type=event,
            timestamp=self.clock(),
            meta=meta,
        ))

    async def events_for(self, task_id: UUID) -> list[TaskEventLog]:
        await self.session.flush()
        stmt = select(TaskEventLog).where(TaskEventLog.task_id == task_id).order_by(TaskEventLog.id.asc())
        return list((await self.session.execute(stmt)).scalars().all())


def append_attempt(history: Optional[Iterable[dict[str, Any]]], attempt: dict[str, Any]) -> list[dict[str, Any]]:
    # New list: JSON columns don't track in-place mutation
    return [*(history or []), attempt]
