import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.api.v1.metrics import DLQ_ROUTED_TOTAL, DLQ_PURGED_TOTAL, DLQ_REPLAYED_TOTAL
from orchestrator.db.models import DLQItem, Task, TaskEventLog
from orchestrator.domain.errors import DLQItemNotFoundError, NotReplayableError
from orchestrator.domain.models import DLQFilter
from orchestrator.domain.states import DeadLetterReason, TaskEvent, TaskStatus
from orchestrator.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

class DLQManager:
    """
    Durable store of terminally failed tasks.

    Items point back at their task by id only. Replay never edits an item:
    it enqueues a fresh task, so the failure record stays as it was.
    """

    def __init__(self, session: AsyncSession, clock: Clock = utc_now):
        self.session = session
        self.clock = clock

    async def record(
        self,
        task: Task,
        attempt_history: list[dict[str, Any]],
        reason: DeadLetterReason,
        replayable: bool = True,
    ) -> DLQItem:
        """Idempotent on task id: a second call overwrites the first."""
        now = self.clock()

        stmt = select(DLQItem).where(DLQItem.task_id == task.id)
        item = await self.session.scalar(stmt)
        if item is None:
            item = DLQItem(task_id=task.id)
            self.session.add(item)
        else:
            logger.info("DLQ item for task %s already exists, overwriting", task.id)

        item.pipeline_run_id = task.pipeline_run_id
        item.task_name = task.name
        item.payload = task.payload
        item.max_attempts = task.max_attempts
        item.backoff_strategy = task.backoff_strategy
        item.base_delay_seconds = task.base_delay_seconds
        item.max_delay_seconds = task.max_delay_seconds
        item.attempt_history = list(attempt_history)
        item.last_error = task.last_error
        item.reason = reason
        item.replayable = replayable
        item.dead_lettered_at = now

        await self.session.flush()

        DLQ_ROUTED_TOTAL.labels(reason=str(reason)).inc()
        logger.info("Task %s dead-lettered (reason=%s, attempts=%s)", task.id, reason, task.attempt)
        return item

    async def list(
        self,
        filter: Optional[DLQFilter] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[DLQItem], int]:
        conditions = []
        if filter:
            if filter.pipeline_run_id is not None:
                conditions.append(DLQItem.pipeline_run_id == filter.pipeline_run_id)
            if filter.task_name is not None:
                conditions.append(DLQItem.task_name == filter.task_name)
            if filter.reason is not None:
                conditions.append(DLQItem.reason == filter.reason)
            if filter.replayable is not None:
                conditions.append(DLQItem.replayable == filter.replayable)

        total = await self.session.scalar(
            select(func.count(DLQItem.id)).where(*conditions)
        )
        stmt = (
            select(DLQItem)
            .where(*conditions)
            .order_by(DLQItem.dead_lettered_at.desc(), DLQItem.id.desc())
            .limit(limit)
            .offset(offset)
        )
        items = list((await self.session.execute(stmt)).scalars().all())
        return items, total or 0

    async def get(self, item_id: UUID) -> DLQItem:
        item = await self.session.get(DLQItem, item_id)
        if not item:
            raise DLQItemNotFoundError(item_id)
        return item

    async def replay(self, item_id: UUID) -> Task:
        item = await self.get(item_id)
        if not item.replayable:
            raise NotReplayableError(item_id)

        now = self.clock()
        task = Task(
            name=item.task_name,
            status=TaskStatus.QUEUED,
            attempt=0,
            max_attempts=item.max_attempts,
            backoff_strategy=item.backoff_strategy,
            base_delay_seconds=item.base_delay_seconds,
            max_delay_seconds=item.max_delay_seconds,
            payload=item.payload,
            attempt_history=[],
            created_at=now,
            replayed_from=item.task_id,
        )
        self.session.add(task)
        await self.session.flush()

        self.session.add(TaskEventLog(
            task_id=task.id,
            event_type=TaskEvent.REPLAYED,
            timestamp=now,
            meta={"dlq_item_id": str(item.id), "original_task_id": str(item.task_id)},
        ))
        await self.session.flush()

        DLQ_REPLAYED_TOTAL.inc()
        logger.info("Replayed DLQ item %s as task %s", item.id, task.id)
        return task

    async def purge(self, older_than: datetime) -> int:
        """Deletes items dead-lettered before `older_than`. Irreversible."""
        stmt = (
            delete(DLQItem)
            .where(DLQItem.dead_lettered_at < older_than)
            .execution_options(synchronize_session="fetch")
        )
        result = await self.session.execute(stmt)
        count = result.rowcount or 0

        if count:
            DLQ_PURGED_TOTAL.inc(count)
        logger.warning("Purged %s DLQ items dead-lettered before %s", count, older_than.isoformat())
        return count
