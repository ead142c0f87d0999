from __future__ import annotations

from datetime import timedelta

from sqlalchemy import update

from orchestrator.db.models import Task
from orchestrator.domain.states import DeadLetterReason, FailureMode, TaskEvent, TaskStatus
from orchestrator.utils.clock import as_utc

ERROR = {"message": "boom"}


async def failed_task(engine, clock, **fields) -> Task:
    fields.setdefault("attempt", 1)
    fields.setdefault("max_attempts", 3)
    return await engine.store.insert(Task(
        status=TaskStatus.FAILED,
        payload={"x": 1},
        attempt_history=[],
        created_at=clock(),
        **fields,
    ))


async def test_retry_schedules_next_attempt(engine, clock):
    task = await failed_task(engine, clock, attempt=3, max_attempts=5)

    retried = await engine.retry.handle_failure(task, ERROR)

    assert retried.status == TaskStatus.QUEUED
    # exponential: 1s * 2^(3-1)
    assert as_utc(retried.next_eligible_at) == clock() + timedelta(seconds=4)
    assert retried.attempt == 3


async def test_fixed_strategy_uses_base_delay(engine, clock):
    task = await failed_task(engine, clock, attempt=2, backoff_strategy="fixed")

    retried = await engine.retry.handle_failure(task, ERROR)

    assert as_utc(retried.next_eligible_at) == clock() + timedelta(seconds=1)


async def test_task_backoff_bounds_override_defaults(engine, clock):
    first = await failed_task(engine, clock, attempt=1, base_delay_seconds=5, max_delay_seconds=8)
    capped = await failed_task(engine, clock, attempt=3, max_attempts=5, base_delay_seconds=5, max_delay_seconds=8)

    first = await engine.retry.handle_failure(first, ERROR)
    capped = await engine.retry.handle_failure(capped, ERROR)

    assert as_utc(first.next_eligible_at) == clock() + timedelta(seconds=5)
    # 5s * 2^2 = 20s, held to the task's own ceiling
    assert as_utc(capped.next_eligible_at) == clock() + timedelta(seconds=8)


async def test_exhausted_attempts_dead_letter(engine, clock):
    task = await failed_task(engine, clock, attempt=3, max_attempts=3)

    final = await engine.retry.handle_failure(task, ERROR)

    assert final.status == TaskStatus.DEAD_LETTERED
    assert final.finished_at is not None
    [item], total = await engine.dlq.list()
    assert total == 1
    assert item.task_id == task.id
    assert item.reason == DeadLetterReason.RETRIES_EXHAUSTED
    assert item.replayable is True


async def test_non_retryable_dead_letters_with_attempts_left(engine, clock):
    task = await failed_task(engine, clock, attempt=1, max_attempts=10)

    final = await engine.retry.handle_failure(task, ERROR, FailureMode.NON_RETRYABLE)

    assert final.status == TaskStatus.DEAD_LETTERED
    [item], _ = await engine.dlq.list()
    assert item.reason == DeadLetterReason.NON_RETRYABLE
    assert item.replayable is False


async def test_dead_letter_happens_once(engine, clock):
    task = await failed_task(engine, clock, attempt=3, max_attempts=3)

    await engine.retry.handle_failure(task, ERROR)
    await engine.retry.handle_failure(task, ERROR)

    _, total = await engine.dlq.list()
    assert total == 1
    events = [e.event_type for e in await engine.store.events_for(task.id)]
    assert events.count(TaskEvent.DEAD_LETTERED) == 1


async def test_concurrent_transition_wins(engine, session, clock):
    task = await failed_task(engine, clock)

    # Someone else already requeued it; our snapshot still says FAILED
    await session.execute(
        update(Task.__table__)
        .where(Task.__table__.c.id == task.id)
        .values(status="queued")
    )

    result = await engine.retry.handle_failure(task, ERROR)

    assert result.status == TaskStatus.QUEUED
    assert result.next_eligible_at is None
    _, total = await engine.dlq.list()
    assert total == 0
