from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest

from orchestrator.db.models import Task
from orchestrator.domain.errors import DLQItemNotFoundError, NotReplayableError
from orchestrator.domain.models import DLQFilter
from orchestrator.domain.states import DeadLetterReason, TaskEvent, TaskStatus
from orchestrator.utils.clock import as_utc

HISTORY = [
    {"attempt_number": 1, "started_at": None, "finished_at": None, "worker_id": "w1", "error": {"message": "boom"}},
]


async def dead_task(engine, clock, name="resize", **fields) -> Task:
    fields.setdefault("payload", {"image": "cat.png"})
    return await engine.store.insert(Task(
        name=name,
        status=TaskStatus.DEAD_LETTERED,
        attempt=1,
        max_attempts=2,
        last_error={"message": "boom"},
        attempt_history=HISTORY,
        created_at=clock(),
        **fields,
    ))


async def test_record_is_idempotent_per_task(engine, clock):
    task = await dead_task(engine, clock)

    first = await engine.dlq.record(task, HISTORY, DeadLetterReason.RETRIES_EXHAUSTED)
    second = await engine.dlq.record(task, HISTORY, DeadLetterReason.RETRIES_EXHAUSTED)

    assert first.id == second.id
    _, total = await engine.dlq.list()
    assert total == 1


async def test_record_keeps_the_failure_context(engine, clock):
    task = await dead_task(engine, clock)

    item = await engine.dlq.record(task, HISTORY, DeadLetterReason.RETRIES_EXHAUSTED)

    assert item.task_id == task.id
    assert item.payload == {"image": "cat.png"}
    assert item.attempt_history == HISTORY
    assert item.last_error == {"message": "boom"}


async def test_replay_creates_a_new_task_and_leaves_item_alone(engine, session, clock):
    task = await dead_task(engine, clock)
    item = await engine.dlq.record(task, HISTORY, DeadLetterReason.RETRIES_EXHAUSTED)
    before = (item.id, item.task_id, item.reason, item.replayable, list(item.attempt_history), as_utc(item.dead_lettered_at))

    clock.advance(60)
    replayed = await engine.dlq.replay(item.id)

    assert replayed.id != task.id
    assert replayed.status == TaskStatus.QUEUED
    assert replayed.attempt == 0
    assert replayed.payload == task.payload
    assert replayed.replayed_from == task.id

    await session.refresh(item)
    after = (item.id, item.task_id, item.reason, item.replayable, list(item.attempt_history), as_utc(item.dead_lettered_at))
    assert after == before

    events = [e.event_type for e in await engine.store.events_for(replayed.id)]
    assert events == [TaskEvent.REPLAYED]

    # The replayed task goes through the queue like any other
    [leased] = await engine.queue.lease("w1")
    assert leased.id == replayed.id


async def test_non_replayable_item_is_rejected(engine, clock):
    task = await dead_task(engine, clock)
    item = await engine.dlq.record(task, HISTORY, DeadLetterReason.NON_RETRYABLE, replayable=False)

    with pytest.raises(NotReplayableError):
        await engine.dlq.replay(item.id)


async def test_get_unknown_item(engine):
    with pytest.raises(DLQItemNotFoundError):
        await engine.dlq.get(uuid4())


async def test_list_filters_and_orders_newest_first(engine, clock):
    older = await engine.dlq.record(await dead_task(engine, clock, "a"), HISTORY, DeadLetterReason.RETRIES_EXHAUSTED)
    clock.advance(10)
    newer = await engine.dlq.record(await dead_task(engine, clock, "b"), HISTORY, DeadLetterReason.NON_RETRYABLE, replayable=False)

    items, total = await engine.dlq.list()
    assert total == 2
    assert [i.id for i in items] == [newer.id, older.id]

    items, total = await engine.dlq.list(DLQFilter(reason=DeadLetterReason.RETRIES_EXHAUSTED))
    assert [i.id for i in items] == [older.id]

    items, total = await engine.dlq.list(DLQFilter(replayable=False))
    assert [i.id for i in items] == [newer.id]

    items, total = await engine.dlq.list(limit=1, offset=1)
    assert total == 2
    assert [i.id for i in items] == [older.id]


async def test_purge_removes_only_old_items(engine, clock):
    old = await engine.dlq.record(await dead_task(engine, clock, "old"), HISTORY, DeadLetterReason.RETRIES_EXHAUSTED)
    clock.advance(timedelta(days=40).total_seconds())
    recent = await engine.dlq.record(await dead_task(engine, clock, "recent"), HISTORY, DeadLetterReason.RETRIES_EXHAUSTED)

    purged = await engine.dlq.purge(clock() - timedelta(days=30))

    assert purged == 1
    items, _ = await engine.dlq.list()
    assert [i.id for i in items] == [recent.id]
    with pytest.raises(DLQItemNotFoundError):
        await engine.dlq.get(old.id)


async def test_replay_carries_opaque_payload_and_backoff_bounds(engine, clock):
    task = await dead_task(
        engine, clock, payload=["cat.png", "dog.png"], base_delay_seconds=2.5, max_delay_seconds=30,
    )
    item = await engine.dlq.record(task, HISTORY, DeadLetterReason.RETRIES_EXHAUSTED)

    assert item.payload == ["cat.png", "dog.png"]
    assert (item.base_delay_seconds, item.max_delay_seconds) == (2.5, 30)

    replayed = await engine.dlq.replay(item.id)

    assert replayed.payload == ["cat.png", "dog.png"]
    assert (replayed.base_delay_seconds, replayed.max_delay_seconds) == (2.5, 30)
