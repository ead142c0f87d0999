from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from orchestrator.domain.errors import (
    NotOwnerError,
    PipelineDefinitionError,
    PipelineNotFoundError,
    PipelineRunNotFoundError,
)
from orchestrator.domain.models import TaskResult
from orchestrator.domain.states import PipelineFailurePolicy, PipelineStatus, TaskStatus
from orchestrator.pipelines.definitions import (
    PipelineDefinition,
    execution_steps,
    load_definitions,
    parse_definition,
)
from orchestrator.pipelines.machine import aggregate_status

S, DL, C, Q = TaskStatus.SUCCEEDED, TaskStatus.DEAD_LETTERED, TaskStatus.CANCELLED, TaskStatus.QUEUED


async def lease_all(engine, worker="w1") -> dict:
    leased = await engine.queue.lease(worker, count=10)
    return {t.name: t for t in leased}


async def finish(engine, task, success=True, failure_mode="retryable", worker="w1"):
    if success:
        result = TaskResult(success=True, output={"done": task.name})
    else:
        result = TaskResult(success=False, error={"message": f"{task.name} failed"}, failure_mode=failure_mode)
    return await engine.queue.report(task.id, worker, result)


def statuses(run) -> dict:
    return {t.name: t.status for t in run.tasks}


# -- Definitions --------------------------------------------------------

def test_graph_uses_integer_indices(registry):
    assert registry.get("etl").graph() == [[], [0], [0], [1]]


@pytest.mark.parametrize(
    "tasks, message",
    [
        ([{"name": "a"}, {"name": "a"}], "duplicate"),
        ([{"name": "a", "depends_on": ["ghost"]}], "unknown"),
        ([{"name": "a", "depends_on": ["b"]}, {"name": "b", "depends_on": ["a"]}], "cycle"),
        ([{"name": "a", "depends_on": ["a"]}], "cycle"),
    ],
)
def test_invalid_graphs_are_rejected(tasks, message):
    with pytest.raises(ValidationError, match=message):
        PipelineDefinition.model_validate({"name": "bad", "tasks": tasks})


def test_parse_definition_wraps_validation_errors():
    with pytest.raises(PipelineDefinitionError):
        parse_definition({"name": "bad", "tasks": [{"name": "a", "depends_on": ["a"]}]})


def test_load_definitions_from_file(tmp_path):
    path = tmp_path / "pipelines.json"
    path.write_text(json.dumps({"pipelines": [
        {"name": "one", "tasks": [{"name": "a"}]},
        {"name": "two", "failure_policy": "fail_fast", "tasks": []},
    ]}))

    definitions = load_definitions(path)

    assert [d.name for d in definitions] == ["one", "two"]
    assert definitions[1].failure_policy == "fail_fast"


def test_unknown_pipeline(registry):
    with pytest.raises(PipelineNotFoundError):
        registry.get("nope")


def test_execution_steps_group_tasks_by_depth(registry):
    assert execution_steps(registry.get("etl").graph()) == [[0], [1, 2], [3]]
    assert execution_steps([[1], [0]]) is None
    assert execution_steps([]) == []


def test_warns_about_optional_tasks_with_dependents(registry):
    assert registry.get("etl").warnings() == []
    assert registry.get("enrichment").warnings() == [
        "optional task 'enrich' has dependents; they are cancelled if it does not succeed"
    ]


# -- Aggregation --------------------------------------------------------

def test_optional_failure_is_partial():
    assert aggregate_status([(S, False), (S, False), (S, False), (DL, True)]) == PipelineStatus.PARTIALLY_FAILED


def test_required_failure_fails_the_run():
    assert aggregate_status([(DL, False), (S, False), (S, False), (S, True)]) == PipelineStatus.FAILED
    assert aggregate_status([(DL, False), (S, False), (S, False), (DL, True)]) == PipelineStatus.FAILED


def test_unfinished_tasks_keep_the_run_running():
    assert aggregate_status([(S, False), (Q, False), (DL, False)]) == PipelineStatus.RUNNING


def test_all_succeeded():
    assert aggregate_status([(S, False), (S, True)]) == PipelineStatus.SUCCEEDED
    assert aggregate_status([]) == PipelineStatus.SUCCEEDED


# -- Runs ---------------------------------------------------------------

async def test_trigger_creates_tasks_in_graph_order(engine):
    run = await engine.pipelines.trigger("etl", {"date": "2024-01-01"})

    assert run.status == PipelineStatus.RUNNING
    run = await engine.pipelines.get_run(run.id)
    assert [t.name for t in run.tasks] == ["extract", "transform", "report", "load"]
    assert [str(t.id) for t in run.tasks] == run.task_ids
    assert statuses(run) == {
        "extract": TaskStatus.QUEUED,
        "transform": TaskStatus.WAITING,
        "report": TaskStatus.WAITING,
        "load": TaskStatus.WAITING,
    }
    assert run.tasks[0].payload == {"source": "s3://bucket", "params": {"date": "2024-01-01"}}


async def test_trigger_unknown_pipeline(engine):
    with pytest.raises(PipelineNotFoundError):
        await engine.pipelines.trigger("nope")


async def test_empty_pipeline_succeeds_immediately(engine, registry):
    registry.register(PipelineDefinition(name="noop"))

    run = await engine.pipelines.trigger("noop")

    assert run.status == PipelineStatus.SUCCEEDED
    assert run.finished_at is not None


async def test_dependents_are_released_as_upstream_succeeds(engine):
    run = await engine.pipelines.trigger("etl")

    leased = await lease_all(engine)
    assert set(leased) == {"extract"}
    await finish(engine, leased["extract"])

    leased = await lease_all(engine)
    assert set(leased) == {"transform", "report"}
    await finish(engine, leased["transform"])
    await finish(engine, leased["report"])

    leased = await lease_all(engine)
    assert set(leased) == {"load"}
    await finish(engine, leased["load"])

    run = await engine.pipelines.get_run(run.id)
    assert run.status == PipelineStatus.SUCCEEDED
    assert run.finished_at is not None


async def test_optional_task_failure_gives_partial_failure(engine):
    run = await engine.pipelines.trigger("etl")

    await finish(engine, (await lease_all(engine))["extract"])
    leased = await lease_all(engine)
    await finish(engine, leased["transform"])
    await finish(engine, leased["report"], success=False, failure_mode="non_retryable")

    run = await engine.pipelines.get_run(run.id)
    assert run.status == PipelineStatus.RUNNING

    await finish(engine, (await lease_all(engine))["load"])

    run = await engine.pipelines.get_run(run.id)
    assert statuses(run)["report"] == TaskStatus.DEAD_LETTERED
    assert run.status == PipelineStatus.PARTIALLY_FAILED


async def test_required_failure_cancels_blocked_dependents(engine):
    run = await engine.pipelines.trigger("etl")

    await finish(engine, (await lease_all(engine))["extract"])
    leased = await lease_all(engine)
    await finish(engine, leased["transform"], success=False, failure_mode="non_retryable")

    run = await engine.pipelines.get_run(run.id)
    assert statuses(run)["load"] == TaskStatus.CANCELLED
    # Independent branch keeps going under the "continue" policy
    assert statuses(run)["report"] == TaskStatus.LEASED
    assert run.status == PipelineStatus.RUNNING

    await finish(engine, leased["report"])

    run = await engine.pipelines.get_run(run.id)
    assert run.status == PipelineStatus.FAILED


async def test_cancellation_cascades_downstream(engine):
    run = await engine.pipelines.trigger("etl")

    await finish(engine, (await lease_all(engine))["extract"], success=False, failure_mode="non_retryable")

    run = await engine.pipelines.get_run(run.id)
    assert statuses(run) == {
        "extract": TaskStatus.DEAD_LETTERED,
        "transform": TaskStatus.CANCELLED,
        "report": TaskStatus.CANCELLED,
        "load": TaskStatus.CANCELLED,
    }
    assert run.status == PipelineStatus.FAILED


async def test_fail_fast_cancels_running_siblings(engine):
    run = await engine.pipelines.trigger("strict")

    leased = await lease_all(engine)
    assert set(leased) == {"a", "b"}
    # max_attempts=1: a single failure dead-letters "a"
    await finish(engine, leased["a"], success=False)

    run = await engine.pipelines.get_run(run.id)
    assert statuses(run) == {"a": TaskStatus.DEAD_LETTERED, "b": TaskStatus.CANCELLED, "c": TaskStatus.CANCELLED}
    assert run.status == PipelineStatus.FAILED

    with pytest.raises(NotOwnerError):
        await finish(engine, leased["b"])


async def test_cancel_run_drops_every_lease(engine):
    run = await engine.pipelines.trigger("etl")
    leased = await lease_all(engine)

    cancelled = await engine.pipelines.cancel(run.id)

    assert cancelled.status == PipelineStatus.CANCELLED
    run = await engine.pipelines.get_run(run.id)
    assert set(statuses(run).values()) == {TaskStatus.CANCELLED}
    with pytest.raises(NotOwnerError):
        await finish(engine, leased["extract"])

    # Cancelling again is a no-op
    assert (await engine.pipelines.cancel(run.id)).status == PipelineStatus.CANCELLED


async def test_cancel_unknown_run(engine):
    from uuid import uuid4

    with pytest.raises(PipelineRunNotFoundError):
        await engine.pipelines.cancel(uuid4())


async def test_list_runs_filters(engine, clock):
    first = await engine.pipelines.trigger("etl")
    clock.advance(1)
    second = await engine.pipelines.trigger("strict")
    clock.advance(1)
    await engine.pipelines.cancel(first.id)

    runs, total = await engine.pipelines.list_runs()
    assert total == 2
    assert [r.id for r in runs] == [second.id, first.id]

    runs, total = await engine.pipelines.list_runs(pipeline_name="etl")
    assert [r.id for r in runs] == [first.id]

    runs, total = await engine.pipelines.list_runs(status=PipelineStatus.RUNNING)
    assert [r.id for r in runs] == [second.id]


async def test_failed_optional_upstream_cancels_its_dependents(engine):
    run = await engine.pipelines.trigger("enrichment")

    await finish(engine, (await lease_all(engine))["ingest"])
    leased = await lease_all(engine)
    assert set(leased) == {"enrich", "archive"}
    # max_attempts=1: one failure dead-letters the optional "enrich"
    await finish(engine, leased["enrich"], success=False)

    run = await engine.pipelines.get_run(run.id)
    assert statuses(run)["enrich"] == TaskStatus.DEAD_LETTERED
    assert statuses(run)["publish"] == TaskStatus.CANCELLED
    assert run.status == PipelineStatus.RUNNING

    await finish(engine, leased["archive"])

    run = await engine.pipelines.get_run(run.id)
    # "publish" is required, so falling short of it fails the run
    assert run.status == PipelineStatus.FAILED


async def test_cancelled_optional_chain_gives_partial_failure(engine, registry):
    registry.register(PipelineDefinition.model_validate({
        "name": "extras",
        "tasks": [
            {"name": "main"},
            {"name": "thumbnail", "optional": True, "max_attempts": 1},
            {"name": "watermark", "depends_on": ["thumbnail"], "optional": True},
        ],
    }))
    run = await engine.pipelines.trigger("extras")

    leased = await lease_all(engine)
    await finish(engine, leased["thumbnail"], success=False)
    await finish(engine, leased["main"])

    run = await engine.pipelines.get_run(run.id)
    assert statuses(run) == {
        "main": TaskStatus.SUCCEEDED,
        "thumbnail": TaskStatus.DEAD_LETTERED,
        "watermark": TaskStatus.CANCELLED,
    }
    assert run.status == PipelineStatus.PARTIALLY_FAILED


async def test_dependent_waits_until_every_upstream_succeeds(engine):
    run = await engine.pipelines.trigger("strict")

    leased = await lease_all(engine)
    await finish(engine, leased["b"])

    run = await engine.pipelines.get_run(run.id)
    assert statuses(run)["c"] == TaskStatus.WAITING

    await finish(engine, leased["a"])

    run = await engine.pipelines.get_run(run.id)
    assert statuses(run)["c"] == TaskStatus.QUEUED


async def test_trigger_can_override_failure_policy(engine):
    run = await engine.pipelines.trigger("etl", failure_policy=PipelineFailurePolicy.FAIL_FAST)
    assert run.failure_policy == PipelineFailurePolicy.FAIL_FAST

    await finish(engine, (await lease_all(engine))["extract"])
    leased = await lease_all(engine)
    await finish(engine, leased["transform"], success=False, failure_mode="non_retryable")

    run = await engine.pipelines.get_run(run.id)
    # Under the definition's "continue" policy "report" would still be leased
    assert statuses(run)["report"] == TaskStatus.CANCELLED
    assert run.status == PipelineStatus.FAILED

    # The definition itself is untouched
    other = await engine.pipelines.trigger("etl")
    assert other.failure_policy == PipelineFailurePolicy.CONTINUE


async def test_task_spec_backoff_bounds_are_copied_to_tasks(engine, registry):
    registry.register(PipelineDefinition.model_validate({
        "name": "slow",
        "tasks": [{"name": "poll", "base_delay_seconds": 5, "max_delay_seconds": 60}],
    }))

    run = await engine.pipelines.trigger("slow")

    run = await engine.pipelines.get_run(run.id)
    assert (run.tasks[0].base_delay_seconds, run.tasks[0].max_delay_seconds) == (5, 60)
