from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from orchestrator.api.deps import EngineDep, Registry
from orchestrator.domain.errors import PipelineNotFoundError
from orchestrator.domain.states import PipelineFailurePolicy, PipelineStatus, TaskStatus
from orchestrator.pipelines.definitions import TaskSpec, execution_steps, topological_order

router = APIRouter()

class PipelineSummary(BaseModel):
    name: str
    description: Optional[str] = None
    failure_policy: PipelineFailurePolicy
    tasks: list[TaskSpec]

class TriggerPipelineRequest(BaseModel):
    pipeline_name: str
    params: dict[str, Any] = Field(default_factory=dict)
    # Overrides the definition's policy for this run only
    failure_policy: Optional[PipelineFailurePolicy] = None

class TriggerPipelineResponse(BaseModel):
    run_id: UUID
    status: PipelineStatus

class DryRunRequest(BaseModel):
    failure_policy: Optional[PipelineFailurePolicy] = None

class PlannedTask(BaseModel):
    index: int
    name: str
    depends_on: list[int]
    optional: bool
    initial_status: TaskStatus

class DryRunResponse(BaseModel):
    pipeline_name: str
    failure_policy: PipelineFailurePolicy
    tasks: list[PlannedTask]
    order: list[str]
    steps: list[list[str]]
    warnings: list[str] = []

@router.get("", response_model=list[PipelineSummary])
async def list_pipelines(pipelines: Registry):
    return [PipelineSummary.model_validate(d.model_dump()) for d in pipelines.list()]

@router.post("/trigger", response_model=TriggerPipelineResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_pipeline(body: TriggerPipelineRequest, engine: EngineDep):
    try:
        run = await engine.pipelines.trigger(body.pipeline_name, body.params, body.failure_policy)
    except PipelineNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    await engine.session.commit()
    return TriggerPipelineResponse(run_id=run.id, status=run.status)

@router.post("/{pipeline_name}/dry-run", response_model=DryRunResponse)
async def dry_run_pipeline(pipeline_name: str, pipelines: Registry, body: Optional[DryRunRequest] = None):
    """Resolves the run a trigger would create, without writing anything."""
    try:
        definition = pipelines.get(pipeline_name)
    except PipelineNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    graph = definition.graph()
    names = [spec.name for spec in definition.tasks]
    # Registered definitions are acyclic, so neither helper returns None here
    order = topological_order(graph) or []
    steps = execution_steps(graph) or []

    return DryRunResponse(
        pipeline_name=definition.name,
        failure_policy=(body and body.failure_policy) or definition.failure_policy,
        tasks=[
            PlannedTask(
                index=i,
                name=spec.name,
                depends_on=deps,
                optional=spec.optional,
                initial_status=TaskStatus.WAITING if deps else TaskStatus.QUEUED,
            )
            for i, (spec, deps) in enumerate(zip(definition.tasks, graph))
        ],
        order=[names[i] for i in order],
        steps=[[names[i] for i in step] for step in steps],
        warnings=definition.warnings(),
    )
