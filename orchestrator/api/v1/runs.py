from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, ConfigDict

from orchestrator.api.deps import EngineDep
from orchestrator.api.v1.tasks import TaskResponse
from orchestrator.domain.errors import PipelineRunNotFoundError
from orchestrator.domain.states import PipelineFailurePolicy, PipelineStatus

router = APIRouter()

class RunResponse(BaseModel):
    id: UUID
    pipeline_name: str
    status: PipelineStatus
    failure_policy: PipelineFailurePolicy
    params: dict[str, Any]
    task_ids: list[UUID] = []
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)

class RunDetailResponse(RunResponse):
    tasks: list[TaskResponse] = []

class Pagination(BaseModel):
    total: int
    limit: int
    offset: int

class RunListResponse(BaseModel):
    runs: list[RunResponse]
    pagination: Pagination

@router.get("", response_model=RunListResponse)
async def list_runs(
    engine: EngineDep,
    pipeline_name: Optional[str] = None,
    status: Optional[PipelineStatus] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    runs, total = await engine.pipelines.list_runs(pipeline_name, status, limit, offset)
    return RunListResponse(
        runs=[RunResponse.model_validate(r) for r in runs],
        pagination=Pagination(total=total, limit=limit, offset=offset),
    )

@router.get("/{run_id}", response_model=RunDetailResponse)
async def get_run(run_id: UUID, engine: EngineDep):
    try:
        run = await engine.pipelines.get_run(run_id)
    except PipelineRunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return run

@router.post("/{run_id}/cancel", response_model=RunResponse)
async def cancel_run(run_id: UUID, engine: EngineDep):
    try:
        run = await engine.pipelines.cancel(run_id)
    except PipelineRunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    await engine.session.commit()
    return run
