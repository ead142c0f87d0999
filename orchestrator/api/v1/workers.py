from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Response, status
from pydantic import BaseModel, ConfigDict, Field

from orchestrator.api.deps import EngineDep
from orchestrator.domain.errors import EmptyQueueError, LeaseError, TaskNotFoundError
from orchestrator.domain.models import TaskAttempt, TaskResult
from orchestrator.domain.states import FailureMode, TaskStatus

router = APIRouter()

class LeaseRequest(BaseModel):
    worker_id: str
    count: int = Field(default=1, ge=1)
    lease_ttl_seconds: Optional[int] = Field(default=None, ge=1)

class LeasedTask(BaseModel):
    id: UUID
    pipeline_run_id: Optional[UUID] = None
    name: Optional[str] = None
    payload: Any = None
    attempt: int
    max_attempts: int
    lease_expiry: datetime
    model_config = ConfigDict(from_attributes=True)

class LeaseResponse(BaseModel):
    tasks: list[LeasedTask]

class RenewRequest(BaseModel):
    worker_id: str
    lease_ttl_seconds: Optional[int] = Field(default=None, ge=1)

class RenewResponse(BaseModel):
    task_id: UUID
    lease_expiry: datetime

class StartRequest(BaseModel):
    worker_id: str

class TaskResultBody(BaseModel):
    success: bool
    output: Any = None
    error: Optional[dict[str, Any]] = None
    failure_mode: FailureMode = FailureMode.RETRYABLE

class TaskAttemptBody(BaseModel):
    attempt_number: int
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    worker_id: Optional[str] = None

class ReportRequest(BaseModel):
    worker_id: str
    result: TaskResultBody
    attempt: Optional[TaskAttemptBody] = None

class TaskStateResponse(BaseModel):
    task_id: UUID
    status: TaskStatus
    attempt: int

@router.post("/lease", response_model=LeaseResponse, responses={204: {"description": "No ready tasks"}})
async def lease_tasks(body: LeaseRequest, engine: EngineDep):
    try:
        tasks = await engine.queue.lease(body.worker_id, body.count, body.lease_ttl_seconds)
    except EmptyQueueError:
        # Leasing may have dead-lettered exhausted tasks on the way
        await engine.session.commit()
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    await engine.session.commit()
    return LeaseResponse(tasks=[LeasedTask.model_validate(t) for t in tasks])

@router.post("/{task_id}/renew", response_model=RenewResponse)
async def renew_lease(task_id: UUID, body: RenewRequest, engine: EngineDep):
    try:
        task = await engine.queue.renew_lease(task_id, body.worker_id, body.lease_ttl_seconds)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except LeaseError as e:
        raise HTTPException(status_code=409, detail=str(e))
    await engine.session.commit()
    return RenewResponse(task_id=task.id, lease_expiry=task.lease_expiry)

@router.post("/{task_id}/start", response_model=TaskStateResponse)
async def start_task(task_id: UUID, body: StartRequest, engine: EngineDep):
    try:
        task = await engine.queue.start(task_id, body.worker_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except LeaseError as e:
        raise HTTPException(status_code=409, detail=str(e))
    await engine.session.commit()
    return TaskStateResponse(task_id=task.id, status=task.status, attempt=task.attempt)

@router.post("/{task_id}/report", response_model=TaskStateResponse)
async def report_task(task_id: UUID, body: ReportRequest, engine: EngineDep):
    result = TaskResult(
        success=body.result.success,
        output=body.result.output,
        error=body.result.error,
        failure_mode=body.result.failure_mode,
    )
    attempt = None
    if body.attempt:
        attempt = TaskAttempt(
            attempt_number=body.attempt.attempt_number,
            started_at=body.attempt.started_at,
            finished_at=body.attempt.finished_at,
            worker_id=body.attempt.worker_id or body.worker_id,
        )

    try:
        task = await engine.queue.report(task_id, body.worker_id, result, attempt)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except LeaseError as e:
        raise HTTPException(status_code=409, detail=str(e))
    await engine.session.commit()
    # QUEUED (retry scheduled), DEAD_LETTERED or SUCCEEDED
    return TaskStateResponse(task_id=task.id, status=task.status, attempt=task.attempt)
