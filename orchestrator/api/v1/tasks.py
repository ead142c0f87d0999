from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from orchestrator.api.deps import EngineDep
from orchestrator.domain.errors import InvalidTaskStateError, TaskNotFoundError
from orchestrator.domain.models import NewTask
from orchestrator.domain.states import BackoffStrategy, TaskStatus

router = APIRouter()

class QueueTaskRequest(BaseModel):
    payload: Any = Field(default_factory=dict)
    name: Optional[str] = None
    max_attempts: Optional[int] = Field(default=None, ge=1)
    backoff_strategy: Optional[BackoffStrategy] = None
    base_delay_seconds: Optional[float] = Field(default=None, ge=0)
    max_delay_seconds: Optional[float] = Field(default=None, ge=0)
    idempotency_key: Optional[str] = None

    def to_domain(self) -> NewTask:
        return NewTask(
            payload=self.payload,
            name=self.name,
            max_attempts=self.max_attempts,
            backoff_strategy=self.backoff_strategy,
            base_delay_seconds=self.base_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
            idempotency_key=self.idempotency_key,
        )

class QueueTaskResponse(BaseModel):
    task_id: UUID
    status: TaskStatus

class QueueBatchRequest(BaseModel):
    tasks: list[QueueTaskRequest] = Field(min_length=1)

class QueueBatchResponse(BaseModel):
    tasks: list[QueueTaskResponse]

class QueueStatusResponse(BaseModel):
    counts: dict[TaskStatus, int]
    oldest_queued_age: Optional[float] = None

class TaskResponse(BaseModel):
    id: UUID
    pipeline_run_id: Optional[UUID] = None
    name: Optional[str] = None
    position: int
    depends_on: list[int] = []
    optional: bool
    status: TaskStatus
    attempt: int
    max_attempts: int
    backoff_strategy: BackoffStrategy
    base_delay_seconds: Optional[float] = None
    max_delay_seconds: Optional[float] = None
    lease_owner: Optional[str] = None
    lease_expiry: Optional[datetime] = None
    next_eligible_at: Optional[datetime] = None
    created_at: datetime
    last_attempt_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    payload: Any = None
    result: Any = None
    last_error: Optional[dict[str, Any]] = None
    attempt_history: list[dict[str, Any]] = []
    idempotency_key: Optional[str] = None
    replayed_from: Optional[UUID] = None
    model_config = ConfigDict(from_attributes=True)

@router.post("", response_model=QueueTaskResponse, status_code=status.HTTP_201_CREATED)
async def queue_task(body: QueueTaskRequest, engine: EngineDep):
    task = await engine.queue.enqueue(body.to_domain())
    await engine.session.commit()
    return QueueTaskResponse(task_id=task.id, status=task.status)

@router.post("/batch", response_model=QueueBatchResponse, status_code=status.HTTP_201_CREATED)
async def queue_batch(body: QueueBatchRequest, engine: EngineDep):
    # All or nothing: a failure anywhere leaves the transaction uncommitted
    tasks = await engine.queue.enqueue_batch([item.to_domain() for item in body.tasks])
    await engine.session.commit()
    return QueueBatchResponse(tasks=[QueueTaskResponse(task_id=t.id, status=t.status) for t in tasks])

# Declared before /{task_id} so "status" is not parsed as an id
@router.get("/status", response_model=QueueStatusResponse)
async def queue_status(engine: EngineDep):
    result = await engine.queue.status()
    return QueueStatusResponse(counts=result.counts, oldest_queued_age=result.oldest_queued_age)

@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(task_id: UUID, engine: EngineDep):
    task = await engine.store.get(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task

@router.post("/{task_id}/cancel", response_model=TaskResponse)
async def cancel_task(task_id: UUID, engine: EngineDep):
    try:
        task = await engine.queue.cancel(task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTaskStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    await engine.session.commit()
    return task
