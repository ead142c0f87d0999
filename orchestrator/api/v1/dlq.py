from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from orchestrator.api.deps import EngineDep
from orchestrator.api.v1.runs import Pagination
from orchestrator.domain.errors import DLQItemNotFoundError, NotReplayableError
from orchestrator.domain.models import DLQFilter
from orchestrator.domain.states import BackoffStrategy, DeadLetterReason, TaskStatus
from orchestrator.settings import settings
from orchestrator.utils.clock import as_utc

router = APIRouter()

class DLQItemResponse(BaseModel):
    id: UUID
    task_id: UUID
    pipeline_run_id: Optional[UUID] = None
    task_name: Optional[str] = None
    payload: Any = None
    max_attempts: int
    backoff_strategy: BackoffStrategy
    base_delay_seconds: Optional[float] = None
    max_delay_seconds: Optional[float] = None
    attempt_history: list[dict[str, Any]] = []
    last_error: Optional[dict[str, Any]] = None
    reason: DeadLetterReason
    replayable: bool
    dead_lettered_at: datetime
    model_config = ConfigDict(from_attributes=True)

class DLQListResponse(BaseModel):
    items: list[DLQItemResponse]
    pagination: Pagination

class ReplayResponse(BaseModel):
    dlq_item_id: UUID
    task_id: UUID
    status: TaskStatus

class PurgeRequest(BaseModel):
    # Defaults to the retention window
    older_than_days: Optional[int] = Field(default=None, ge=0)
    older_than: Optional[datetime] = None

class PurgeResponse(BaseModel):
    purged: int
    older_than: datetime

@router.get("", response_model=DLQListResponse)
async def list_dlq(
    engine: EngineDep,
    pipeline_run_id: Optional[UUID] = None,
    task_name: Optional[str] = None,
    reason: Optional[DeadLetterReason] = None,
    replayable: Optional[bool] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    filter = DLQFilter(
        pipeline_run_id=pipeline_run_id,
        task_name=task_name,
        reason=reason,
        replayable=replayable,
    )
    items, total = await engine.dlq.list(filter, limit, offset)
    return DLQListResponse(
        items=[DLQItemResponse.model_validate(i) for i in items],
        pagination=Pagination(total=total, limit=limit, offset=offset),
    )

@router.get("/{item_id}", response_model=DLQItemResponse)
async def get_dlq_item(item_id: UUID, engine: EngineDep):
    try:
        return await engine.dlq.get(item_id)
    except DLQItemNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

@router.post("/{item_id}/replay", response_model=ReplayResponse, status_code=status.HTTP_201_CREATED)
async def replay_dlq_item(item_id: UUID, engine: EngineDep):
    try:
        task = await engine.dlq.replay(item_id)
    except DLQItemNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except NotReplayableError as e:
        raise HTTPException(status_code=409, detail=str(e))
    await engine.session.commit()
    return ReplayResponse(dlq_item_id=item_id, task_id=task.id, status=task.status)

@router.post("/purge", response_model=PurgeResponse)
async def purge_dlq(body: PurgeRequest, engine: EngineDep):
    if body.older_than is not None:
        cutoff = as_utc(body.older_than)
    else:
        days = body.older_than_days if body.older_than_days is not None else settings.DLQ_RETENTION_DAYS
        cutoff = engine.clock() - timedelta(days=days)

    count = await engine.dlq.purge(cutoff)
    await engine.session.commit()
    return PurgeResponse(purged=count, older_than=cutoff)
