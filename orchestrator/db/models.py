from datetime import datetime
from typing import Optional, Any
from uuid import UUID, uuid4

from sqlalchemy import String, Integer, Boolean, Float, DateTime, ForeignKey, Index, JSON, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import JSONB

from orchestrator.db.session import Base
from orchestrator.domain.states import (
    TaskStatus,
    TaskEvent,
    PipelineStatus,
    PipelineFailurePolicy,
    BackoffStrategy,
    DeadLetterReason,
)
from orchestrator.utils.clock import utc_now

# JSONB on Postgres, plain JSON elsewhere (tests run on SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")

class PipelineRun(Base):
    __tablename__ = "pipeline_runs"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    pipeline_name: Mapped[str] = mapped_column(String, nullable=False, index=True)
    status: Mapped[PipelineStatus] = mapped_column(String, default=PipelineStatus.PENDING, index=True)
    failure_policy: Mapped[PipelineFailurePolicy] = mapped_column(String, default=PipelineFailurePolicy.CONTINUE)

    params: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    # Insertion order = dependency-resolution order
    task_ids: Mapped[list[str]] = mapped_column(JSONType, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    tasks: Mapped[list["Task"]] = relationship("Task", back_populates="pipeline_run", order_by="Task.position")

class Task(Base):
    __tablename__ = "tasks"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    pipeline_run_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("pipeline_runs.id"), index=True, nullable=True
    )

    # Graph placement inside the run (integer indices, never object references)
    name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    depends_on: Mapped[list[int]] = mapped_column(JSONType, default=list)
    optional: Mapped[bool] = mapped_column(Boolean, default=False)

    # Core orchestration fields
    status: Mapped[TaskStatus] = mapped_column(String, default=TaskStatus.QUEUED, index=True)
    attempt: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    backoff_strategy: Mapped[BackoffStrategy] = mapped_column(String, default=BackoffStrategy.EXPONENTIAL)
    # Per-task backoff bounds; NULL falls back to the configured defaults
    base_delay_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    max_delay_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Lease
    lease_owner: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    lease_expiry: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    # Scheduling fields
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    next_eligible_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Payload / outcome (opaque to the engine)
    payload: Mapped[Any] = mapped_column(JSONType, default=dict)
    result: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    last_error: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    attempt_history: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)

    # Idempotency
    idempotency_key: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    # Back-reference to the dead-lettered task this one replays
    replayed_from: Mapped[Optional[UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)

    pipeline_run: Mapped[Optional["PipelineRun"]] = relationship("PipelineRun", back_populates="tasks")
    events: Mapped[list["TaskEventLog"]] = relationship("TaskEventLog", back_populates="task", cascade="all, delete-orphan")

    __table_args__ = (
        # "find ready" scan: status + created_at, with lease_expiry for reclaims
        Index("ix_tasks_ready", "status", "created_at"),
        Index("ix_tasks_idempotency", "idempotency_key", unique=True, postgresql_where=text("idempotency_key IS NOT NULL")),
    )

class DLQItem(Base):
    __tablename__ = "dlq_items"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    # Back-reference only; unique so record() is idempotent per task
    task_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), unique=True, nullable=False)
    pipeline_run_id: Mapped[Optional[UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True, index=True)
    task_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    payload: Mapped[Any] = mapped_column(JSONType, default=dict)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    backoff_strategy: Mapped[BackoffStrategy] = mapped_column(String, default=BackoffStrategy.EXPONENTIAL)
    base_delay_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    max_delay_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    attempt_history: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    last_error: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    reason: Mapped[DeadLetterReason] = mapped_column(String, nullable=False)
    replayable: Mapped[bool] = mapped_column(Boolean, default=True)

    dead_lettered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)

class TaskEventLog(Base):
    __tablename__ = "task_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("tasks.id", ondelete="CASCADE"), index=True)

    event_type: Mapped[TaskEvent] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    # Context (e.g. worker_id, error message, attempt number)
    meta: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

    task: Mapped["Task"] = relationship("Task", back_populates="events")
