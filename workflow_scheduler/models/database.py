"""SQLModel database models and tables."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import func


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowRow(SQLModel, table=True):
    """Parent workflows; inactive workflows never have schedules dispatched."""

    __tablename__ = "workflows"

    id: str = Field(primary_key=True, max_length=255)
    name: str = Field(default="", max_length=255)
    active: bool = Field(default=True, index=True)
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )


class ScheduleRow(SQLModel, table=True):
    """Schedule definitions with their run bookkeeping."""

    __tablename__ = "workflow_schedules"

    id: str = Field(primary_key=True, max_length=255)
    workflow_id: str = Field(index=True, max_length=255)
    name: str = Field(default="", max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    schedule_type: str = Field(max_length=20)
    cron_expression: Optional[str] = Field(default=None, max_length=100)
    interval_ms: Optional[int] = Field(default=None)
    delay_ms: Optional[int] = Field(default=None)
    execute_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    event_name: Optional[str] = Field(default=None, max_length=255, index=True)
    repeat: bool = Field(default=False)
    timezone: str = Field(default="UTC", max_length=50)
    enabled: bool = Field(default=True, index=True)
    state: str = Field(default="enabled", max_length=20)
    max_executions: Optional[int] = Field(default=None)
    execution_count: int = Field(default=0)
    successful_runs: int = Field(default=0)
    failed_runs: int = Field(default=0)
    blocking_conditions: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    variables: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    retry_policy: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    last_run_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    next_run_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), index=True)
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class ExecutionRow(SQLModel, table=True):
    """Workflow execution history."""

    __tablename__ = "workflow_executions"

    id: str = Field(primary_key=True, max_length=255)
    schedule_id: Optional[str] = Field(default=None, index=True, max_length=255)
    workflow_id: str = Field(index=True, max_length=255)
    status: str = Field(default="pending", index=True, max_length=20)
    trigger_type: str = Field(max_length=20)
    trigger_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    attempts_made: int = Field(default=0)
    scheduled_for: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    error: Optional[str] = Field(default=None, max_length=2000)
    result: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
