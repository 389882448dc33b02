"""Async database store with SQLModel and SQLAlchemy 2.0."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from sqlmodel import SQLModel, select
from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from workflow_scheduler.core.config import Settings
from workflow_scheduler.core.logging import get_logger
from workflow_scheduler.models.database import WorkflowRow, ScheduleRow, ExecutionRow
from workflow_scheduler.models.execution import ExecutionRecord, ExecutionStatus, TriggerType
from workflow_scheduler.models.schedule import (
    RetryPolicy,
    Schedule,
    ScheduleState,
    ScheduleType,
    as_utc,
    utcnow,
)

logger = get_logger(__name__)


def _schedule_from_row(row: ScheduleRow) -> Schedule:
    return Schedule(
        id=row.id,
        workflow_id=row.workflow_id,
        name=row.name,
        description=row.description,
        schedule_type=ScheduleType(row.schedule_type),
        cron_expression=row.cron_expression,
        interval_ms=row.interval_ms,
        delay_ms=row.delay_ms,
        execute_at=as_utc(row.execute_at),
        event_name=row.event_name,
        repeat=row.repeat,
        timezone=row.timezone,
        state=ScheduleState(row.state),
        max_executions=row.max_executions,
        execution_count=row.execution_count,
        successful_runs=row.successful_runs,
        failed_runs=row.failed_runs,
        blocking_conditions=list(row.blocking_conditions or []),
        variables=dict(row.variables or {}),
        retry_policy=RetryPolicy.from_dict(row.retry_policy),
        last_run_at=as_utc(row.last_run_at),
        next_run_at=as_utc(row.next_run_at),
        created_at=as_utc(row.created_at) or utcnow(),
        updated_at=as_utc(row.updated_at) or utcnow(),
    )


def _apply_schedule(row: ScheduleRow, schedule: Schedule) -> ScheduleRow:
    row.workflow_id = schedule.workflow_id
    row.name = schedule.name
    row.description = schedule.description
    row.schedule_type = schedule.schedule_type.value
    row.cron_expression = schedule.cron_expression
    row.interval_ms = schedule.interval_ms
    row.delay_ms = schedule.delay_ms
    row.execute_at = schedule.execute_at
    row.event_name = schedule.event_name
    row.repeat = schedule.repeat
    row.timezone = schedule.timezone
    row.enabled = schedule.enabled
    row.state = schedule.state.value
    row.max_executions = schedule.max_executions
    row.execution_count = schedule.execution_count
    row.successful_runs = schedule.successful_runs
    row.failed_runs = schedule.failed_runs
    row.blocking_conditions = schedule.blocking_conditions
    row.variables = schedule.variables
    row.retry_policy = schedule.retry_policy.to_dict()
    row.last_run_at = schedule.last_run_at
    row.next_run_at = schedule.next_run_at
    row.created_at = schedule.created_at
    row.updated_at = utcnow()
    return row


def _execution_from_row(row: ExecutionRow) -> ExecutionRecord:
    return ExecutionRecord(
        id=row.id,
        schedule_id=row.schedule_id,
        workflow_id=row.workflow_id,
        status=ExecutionStatus(row.status),
        trigger_type=TriggerType(row.trigger_type),
        trigger_data=dict(row.trigger_data or {}),
        attempts_made=row.attempts_made,
        scheduled_for=as_utc(row.scheduled_for),
        started_at=as_utc(row.started_at),
        completed_at=as_utc(row.completed_at),
        error=row.error,
        result=row.result,
        created_at=as_utc(row.created_at) or utcnow(),
    )


def _apply_execution(row: ExecutionRow, record: ExecutionRecord) -> ExecutionRow:
    row.schedule_id = record.schedule_id
    row.workflow_id = record.workflow_id
    row.status = record.status.value
    row.trigger_type = record.trigger_type.value
    row.trigger_data = record.trigger_data
    row.attempts_made = record.attempts_made
    row.scheduled_for = record.scheduled_for
    row.started_at = record.started_at
    row.completed_at = record.completed_at
    row.error = record.error[:2000] if record.error else None
    row.result = record.result
    row.created_at = record.created_at
    return row


class Database:
    """Async database service with SQLModel, implementing ScheduleStore."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            logging.getLogger("aiosqlite").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

            engine_kwargs = {"echo": self.settings.database_echo}
            if not self.settings.database_url.startswith("sqlite"):
                engine_kwargs["pool_size"] = self.settings.database_pool_size
                engine_kwargs["max_overflow"] = self.settings.database_max_overflow

            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    # ============================================================================
    # Workflows
    # ============================================================================

    async def save_workflow(self, workflow_id: str, name: str = "", active: bool = True) -> None:
        async with self.get_session() as session:
            row = await session.get(WorkflowRow, workflow_id)
            if row:
                row.name = name or row.name
                row.active = active
            else:
                session.add(WorkflowRow(id=workflow_id, name=name, active=active))
            await session.commit()

    async def is_workflow_active(self, workflow_id: str) -> bool:
        async with self.get_session() as session:
            row = await session.get(WorkflowRow, workflow_id)
            return row.active if row else True

    # ============================================================================
    # Schedules
    # ============================================================================

    async def insert_schedule(self, schedule: Schedule) -> Schedule:
        async with self.get_session() as session:
            row = _apply_schedule(ScheduleRow(id=schedule.id, schedule_type=schedule.schedule_type.value),
                                  schedule)
            session.add(row)
            await session.commit()
            return _schedule_from_row(row)

    async def update_schedule(self, schedule: Schedule) -> Schedule:
        async with self.get_session() as session:
            row = await session.get(ScheduleRow, schedule.id)
            if row is None:
                row = ScheduleRow(id=schedule.id, schedule_type=schedule.schedule_type.value)
                session.add(row)
            _apply_schedule(row, schedule)
            await session.commit()
            return _schedule_from_row(row)

    async def delete_schedule(self, schedule_id: str) -> bool:
        async with self.get_session() as session:
            row = await session.get(ScheduleRow, schedule_id)
            if row is None:
                return False
            await session.delete(row)
            await session.commit()
            return True

    async def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        async with self.get_session() as session:
            row = await session.get(ScheduleRow, schedule_id)
            return _schedule_from_row(row) if row else None

    async def list_schedules(self, workflow_id: Optional[str] = None,
                             enabled: Optional[bool] = None) -> List[Schedule]:
        async with self.get_session() as session:
            stmt = select(ScheduleRow)
            if workflow_id is not None:
                stmt = stmt.where(ScheduleRow.workflow_id == workflow_id)
            if enabled is not None:
                stmt = stmt.where(ScheduleRow.enabled == enabled)
            stmt = stmt.order_by(ScheduleRow.created_at)
            result = await session.execute(stmt)
            return [_schedule_from_row(row) for row in result.scalars().all()]

    async def fetch_due_schedules(self, before: datetime) -> List[Schedule]:
        async with self.get_session() as session:
            inactive = select(WorkflowRow.id).where(WorkflowRow.active == False)  # noqa: E712
            stmt = (
                select(ScheduleRow)
                .where(ScheduleRow.state == ScheduleState.ENABLED.value)
                .where(ScheduleRow.schedule_type != ScheduleType.EVENT.value)
                .where(ScheduleRow.next_run_at.is_not(None))
                .where(ScheduleRow.next_run_at <= before)
                .where(or_(ScheduleRow.max_executions.is_(None),
                           ScheduleRow.execution_count < ScheduleRow.max_executions))
                .where(ScheduleRow.workflow_id.not_in(inactive))
                .order_by(ScheduleRow.next_run_at)
            )
            result = await session.execute(stmt)
            return [_schedule_from_row(row) for row in result.scalars().all()]

    async def record_run(self, schedule_id: str, last_run_at: datetime,
                         next_run_at: Optional[datetime], state: ScheduleState,
                         success: Optional[bool]) -> Optional[Schedule]:
        async with self.get_session() as session:
            values = {
                "last_run_at": last_run_at,
                "next_run_at": next_run_at,
                "execution_count": ScheduleRow.execution_count + 1,
                "updated_at": utcnow(),
            }
            if success is True:
                values["successful_runs"] = ScheduleRow.successful_runs + 1
            elif success is False:
                values["failed_runs"] = ScheduleRow.failed_runs + 1

            await session.execute(
                update(ScheduleRow).where(ScheduleRow.id == schedule_id).values(**values)
            )
            # Lifecycle change applies only if nobody disabled the schedule meanwhile
            await session.execute(
                update(ScheduleRow)
                .where(ScheduleRow.id == schedule_id)
                .where(ScheduleRow.state == ScheduleState.ENABLED.value)
                .values(state=state.value, enabled=state == ScheduleState.ENABLED)
            )
            await session.commit()

            row = await session.get(ScheduleRow, schedule_id, populate_existing=True)
            return _schedule_from_row(row) if row else None

    # ============================================================================
    # Executions
    # ============================================================================

    async def insert_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        async with self.get_session() as session:
            row = _apply_execution(
                ExecutionRow(id=record.id, workflow_id=record.workflow_id,
                             trigger_type=record.trigger_type.value),
                record,
            )
            session.add(row)
            await session.commit()
            return record

    async def update_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        async with self.get_session() as session:
            row = await session.get(ExecutionRow, record.id)
            if row is None:
                row = ExecutionRow(id=record.id, workflow_id=record.workflow_id,
                                   trigger_type=record.trigger_type.value)
                session.add(row)
            _apply_execution(row, record)
            await session.commit()
            return record

    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        async with self.get_session() as session:
            row = await session.get(ExecutionRow, execution_id)
            return _execution_from_row(row) if row else None

    async def list_executions(self, workflow_id: Optional[str] = None,
                              schedule_id: Optional[str] = None,
                              status: Optional[ExecutionStatus] = None,
                              limit: Optional[int] = 100) -> List[ExecutionRecord]:
        async with self.get_session() as session:
            stmt = select(ExecutionRow)
            if workflow_id is not None:
                stmt = stmt.where(ExecutionRow.workflow_id == workflow_id)
            if schedule_id is not None:
                stmt = stmt.where(ExecutionRow.schedule_id == schedule_id)
            if status is not None:
                stmt = stmt.where(ExecutionRow.status == status.value)
            stmt = stmt.order_by(ExecutionRow.created_at.desc()).limit(limit)
            result = await session.execute(stmt)
            return [_execution_from_row(row) for row in result.scalars().all()]

    async def fetch_due_retries(self, before: datetime) -> List[ExecutionRecord]:
        async with self.get_session() as session:
            stmt = (
                select(ExecutionRow)
                .where(ExecutionRow.status == ExecutionStatus.PENDING.value)
                .where(ExecutionRow.scheduled_for.is_not(None))
                .where(ExecutionRow.scheduled_for <= before)
                .order_by(ExecutionRow.scheduled_for)
            )
            result = await session.execute(stmt)
            return [_execution_from_row(row) for row in result.scalars().all()]
