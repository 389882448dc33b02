"""Persistence collaborator for schedules and execution records.

The scheduler and trigger system talk to storage only through
``ScheduleStore``. Two implementations ship with the engine:

- ``InMemoryScheduleStore``: single-process deployments and tests
- ``Database`` (core.database): SQLModel/async SQLAlchemy tables

Usage:
    store = Database(settings) if settings.uses_database else InMemoryScheduleStore()
"""

import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from workflow_scheduler.core.logging import get_logger
from workflow_scheduler.models.execution import ExecutionRecord, ExecutionStatus
from workflow_scheduler.models.schedule import Schedule, ScheduleState, utcnow

logger = get_logger(__name__)


class ScheduleStore(Protocol):
    """Protocol for schedule/execution storage (enables duck typing)."""

    async def startup(self) -> None:
        ...

    async def shutdown(self) -> None:
        ...

    async def save_workflow(self, workflow_id: str, name: str = "", active: bool = True) -> None:
        """Register a parent workflow and whether it is active."""
        ...

    async def is_workflow_active(self, workflow_id: str) -> bool:
        """Unregistered workflows count as active."""
        ...

    async def insert_schedule(self, schedule: Schedule) -> Schedule:
        ...

    async def update_schedule(self, schedule: Schedule) -> Schedule:
        ...

    async def delete_schedule(self, schedule_id: str) -> bool:
        ...

    async def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        ...

    async def list_schedules(self, workflow_id: Optional[str] = None,
                             enabled: Optional[bool] = None) -> List[Schedule]:
        ...

    async def fetch_due_schedules(self, before: datetime) -> List[Schedule]:
        """Enabled, timed schedules of active workflows with next_run_at <= before,
        earliest first."""
        ...

    async def record_run(self, schedule_id: str, last_run_at: datetime,
                         next_run_at: Optional[datetime], state: ScheduleState,
                         success: Optional[bool]) -> Optional[Schedule]:
        """Atomically set last/next run, bump execution_count and outcome counters.

        ``state`` is applied only when the schedule is still enabled, so a toggle
        made while the run was in flight is preserved.
        """
        ...

    async def insert_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        ...

    async def update_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        ...

    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        ...

    async def list_executions(self, workflow_id: Optional[str] = None,
                              schedule_id: Optional[str] = None,
                              status: Optional[ExecutionStatus] = None,
                              limit: Optional[int] = 100) -> List[ExecutionRecord]:
        """Most recent first."""
        ...

    async def fetch_due_retries(self, before: datetime) -> List[ExecutionRecord]:
        """Pending records whose scheduled_for <= before, earliest first."""
        ...


class InMemoryScheduleStore:
    """Dict-backed store. Returns copies so callers never mutate stored state."""

    def __init__(self):
        self._workflows: Dict[str, bool] = {}
        self._schedules: Dict[str, Schedule] = {}
        self._executions: Dict[str, ExecutionRecord] = {}
        self._lock = asyncio.Lock()

    async def startup(self) -> None:
        logger.info("Using in-memory schedule store")

    async def shutdown(self) -> None:
        self._schedules.clear()
        self._executions.clear()
        self._workflows.clear()

    async def save_workflow(self, workflow_id: str, name: str = "", active: bool = True) -> None:
        self._workflows[workflow_id] = active

    def _workflow_active(self, workflow_id: str) -> bool:
        # Workflows never registered are treated as active
        return self._workflows.get(workflow_id, True)

    async def is_workflow_active(self, workflow_id: str) -> bool:
        return self._workflow_active(workflow_id)

    # ============================================================================
    # Schedules
    # ============================================================================

    async def insert_schedule(self, schedule: Schedule) -> Schedule:
        async with self._lock:
            self._schedules[schedule.id] = schedule.copy()
        return schedule.copy()

    async def update_schedule(self, schedule: Schedule) -> Schedule:
        async with self._lock:
            schedule.updated_at = utcnow()
            self._schedules[schedule.id] = schedule.copy()
        return schedule.copy()

    async def delete_schedule(self, schedule_id: str) -> bool:
        async with self._lock:
            return self._schedules.pop(schedule_id, None) is not None

    async def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        schedule = self._schedules.get(schedule_id)
        return schedule.copy() if schedule else None

    async def list_schedules(self, workflow_id: Optional[str] = None,
                             enabled: Optional[bool] = None) -> List[Schedule]:
        schedules = [
            s.copy() for s in self._schedules.values()
            if (workflow_id is None or s.workflow_id == workflow_id)
            and (enabled is None or s.enabled == enabled)
        ]
        return sorted(schedules, key=lambda s: s.created_at)

    async def fetch_due_schedules(self, before: datetime) -> List[Schedule]:
        due = [
            s.copy() for s in self._schedules.values()
            if s.is_due(before)
            and self._workflow_active(s.workflow_id)
        ]
        return sorted(due, key=lambda s: s.next_run_at)

    async def record_run(self, schedule_id: str, last_run_at: datetime,
                         next_run_at: Optional[datetime], state: ScheduleState,
                         success: Optional[bool]) -> Optional[Schedule]:
        async with self._lock:
            schedule = self._schedules.get(schedule_id)
            if schedule is None:
                return None
            schedule.last_run_at = last_run_at
            schedule.next_run_at = next_run_at
            schedule.execution_count += 1
            if success is True:
                schedule.successful_runs += 1
            elif success is False:
                schedule.failed_runs += 1
            if schedule.state == ScheduleState.ENABLED:
                schedule.state = state
            schedule.updated_at = utcnow()
            return schedule.copy()

    # ============================================================================
    # Executions
    # ============================================================================

    async def insert_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        self._executions[record.id] = ExecutionRecord.from_dict(record.to_dict())
        return record

    async def update_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        self._executions[record.id] = ExecutionRecord.from_dict(record.to_dict())
        return record

    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        record = self._executions.get(execution_id)
        return ExecutionRecord.from_dict(record.to_dict()) if record else None

    async def list_executions(self, workflow_id: Optional[str] = None,
                              schedule_id: Optional[str] = None,
                              status: Optional[ExecutionStatus] = None,
                              limit: Optional[int] = 100) -> List[ExecutionRecord]:
        records = [
            r for r in self._executions.values()
            if (workflow_id is None or r.workflow_id == workflow_id)
            and (schedule_id is None or r.schedule_id == schedule_id)
            and (status is None or r.status == status)
        ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [ExecutionRecord.from_dict(r.to_dict()) for r in records[:limit]]

    async def fetch_due_retries(self, before: datetime) -> List[ExecutionRecord]:
        due = [
            r for r in self._executions.values()
            if r.status == ExecutionStatus.PENDING
            and r.scheduled_for is not None
            and r.scheduled_for <= before
        ]
        due.sort(key=lambda r: r.scheduled_for)
        return [ExecutionRecord.from_dict(r.to_dict()) for r in due]
