"""Trigger system: bridges triggers to the Execution Runner.

Creates and finalizes execution records, enforces the per-execution deadline,
propagates cancellation signals, and applies the schedule's retry policy when
a run fails. It never computes or persists a schedule's next run; that is
owned by the WorkflowScheduler.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from workflow_scheduler.core.exceptions import (
    AccessDenied,
    ExecutionNotFound,
    ExecutionTimeout,
    InvalidStatusTransition,
    SchedulerError,
)
from workflow_scheduler.core.logging import bind_execution, get_logger
from workflow_scheduler.core.store import ScheduleStore
from workflow_scheduler.models.execution import ExecutionRecord, ExecutionStatus, TriggerType
from workflow_scheduler.models.schedule import RetryPolicy, Schedule, format_datetime, utcnow
from workflow_scheduler.services.runner import ExecutionRunner, RunOutcome, RunRequest

logger = get_logger(__name__)


class TriggerSystem:
    """Runs executions for scheduled, manual, webhook and event triggers."""

    def __init__(self, store: ScheduleStore, runner: ExecutionRunner,
                 execution_timeout: float = 300.0,
                 cancel_grace: float = 10.0,
                 clock: Callable[[], datetime] = utcnow):
        """
        Args:
            store: Persistence for execution records
            runner: External Execution Runner
            execution_timeout: Deadline per execution in seconds
            cancel_grace: Seconds a signalled runner gets to stop on its own
            clock: Returns the current aware UTC time
        """
        self.store = store
        self.runner = runner
        self.execution_timeout = execution_timeout
        self.cancel_grace = cancel_grace
        self._clock = clock
        self._cancel_events: Dict[str, asyncio.Event] = {}

    @property
    def running_executions(self) -> List[str]:
        return list(self._cancel_events)

    # =========================================================================
    # TRIGGERS
    # =========================================================================

    async def handle_scheduled(self, schedule: Schedule) -> ExecutionRecord:
        """Run a due schedule's workflow and return the finalized record."""
        trigger_data = {
            "schedule_id": schedule.id,
            "schedule_name": schedule.name,
            "schedule_type": schedule.schedule_type.value,
            "cron_expression": schedule.cron_expression,
            "timezone": schedule.timezone,
            "scheduled_for": format_datetime(schedule.next_run_at),
            "variables": schedule.variables,
        }
        record = ExecutionRecord(
            workflow_id=schedule.workflow_id,
            schedule_id=schedule.id,
            trigger_type=TriggerType.SCHEDULED,
            trigger_data=trigger_data,
        )
        return await self._execute(record, schedule.retry_policy)

    async def handle_event(self, schedule: Schedule, payload: Optional[Dict[str, Any]] = None) -> ExecutionRecord:
        """Run an event schedule's workflow for an externally fired event."""
        record = ExecutionRecord(
            workflow_id=schedule.workflow_id,
            schedule_id=schedule.id,
            trigger_type=TriggerType.EVENT,
            trigger_data={
                "schedule_id": schedule.id,
                "event_name": schedule.event_name,
                "payload": payload or {},
                "variables": schedule.variables,
            },
        )
        return await self._execute(record, schedule.retry_policy)

    async def handle_manual(self, workflow_id: str, payload: Optional[Dict[str, Any]] = None) -> ExecutionRecord:
        await self._require_active(workflow_id)
        record = ExecutionRecord(
            workflow_id=workflow_id,
            trigger_type=TriggerType.MANUAL,
            trigger_data={"payload": payload or {}},
        )
        return await self._execute(record)

    async def handle_webhook(self, workflow_id: str, payload: Optional[Dict[str, Any]] = None,
                             headers: Optional[Dict[str, str]] = None) -> ExecutionRecord:
        await self._require_active(workflow_id)
        record = ExecutionRecord(
            workflow_id=workflow_id,
            trigger_type=TriggerType.WEBHOOK,
            trigger_data={"payload": payload or {}, "headers": headers or {}},
        )
        return await self._execute(record)

    async def _require_active(self, workflow_id: str) -> None:
        """Externally triggered runs are refused for inactive workflows."""
        if not await self.store.is_workflow_active(workflow_id):
            raise AccessDenied(workflow_id, "workflow is not active")

    async def run_retry(self, record: ExecutionRecord, retry_policy: RetryPolicy) -> ExecutionRecord:
        """Run a pending retry record that has become due."""
        if record.status != ExecutionStatus.PENDING:
            raise InvalidStatusTransition(record.id, record.status.value, ExecutionStatus.RUNNING.value)
        logger.info("Running retry",
                    execution_id=record.id,
                    schedule_id=record.schedule_id,
                    attempt=record.attempts_made)
        return await self._execute(record, retry_policy, insert=False)

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def _execute(self, record: ExecutionRecord, retry_policy: Optional[RetryPolicy] = None,
                       insert: bool = True) -> ExecutionRecord:
        record.mark_running(self._clock())
        if insert:
            await self.store.insert_execution(record)
        else:
            await self.store.update_execution(record)

        log = bind_execution(logger, record.id, record.workflow_id,
                             record.trigger_type.value, record.schedule_id)
        log.info("Execution started", attempt=record.attempts_made)

        cancel_event = asyncio.Event()
        self._cancel_events[record.id] = cancel_event
        request = RunRequest(
            execution_id=record.id,
            workflow_id=record.workflow_id,
            trigger_type=record.trigger_type.value,
            trigger_data=record.trigger_data,
            schedule_id=record.schedule_id,
            timeout_seconds=self.execution_timeout,
        )

        try:
            outcome = await self._invoke_runner(request, cancel_event)
        except asyncio.CancelledError:
            record.mark_cancelled("Scheduler stopped", self._clock())
            await self.store.update_execution(record)
            raise
        except SchedulerError as e:
            outcome = RunOutcome(success=False, error=e.message)
        except Exception as e:
            log.error("Execution runner raised", error=str(e), exc_info=True)
            outcome = RunOutcome(success=False, error=f"{type(e).__name__}: {e}")
        finally:
            self._cancel_events.pop(record.id, None)

        now = self._clock()
        if outcome is None:
            record.mark_cancelled("Cancelled", now)
            log.info("Execution cancelled")
        elif outcome.success:
            record.mark_completed(now, outcome.result)
            log.info("Execution completed", duration_ms=record.duration_ms)
        else:
            record.mark_failed(outcome.error or "Execution failed", now)
            log.warning("Execution failed", error=record.error)

        await self.store.update_execution(record)

        if record.status == ExecutionStatus.FAILED and retry_policy and record.schedule_id:
            await self._schedule_retry(record, retry_policy, now)

        return record

    async def _invoke_runner(self, request: RunRequest, cancel_event: asyncio.Event) -> Optional[RunOutcome]:
        """Await the runner under the deadline. Returns None when cancelled."""
        run_task = asyncio.ensure_future(self.runner.run(request, cancel_event))
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {run_task, cancel_task},
                timeout=self.execution_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if run_task in done:
                return run_task.result()

            # Cancelled or past the deadline: signal the runner, then give it
            # cancel_grace seconds to pass the signal on before abandoning it
            cancel_event.set()
            await asyncio.wait({run_task}, timeout=self.cancel_grace)
            if run_task.done() and not run_task.cancelled() and run_task.exception():
                logger.warning("Runner failed while stopping",
                               execution_id=request.execution_id,
                               error=str(run_task.exception()))
            if cancel_task in done:
                return None
            raise ExecutionTimeout(request.execution_id, self.execution_timeout)
        finally:
            for task in (run_task, cancel_task):
                if not task.done():
                    task.cancel()

    async def _schedule_retry(self, record: ExecutionRecord, retry_policy: RetryPolicy,
                              now: datetime) -> Optional[ExecutionRecord]:
        if not retry_policy.should_retry(record.attempts_made):
            logger.info("Retries exhausted",
                        execution_id=record.id,
                        schedule_id=record.schedule_id,
                        attempts_made=record.attempts_made)
            return None

        delay_ms = retry_policy.calculate_delay_ms(record.attempts_made)
        retry = ExecutionRecord(
            workflow_id=record.workflow_id,
            schedule_id=record.schedule_id,
            trigger_type=record.trigger_type,
            trigger_data={**record.trigger_data, "retry_of": record.id},
            attempts_made=record.attempts_made + 1,
            scheduled_for=now + timedelta(milliseconds=delay_ms),
        )
        await self.store.insert_execution(retry)

        logger.info("Retry scheduled",
                    execution_id=retry.id,
                    retry_of=record.id,
                    schedule_id=record.schedule_id,
                    attempt=retry.attempts_made,
                    delay_ms=delay_ms)
        return retry

    # =========================================================================
    # QUERIES AND CONTROL
    # =========================================================================

    async def cancel_execution(self, execution_id: str) -> ExecutionRecord:
        """Send a cancel signal to a running execution, or cancel a pending retry.

        Raises:
            ExecutionNotFound: unknown execution id
            InvalidStatusTransition: the execution already finished
        """
        record = await self.store.get_execution(execution_id)
        if record is None:
            raise ExecutionNotFound(execution_id)

        cancel_event = self._cancel_events.get(execution_id)
        if cancel_event is not None:
            cancel_event.set()
            logger.info("Cancel signal sent", execution_id=execution_id)
            return record

        record.mark_cancelled("Cancelled", self._clock())
        await self.store.update_execution(record)
        logger.info("Pending execution cancelled", execution_id=execution_id)
        return record

    async def get_execution(self, execution_id: str) -> ExecutionRecord:
        record = await self.store.get_execution(execution_id)
        if record is None:
            raise ExecutionNotFound(execution_id)
        return record

    async def list_executions(self, workflow_id: Optional[str] = None,
                              schedule_id: Optional[str] = None,
                              status: Optional[ExecutionStatus] = None,
                              limit: int = 100) -> List[ExecutionRecord]:
        return await self.store.list_executions(workflow_id, schedule_id, status, limit)

    async def due_retries(self, now: Optional[datetime] = None) -> List[ExecutionRecord]:
        return await self.store.fetch_due_retries(now or self._clock())

    async def execution_stats(self) -> Dict[str, Any]:
        """Aggregate counts, success rate and average duration over all records."""
        records = await self.store.list_executions(limit=None)
        counts = {status.value: 0 for status in ExecutionStatus}
        durations = []
        for record in records:
            counts[record.status.value] += 1
            if record.duration_ms is not None:
                durations.append(record.duration_ms)

        finished = counts["completed"] + counts["failed"]
        return {
            "total_executions": len(records),
            "successful_executions": counts["completed"],
            "failed_executions": counts["failed"],
            "cancelled_executions": counts["cancelled"],
            "running_executions": counts["running"],
            "pending_executions": counts["pending"],
            "success_rate": round(counts["completed"] / finished * 100, 2) if finished else 0.0,
            "average_execution_time_ms": round(sum(durations) / len(durations), 2) if durations else 0.0,
        }
