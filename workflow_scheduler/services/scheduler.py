"""Workflow scheduler service.

Owns schedule definitions and runs a cooperative dispatch loop:

    every poll_interval seconds:
        due = enabled schedules with next_run_at <= now, earliest first
        for each due schedule whose blocking conditions pass:
            skip if a dispatch for it is still in flight
            launch an independent task -> TriggerSystem.handle_scheduled()
            on completion (success, failure or timeout):
                persist last_run_at / next_run_at / execution_count
                release the in-flight slot
        run pending retries that have become due

The in-flight map is the per-schedule lock: a schedule id is present from the
moment its task is created until the task's cleanup path removes it, so at
most one execution per schedule is ever in flight.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from workflow_scheduler.constants import ONE_DAY_SECONDS, ONE_HOUR_SECONDS
from workflow_scheduler.core.exceptions import (
    InvalidScheduleExpression,
    InvalidStatusTransition,
    ScheduleNotFound,
)
from workflow_scheduler.core.logging import get_logger
from workflow_scheduler.core.store import ScheduleStore
from workflow_scheduler.models.conditions import ExecutionContext, parse_expression
from workflow_scheduler.models.execution import ExecutionRecord, ExecutionStatus
from workflow_scheduler.models.schedule import (
    RetryPolicy,
    Schedule,
    ScheduleState,
    ScheduleType,
    format_datetime,
    parse_datetime,
    utcnow,
)
from workflow_scheduler.services.conditions import ConditionalEngine
from workflow_scheduler.services.cron_calculator import compute_next_run, resolve_timezone
from workflow_scheduler.services.triggers import TriggerSystem

logger = get_logger(__name__)

# Fields an update may change; timing fields force a next-run recompute
UPDATABLE_FIELDS = frozenset([
    "name", "description", "schedule_type", "cron_expression", "interval_ms", "delay_ms",
    "execute_at", "event_name", "repeat", "timezone", "max_executions",
    "blocking_conditions", "variables", "retry_policy",
])
TIMING_FIELDS = frozenset([
    "schedule_type", "cron_expression", "interval_ms", "delay_ms", "execute_at",
    "event_name", "repeat", "timezone",
])


def _timing(schedule: Schedule) -> tuple:
    return tuple(getattr(schedule, name) for name in sorted(TIMING_FIELDS))


class WorkflowScheduler:
    """Long-lived scheduling service with an explicit start/stop lifecycle."""

    def __init__(self, store: ScheduleStore, trigger_system: TriggerSystem,
                 conditional_engine: ConditionalEngine,
                 poll_interval: float = 5.0,
                 max_concurrent_dispatches: int = 50,
                 default_timezone: str = "UTC",
                 upcoming_limit: int = 50,
                 clock: Callable[[], datetime] = utcnow):
        """Initialize the scheduler.

        Args:
            store: Persistence collaborator for schedules
            trigger_system: Runs the executions
            conditional_engine: Evaluates blocking conditions
            poll_interval: Seconds between ticks
            max_concurrent_dispatches: Due schedules beyond this many in-flight
                dispatches are deferred to a later tick
            default_timezone: Used when a schedule has no timezone
            upcoming_limit: Default number of upcoming executions in stats
            clock: Returns the current aware UTC time
        """
        self.store = store
        self.trigger_system = trigger_system
        self.conditional_engine = conditional_engine
        self.poll_interval = poll_interval
        self.max_concurrent_dispatches = max_concurrent_dispatches
        self.default_timezone = default_timezone
        self.upcoming_limit = upcoming_limit
        self._clock = clock

        self._in_flight: Dict[str, asyncio.Task] = {}
        self._tick_lock = asyncio.Lock()
        self._mutation_lock = asyncio.Lock()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._started_at: Optional[datetime] = None

    # =========================================================================
    # STATUS
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def started_at(self) -> Optional[datetime]:
        return self._started_at

    @property
    def uptime_seconds(self) -> float:
        if not self._running or self._started_at is None:
            return 0.0
        return max((self._clock() - self._started_at).total_seconds(), 0.0)

    @property
    def in_flight(self) -> List[str]:
        """Ids of schedules with a dispatch currently in flight."""
        return list(self._in_flight)

    def status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "started_at": format_datetime(self.started_at),
            "uptime_seconds": round(self.uptime_seconds, 3),
            "poll_interval": self.poll_interval,
            "in_flight": self.in_flight,
            "running_executions": self.trigger_system.running_executions,
        }

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """Start the dispatch loop as a background task."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        self._running = True
        self._started_at = self._clock()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Scheduler started", poll_interval=self.poll_interval)

    async def stop(self) -> None:
        """Stop the loop and cancel in-flight dispatches."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._started_at = None
        logger.info("Scheduler stopped", cancelled_dispatches=len(tasks))

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error("Scheduler tick failed", error=str(e), exc_info=True)

            await asyncio.sleep(self.poll_interval)

    # =========================================================================
    # DISPATCH
    # =========================================================================

    async def tick(self, now: Optional[datetime] = None) -> Dict[str, List[str]]:
        """Run one dispatch pass. Ticks never overlap each other.

        Returns:
            Schedule ids grouped by what happened to them this tick
        """
        async with self._tick_lock:
            now = now or self._clock()
            summary: Dict[str, List[str]] = {
                "dispatched": [], "in_flight": [], "blocked": [], "deferred": [],
                "errors": [], "retries": [],
            }

            due = await self.store.fetch_due_schedules(now)
            for schedule in due:
                if schedule.id in self._in_flight:
                    logger.debug("Schedule still in flight, skipping", schedule_id=schedule.id)
                    summary["in_flight"].append(schedule.id)
                    continue

                if len(self._in_flight) >= self.max_concurrent_dispatches:
                    summary["deferred"].append(schedule.id)
                    continue

                try:
                    if not self._conditions_pass(schedule, now):
                        summary["blocked"].append(schedule.id)
                        continue
                    self._launch(schedule, self._dispatch_scheduled(schedule))
                    summary["dispatched"].append(schedule.id)
                except Exception as e:
                    logger.error("Failed to dispatch schedule",
                                 schedule_id=schedule.id, error=str(e))
                    summary["errors"].append(schedule.id)

            summary["retries"] = await self._dispatch_retries(now)

            if summary["dispatched"] or summary["retries"]:
                logger.info("Tick dispatched work",
                            dispatched=len(summary["dispatched"]),
                            retries=len(summary["retries"]),
                            in_flight=len(self._in_flight))
            if summary["deferred"]:
                logger.warning("Dispatch capacity reached, deferring schedules",
                               deferred=len(summary["deferred"]),
                               max_concurrent=self.max_concurrent_dispatches)
            return summary

    def _launch(self, schedule: Schedule, work) -> asyncio.Task:
        """Claim the schedule's in-flight slot and run ``work`` as a task."""
        task = asyncio.create_task(self._guarded(schedule.id, work))
        self._in_flight[schedule.id] = task
        return task

    async def _guarded(self, schedule_id: str, work):
        try:
            return await work
        finally:
            self._in_flight.pop(schedule_id, None)

    async def _dispatch_scheduled(self, schedule: Schedule,
                                  payload: Optional[Dict[str, Any]] = None) -> Optional[ExecutionRecord]:
        started_at = self._clock()
        success: Optional[bool] = None
        record = None
        try:
            if schedule.schedule_type == ScheduleType.EVENT:
                record = await self.trigger_system.handle_event(schedule, payload)
            else:
                record = await self.trigger_system.handle_scheduled(schedule)
            if record.status == ExecutionStatus.COMPLETED:
                success = True
            elif record.status == ExecutionStatus.FAILED:
                success = False
            return record
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Dispatch failed", schedule_id=schedule.id, error=str(e), exc_info=True)
            success = False
            return record
        finally:
            try:
                await self._record_run(schedule, started_at, success)
            except Exception as e:
                logger.error("Failed to persist run bookkeeping",
                             schedule_id=schedule.id, error=str(e))

    async def _record_run(self, schedule: Schedule, started_at: datetime,
                          success: Optional[bool]) -> Optional[Schedule]:
        async with self._mutation_lock:
            # Updates may have landed while the dispatch was in flight
            current = await self.store.get_schedule(schedule.id) or schedule
            state, next_run = self._after_run(schedule, current, self._clock())
            updated = await self.store.record_run(schedule.id, started_at, next_run, state, success)

        logger.info("Schedule run recorded",
                    schedule_id=schedule.id,
                    state=updated.state.value if updated else None,
                    next_run_at=format_datetime(next_run),
                    success=success)
        return updated

    def _after_run(self, dispatched: Schedule, current: Schedule,
                   completed_at: datetime):
        """Lifecycle state and next run once a dispatch of ``dispatched`` ends.

        ``current`` is the stored definition. If its timing was changed while
        the dispatch was in flight, the next run computed by that update stands.
        """
        state = ScheduleState.ENABLED
        next_run: Optional[datetime] = None

        if _timing(current) != _timing(dispatched):
            next_run = current.next_run_at
        elif current.schedule_type == ScheduleType.ONCE:
            state = ScheduleState.COMPLETED
        elif current.schedule_type == ScheduleType.DELAY and not current.repeat:
            state = ScheduleState.EXHAUSTED
        elif current.schedule_type != ScheduleType.EVENT:
            try:
                next_run = self._next_run(current, completed_at)
            except InvalidScheduleExpression as e:
                logger.error("Cannot compute next run, disabling schedule",
                             schedule_id=current.id, error=e.message)
                state = ScheduleState.DISABLED

        if current.max_executions is not None and current.execution_count + 1 >= current.max_executions:
            if state == ScheduleState.ENABLED:
                state = ScheduleState.EXHAUSTED
            next_run = None
        return state, next_run

    async def _dispatch_retries(self, now: datetime) -> List[str]:
        dispatched = []
        for record in await self.trigger_system.due_retries(now):
            if record.schedule_id in self._in_flight:
                continue
            if len(self._in_flight) >= self.max_concurrent_dispatches:
                break

            schedule = await self.store.get_schedule(record.schedule_id)
            if schedule is None or schedule.state == ScheduleState.DISABLED:
                record.mark_cancelled(
                    "Schedule removed" if schedule is None else "Schedule disabled", now
                )
                await self.store.update_execution(record)
                logger.info("Retry cancelled", execution_id=record.id, reason=record.error)
                continue

            self._launch(schedule, self.trigger_system.run_retry(record, schedule.retry_policy))
            dispatched.append(record.id)
        return dispatched

    def _conditions_pass(self, schedule: Schedule, now: datetime) -> bool:
        """All blocking conditions hold. An evaluation error counts as blocked."""
        if not schedule.blocking_conditions:
            return True

        local_now = now.astimezone(resolve_timezone(schedule.timezone or self.default_timezone))
        context = ExecutionContext(
            variables={
                **schedule.variables,
                "now": local_now.isoformat(),
                "hour": local_now.hour,
                "weekday": local_now.weekday(),
                "execution_count": schedule.execution_count,
            },
            workflow_id=schedule.workflow_id,
        )
        for condition in schedule.blocking_conditions:
            try:
                if not self.conditional_engine.evaluate_expression(condition, context):
                    logger.debug("Blocking condition not met", schedule_id=schedule.id)
                    return False
            except Exception as e:
                logger.warning("Blocking condition failed to evaluate",
                               schedule_id=schedule.id, error=str(e))
                return False
        return True

    def _next_run(self, schedule: Schedule, from_time: datetime) -> Optional[datetime]:
        return compute_next_run(
            schedule.schedule_type,
            schedule.params,
            schedule.timezone or self.default_timezone,
            from_time,
        )

    # =========================================================================
    # MANAGEMENT
    # =========================================================================

    def _validate(self, schedule: Schedule) -> None:
        resolve_timezone(schedule.timezone)
        for condition in schedule.blocking_conditions:
            try:
                parse_expression(condition)
            except ValueError as e:
                raise InvalidScheduleExpression(f"Invalid blocking condition: {e}",
                                                condition=condition)
        if schedule.max_executions is not None and schedule.max_executions < 1:
            raise InvalidScheduleExpression("max_executions must be at least 1",
                                            max_executions=schedule.max_executions)

    def _overlay(self, schedule: Schedule) -> Schedule:
        if schedule.id in self._in_flight and schedule.state == ScheduleState.ENABLED:
            schedule.state = ScheduleState.DISPATCHING
        return schedule

    async def create_schedule(self, schedule: Schedule) -> Schedule:
        """Validate and persist a new schedule, computing its first run.

        Raises:
            InvalidScheduleExpression: bad timing parameters, timezone or conditions
        """
        schedule.timezone = schedule.timezone or self.default_timezone
        self._validate(schedule)
        schedule.next_run_at = self._next_run(schedule, self._clock())
        schedule.execution_count = 0
        schedule.last_run_at = None

        async with self._mutation_lock:
            created = await self.store.insert_schedule(schedule)

        logger.info("Schedule created",
                    schedule_id=created.id,
                    workflow_id=created.workflow_id,
                    schedule_type=created.schedule_type.value,
                    next_run_at=format_datetime(created.next_run_at))
        return created

    async def update_schedule(self, schedule_id: str, changes: Dict[str, Any]) -> Schedule:
        """Apply field changes; timing changes recompute next_run_at from now."""
        async with self._mutation_lock:
            schedule = await self.store.get_schedule(schedule_id)
            if schedule is None:
                raise ScheduleNotFound(schedule_id)

            applied = {k: v for k, v in changes.items() if k in UPDATABLE_FIELDS}
            if "schedule_type" in applied:
                applied["schedule_type"] = ScheduleType(applied["schedule_type"])
            if "retry_policy" in applied and not isinstance(applied["retry_policy"], RetryPolicy):
                applied["retry_policy"] = RetryPolicy.from_dict(applied["retry_policy"])
            if "execute_at" in applied and isinstance(applied["execute_at"], str):
                applied["execute_at"] = parse_datetime(applied["execute_at"])

            updated = schedule.copy(**applied)
            self._validate(updated)
            if TIMING_FIELDS & applied.keys() and updated.state == ScheduleState.ENABLED:
                updated.next_run_at = self._next_run(updated, self._clock())
            if updated.state == ScheduleState.ENABLED and updated.is_exhausted:
                updated.state = ScheduleState.EXHAUSTED
                updated.next_run_at = None

            saved = await self.store.update_schedule(updated)

        if "enabled" in changes and changes["enabled"] is not None:
            saved = await self.toggle_schedule(schedule_id, bool(changes["enabled"]))

        logger.info("Schedule updated", schedule_id=schedule_id, fields=sorted(applied))
        return self._overlay(saved)

    async def toggle_schedule(self, schedule_id: str, enabled: Optional[bool] = None) -> Schedule:
        """Enable or disable a schedule; ``enabled=None`` flips the current flag.

        Raises:
            InvalidStatusTransition: re-enabling an exhausted or completed schedule
        """
        async with self._mutation_lock:
            schedule = await self.store.get_schedule(schedule_id)
            if schedule is None:
                raise ScheduleNotFound(schedule_id)

            target = (not schedule.enabled) if enabled is None else enabled
            if target == schedule.enabled:
                return self._overlay(schedule)

            if target:
                if schedule.is_exhausted:
                    raise InvalidStatusTransition(schedule_id, schedule.state.value,
                                                  ScheduleState.ENABLED.value)
                schedule.state = ScheduleState.ENABLED
                schedule.next_run_at = self._next_run(schedule, self._clock())
            else:
                schedule.state = ScheduleState.DISABLED

            saved = await self.store.update_schedule(schedule)

        logger.info("Schedule toggled", schedule_id=schedule_id, enabled=saved.enabled)
        return self._overlay(saved)

    async def remove_schedule(self, schedule_id: str) -> bool:
        async with self._mutation_lock:
            removed = await self.store.delete_schedule(schedule_id)
        if not removed:
            raise ScheduleNotFound(schedule_id)
        logger.info("Schedule removed", schedule_id=schedule_id,
                    in_flight=schedule_id in self._in_flight)
        return True

    async def get_schedule(self, schedule_id: str) -> Schedule:
        schedule = await self.store.get_schedule(schedule_id)
        if schedule is None:
            raise ScheduleNotFound(schedule_id)
        return self._overlay(schedule)

    async def list_schedules(self, workflow_id: Optional[str] = None,
                             enabled: Optional[bool] = None) -> List[Schedule]:
        schedules = await self.store.list_schedules(workflow_id=workflow_id, enabled=enabled)
        return [self._overlay(s) for s in schedules]

    async def set_workflow_active(self, workflow_id: str, active: bool, name: str = "") -> None:
        """Mark a parent workflow (in)active; inactive workflows are never dispatched."""
        await self.store.save_workflow(workflow_id, name=name, active=active)
        logger.info("Workflow activity changed", workflow_id=workflow_id, active=active)

    async def force_execute(self, schedule_id: str, wait: bool = False) -> Dict[str, Any]:
        """Dispatch a schedule now, bypassing next_run_at but not the in-flight lock.

        Args:
            schedule_id: Schedule to run
            wait: Await the execution and include its record in the result
        """
        schedule = await self.get_schedule(schedule_id)
        if schedule_id in self._in_flight:
            logger.info("Force execute skipped, dispatch in flight", schedule_id=schedule_id)
            return {"schedule_id": schedule_id, "dispatched": False, "reason": "in_flight"}

        task = self._launch(schedule, self._dispatch_scheduled(schedule))
        logger.info("Schedule force-executed", schedule_id=schedule_id)

        result: Dict[str, Any] = {"schedule_id": schedule_id, "dispatched": True}
        if wait:
            record = await task
            result["execution"] = record.to_dict() if record else None
        return result

    async def fire_event(self, event_name: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Dispatch every enabled event schedule listening for ``event_name``."""
        now = self._clock()
        dispatched, skipped = [], []

        for schedule in await self.store.list_schedules(enabled=True):
            if schedule.schedule_type != ScheduleType.EVENT or schedule.event_name != event_name:
                continue
            if schedule.state != ScheduleState.ENABLED or schedule.id in self._in_flight:
                skipped.append(schedule.id)
                continue
            if not self._conditions_pass(schedule, now):
                skipped.append(schedule.id)
                continue
            self._launch(schedule, self._dispatch_scheduled(schedule, payload))
            dispatched.append(schedule.id)

        logger.info("Event fired", event_name=event_name,
                    dispatched=len(dispatched), skipped=len(skipped))
        return {"event_name": event_name, "dispatched": dispatched, "skipped": skipped}

    # =========================================================================
    # STATS
    # =========================================================================

    async def get_stats(self, upcoming_limit: Optional[int] = None) -> Dict[str, Any]:
        """Execution aggregates plus the next upcoming executions."""
        limit = upcoming_limit or self.upcoming_limit
        now = self._clock()
        schedules = await self.store.list_schedules()

        timed = [
            s for s in schedules
            if s.state == ScheduleState.ENABLED
            and s.schedule_type != ScheduleType.EVENT
            and s.next_run_at is not None
        ]
        timed.sort(key=lambda s: s.next_run_at)
        hour_end = now + timedelta(seconds=ONE_HOUR_SECONDS)
        day_end = now + timedelta(seconds=ONE_DAY_SECONDS)

        states = {state.value: 0 for state in ScheduleState}
        for schedule in schedules:
            states[self._overlay(schedule).state.value] += 1

        stats = await self.trigger_system.execution_stats()
        stats.update({
            "total_schedules": len(schedules),
            "active_schedules": states["enabled"] + states["dispatching"],
            "schedules_by_state": states,
            "executions_due_next_hour": sum(1 for s in timed if s.next_run_at <= hour_end),
            "executions_due_next_24h": sum(1 for s in timed if s.next_run_at <= day_end),
            "upcoming_executions": [
                {
                    "schedule_id": s.id,
                    "workflow_id": s.workflow_id,
                    "name": s.name,
                    "schedule_type": s.schedule_type.value,
                    "next_run_at": format_datetime(s.next_run_at),
                }
                for s in timed[:limit]
            ],
            "scheduler": self.status(),
        })
        return stats
