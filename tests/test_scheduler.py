"""Dispatch loop, schedule lifecycle and management operations."""

import asyncio
from datetime import timedelta

import pytest
from hypothesis import given, settings, strategies as st

from conftest import T0, FakeClock, ScriptedRunner, failure, wait_idle
from workflow_scheduler.core.exceptions import (
    InvalidScheduleExpression,
    InvalidStatusTransition,
    ScheduleNotFound,
)
from workflow_scheduler.core.store import InMemoryScheduleStore
from workflow_scheduler.models.execution import ExecutionStatus
from workflow_scheduler.models.schedule import RetryPolicy, Schedule, ScheduleState, ScheduleType
from workflow_scheduler.services.conditions import ConditionalEngine
from workflow_scheduler.services.scheduler import WorkflowScheduler
from workflow_scheduler.services.triggers import TriggerSystem


def interval(ms: int = 60_000, **overrides) -> Schedule:
    fields = dict(workflow_id="wf-1", schedule_type=ScheduleType.INTERVAL, interval_ms=ms)
    fields.update(overrides)
    return Schedule(**fields)


def build(store, clock, runner, **kwargs) -> WorkflowScheduler:
    triggers = TriggerSystem(store, runner, clock=clock)
    return WorkflowScheduler(store, triggers, ConditionalEngine(), clock=clock, **kwargs)


class TestCreate:

    async def test_interval_first_run(self, scheduler):
        schedule = await scheduler.create_schedule(interval())
        assert schedule.next_run_at == T0 + timedelta(minutes=1)
        assert schedule.execution_count == 0
        assert schedule.state == ScheduleState.ENABLED

    async def test_cron_first_run_in_timezone(self, scheduler):
        schedule = await scheduler.create_schedule(Schedule(
            workflow_id="wf-1", schedule_type=ScheduleType.CRON,
            cron_expression="0 9 * * 1-5", timezone="America/Chicago",
        ))
        # Friday 12:00 UTC is 06:00 CST
        assert schedule.next_run_at == T0 + timedelta(hours=3)

    async def test_invalid_cron_is_not_stored(self, scheduler):
        with pytest.raises(InvalidScheduleExpression):
            await scheduler.create_schedule(Schedule(
                workflow_id="wf-1", schedule_type=ScheduleType.CRON, cron_expression="not a cron",
            ))
        assert await scheduler.list_schedules() == []

    async def test_invalid_blocking_condition(self, scheduler):
        with pytest.raises(InvalidScheduleExpression):
            await scheduler.create_schedule(interval(blocking_conditions=[{"operator": "xor"}]))

    async def test_unknown_timezone(self, scheduler):
        with pytest.raises(InvalidScheduleExpression):
            await scheduler.create_schedule(interval(timezone="Nowhere/City"))

    async def test_event_schedule_has_no_next_run(self, scheduler):
        schedule = await scheduler.create_schedule(Schedule(
            workflow_id="wf-1", schedule_type=ScheduleType.EVENT, event_name="order.paid",
        ))
        assert schedule.next_run_at is None


class TestTick:

    async def test_nothing_due(self, scheduler):
        await scheduler.create_schedule(interval())
        summary = await scheduler.tick()
        assert summary["dispatched"] == []

    async def test_due_schedule_runs_and_reschedules(self, scheduler, clock, store):
        schedule = await scheduler.create_schedule(interval())
        clock.advance(minutes=1)

        summary = await scheduler.tick()
        assert summary["dispatched"] == [schedule.id]
        await wait_idle(scheduler)

        updated = await scheduler.get_schedule(schedule.id)
        assert updated.execution_count == 1
        assert updated.successful_runs == 1
        assert updated.last_run_at == T0 + timedelta(minutes=1)
        assert updated.next_run_at == T0 + timedelta(minutes=2)
        assert updated.state == ScheduleState.ENABLED

        records = await store.list_executions(schedule_id=schedule.id)
        assert [r.status for r in records] == [ExecutionStatus.COMPLETED]

    async def test_next_run_counts_from_completion(self, store, clock):
        class AdvancingRunner(ScriptedRunner):
            async def run(self, request, cancel_event):
                clock.advance(seconds=45)
                return await super().run(request, cancel_event)

        scheduler = build(store, clock, AdvancingRunner())
        schedule = await scheduler.create_schedule(interval())
        clock.advance(minutes=1)
        await scheduler.tick()
        await wait_idle(scheduler)

        updated = await scheduler.get_schedule(schedule.id)
        assert updated.last_run_at == T0 + timedelta(minutes=1)
        assert updated.next_run_at == T0 + timedelta(minutes=2, seconds=45)

    async def test_disabled_schedule_is_skipped(self, scheduler, clock):
        schedule = await scheduler.create_schedule(interval())
        await scheduler.toggle_schedule(schedule.id, False)
        clock.advance(minutes=5)
        assert (await scheduler.tick())["dispatched"] == []

    async def test_inactive_workflow_is_skipped(self, scheduler, clock):
        schedule = await scheduler.create_schedule(interval())
        await scheduler.set_workflow_active("wf-1", False)
        clock.advance(minutes=5)
        assert (await scheduler.tick())["dispatched"] == []

        await scheduler.set_workflow_active("wf-1", True)
        assert (await scheduler.tick())["dispatched"] == [schedule.id]

    async def test_due_schedules_dispatch_earliest_first(self, scheduler, clock):
        late = await scheduler.create_schedule(interval(120_000))
        early = await scheduler.create_schedule(interval(60_000))
        clock.advance(minutes=5)
        assert (await scheduler.tick())["dispatched"] == [early.id, late.id]

    async def test_capacity_defers_excess(self, store, clock):
        scheduler = build(store, clock, ScriptedRunner(delay=0.05), max_concurrent_dispatches=1)
        first = await scheduler.create_schedule(interval(60_000))
        second = await scheduler.create_schedule(interval(90_000))
        clock.advance(minutes=5)

        summary = await scheduler.tick()
        assert summary["dispatched"] == [first.id]
        assert summary["deferred"] == [second.id]
        await wait_idle(scheduler)


class TestInFlight:

    async def test_overlapping_tick_skips_in_flight_schedule(self, store, clock):
        runner = ScriptedRunner(delay=0.1)
        scheduler = build(store, clock, runner)
        schedule = await scheduler.create_schedule(interval())
        clock.advance(minutes=1)

        assert (await scheduler.tick())["dispatched"] == [schedule.id]
        clock.advance(minutes=5)
        summary = await scheduler.tick()
        assert summary["in_flight"] == [schedule.id]
        assert summary["dispatched"] == []

        assert (await scheduler.get_schedule(schedule.id)).state == ScheduleState.DISPATCHING
        assert scheduler.in_flight == [schedule.id]

        await wait_idle(scheduler)
        assert runner.peak[schedule.id] == 1
        assert (await scheduler.get_schedule(schedule.id)).state == ScheduleState.ENABLED

    async def test_toggle_during_flight_is_preserved(self, store, clock):
        scheduler = build(store, clock, ScriptedRunner(delay=0.05))
        schedule = await scheduler.create_schedule(interval())
        clock.advance(minutes=1)
        await scheduler.tick()

        await scheduler.toggle_schedule(schedule.id, False)
        await wait_idle(scheduler)

        updated = await scheduler.get_schedule(schedule.id)
        assert updated.state == ScheduleState.DISABLED
        assert updated.execution_count == 1

    async def test_update_during_flight_keeps_new_timing(self, store, clock):
        runner = ScriptedRunner(delay=0.1)
        scheduler = build(store, clock, runner)
        schedule = await scheduler.create_schedule(interval())
        clock.advance(minutes=1)
        await scheduler.tick()
        while not runner.requests:
            await asyncio.sleep(0.001)

        changed = await scheduler.update_schedule(schedule.id, {"interval_ms": 3_600_000})
        assert changed.next_run_at == clock.now + timedelta(hours=1)
        await wait_idle(scheduler)

        stored = await scheduler.get_schedule(schedule.id)
        assert stored.interval_ms == 3_600_000
        assert stored.next_run_at == clock.now + timedelta(hours=1)
        assert stored.execution_count == 1

    async def test_lowering_max_executions_during_flight(self, store, clock):
        runner = ScriptedRunner(delay=0.1)
        scheduler = build(store, clock, runner)
        schedule = await scheduler.create_schedule(interval(max_executions=5))
        clock.advance(minutes=1)
        await scheduler.tick()
        while not runner.requests:
            await asyncio.sleep(0.001)

        await scheduler.update_schedule(schedule.id, {"max_executions": 1})
        await wait_idle(scheduler)

        stored = await scheduler.get_schedule(schedule.id)
        assert stored.execution_count == 1
        assert stored.state == ScheduleState.EXHAUSTED
        assert stored.next_run_at is None

    @pytest.mark.property
    @settings(max_examples=15, deadline=None)
    @given(steps=st.lists(st.integers(min_value=0, max_value=90), min_size=3, max_size=10))
    def test_at_most_one_dispatch_per_schedule(self, steps):
        async def scenario():
            clock = FakeClock()
            store = InMemoryScheduleStore()
            runner = ScriptedRunner(delay=0.004)
            scheduler = build(store, clock, runner)
            created = [
                await scheduler.create_schedule(interval(ms, workflow_id=f"wf-{ms}"))
                for ms in (15_000, 30_000, 45_000)
            ]
            for seconds in steps:
                clock.advance(seconds=seconds)
                await scheduler.tick()
                await asyncio.sleep(0.001)
            await wait_idle(scheduler)

            schedules = [await store.get_schedule(s.id) for s in created]
            return runner, schedules

        runner, schedules = asyncio.run(scenario())
        for schedule in schedules:
            assert runner.peak[schedule.id] <= 1
            dispatched = [r for r in runner.requests if r.schedule_id == schedule.id]
            assert schedule.execution_count == len(dispatched)


class TestLifecycle:

    async def test_once_completes(self, scheduler, clock):
        schedule = await scheduler.create_schedule(Schedule(
            workflow_id="wf-1", schedule_type=ScheduleType.ONCE,
            execute_at=T0 + timedelta(seconds=10),
        ))
        clock.advance(seconds=10)
        await scheduler.tick()
        await wait_idle(scheduler)

        updated = await scheduler.get_schedule(schedule.id)
        assert updated.state == ScheduleState.COMPLETED
        assert updated.next_run_at is None
        assert updated.enabled is False

        clock.advance(days=1)
        assert (await scheduler.tick())["dispatched"] == []
        with pytest.raises(InvalidStatusTransition):
            await scheduler.toggle_schedule(schedule.id, True)

    async def test_one_shot_delay_exhausts(self, scheduler, clock):
        schedule = await scheduler.create_schedule(Schedule(
            workflow_id="wf-1", schedule_type=ScheduleType.DELAY, delay_ms=5000,
        ))
        clock.advance(seconds=5)
        await scheduler.tick()
        await wait_idle(scheduler)
        assert (await scheduler.get_schedule(schedule.id)).state == ScheduleState.EXHAUSTED

    async def test_repeating_delay_reschedules(self, scheduler, clock):
        schedule = await scheduler.create_schedule(Schedule(
            workflow_id="wf-1", schedule_type=ScheduleType.DELAY, delay_ms=5000, repeat=True,
        ))
        clock.advance(seconds=5)
        await scheduler.tick()
        await wait_idle(scheduler)

        updated = await scheduler.get_schedule(schedule.id)
        assert updated.state == ScheduleState.ENABLED
        assert updated.next_run_at == T0 + timedelta(seconds=10)

    async def test_max_executions_exhausts(self, scheduler, clock):
        schedule = await scheduler.create_schedule(interval(max_executions=2))
        for _ in range(3):
            clock.advance(minutes=1)
            await scheduler.tick()
            await wait_idle(scheduler)

        updated = await scheduler.get_schedule(schedule.id)
        assert updated.execution_count == 2
        assert updated.state == ScheduleState.EXHAUSTED
        assert updated.next_run_at is None

    async def test_lowering_max_executions_exhausts(self, scheduler, runner, clock):
        schedule = await scheduler.create_schedule(interval())
        for _ in range(2):
            clock.advance(minutes=1)
            await scheduler.tick()
            await wait_idle(scheduler)

        updated = await scheduler.update_schedule(schedule.id, {"max_executions": 1})
        assert updated.state == ScheduleState.EXHAUSTED
        assert updated.next_run_at is None

        clock.advance(hours=1)
        assert (await scheduler.tick())["dispatched"] == []
        assert len(runner.requests) == 2
        with pytest.raises(InvalidStatusTransition):
            await scheduler.toggle_schedule(schedule.id, True)

    async def test_store_never_returns_schedule_at_its_limit(self, store):
        await store.insert_schedule(interval(max_executions=2, execution_count=2,
                                             next_run_at=T0 - timedelta(minutes=1)))
        assert await store.fetch_due_schedules(T0) == []

    async def test_toggle_flips_and_recomputes(self, scheduler, clock):
        schedule = await scheduler.create_schedule(interval())
        assert (await scheduler.toggle_schedule(schedule.id)).state == ScheduleState.DISABLED

        clock.advance(hours=1)
        enabled = await scheduler.toggle_schedule(schedule.id)
        assert enabled.state == ScheduleState.ENABLED
        assert enabled.next_run_at == clock.now + timedelta(minutes=1)

    async def test_toggle_to_current_value_is_noop(self, scheduler):
        schedule = await scheduler.create_schedule(interval())
        assert (await scheduler.toggle_schedule(schedule.id, True)).state == ScheduleState.ENABLED


class TestBlockingConditions:

    async def test_false_condition_blocks(self, scheduler, clock):
        schedule = await scheduler.create_schedule(interval(blocking_conditions=[
            {"field": "hour", "operator": "greater_than", "value": 23},
        ]))
        clock.advance(minutes=1)
        summary = await scheduler.tick()
        assert summary["blocked"] == [schedule.id]
        assert summary["dispatched"] == []

    async def test_conditions_read_schedule_variables(self, scheduler, clock):
        schedule = await scheduler.create_schedule(interval(
            variables={"env": "prod"},
            blocking_conditions=[{"field": "env", "operator": "equals", "value": "prod"}],
        ))
        clock.advance(minutes=1)
        assert (await scheduler.tick())["dispatched"] == [schedule.id]

    async def test_local_hour_uses_schedule_timezone(self, scheduler, clock):
        # 12:01 UTC is 21:01 in Tokyo
        schedule = await scheduler.create_schedule(interval(
            timezone="Asia/Tokyo",
            blocking_conditions=[{"field": "hour", "operator": "equals", "value": 21}],
        ))
        clock.advance(minutes=1)
        assert (await scheduler.tick())["dispatched"] == [schedule.id]

    async def test_evaluation_error_blocks(self, scheduler, clock):
        schedule = await scheduler.create_schedule(interval(blocking_conditions=[
            {"field": "hour", "operator": "greater_than", "value": "noon"},
        ]))
        clock.advance(minutes=1)
        assert (await scheduler.tick())["blocked"] == [schedule.id]


class TestRetries:

    POLICY = RetryPolicy(max_retries=1, retry_delay_ms=1000)

    async def test_failed_run_is_retried_without_counting(self, store, clock):
        runner = ScriptedRunner([failure()])
        scheduler = build(store, clock, runner)
        schedule = await scheduler.create_schedule(interval(retry_policy=self.POLICY))
        clock.advance(minutes=1)
        await scheduler.tick()
        await wait_idle(scheduler)

        after_run = await scheduler.get_schedule(schedule.id)
        assert after_run.failed_runs == 1

        clock.advance(seconds=1)
        summary = await scheduler.tick()
        assert len(summary["retries"]) == 1
        await wait_idle(scheduler)

        retried = await store.get_execution(summary["retries"][0])
        assert retried.status == ExecutionStatus.COMPLETED
        assert retried.attempts_made == 1
        assert (await scheduler.get_schedule(schedule.id)).execution_count == 1

    async def test_retry_cancelled_when_schedule_disabled(self, store, clock):
        scheduler = build(store, clock, ScriptedRunner([failure()]))
        schedule = await scheduler.create_schedule(interval(retry_policy=self.POLICY))
        clock.advance(minutes=1)
        await scheduler.tick()
        await wait_idle(scheduler)

        await scheduler.toggle_schedule(schedule.id, False)
        clock.advance(seconds=1)
        assert (await scheduler.tick())["retries"] == []

        pending = await store.list_executions(schedule_id=schedule.id, status=ExecutionStatus.CANCELLED)
        assert pending[0].error == "Schedule disabled"


class TestManagement:

    async def test_force_execute_waits_for_record(self, scheduler, clock):
        schedule = await scheduler.create_schedule(interval())
        result = await scheduler.force_execute(schedule.id, wait=True)

        assert result["dispatched"] is True
        assert result["execution"]["status"] == "completed"
        updated = await scheduler.get_schedule(schedule.id)
        assert updated.execution_count == 1
        assert updated.next_run_at == clock.now + timedelta(minutes=1)

    async def test_force_execute_respects_in_flight(self, store, clock):
        scheduler = build(store, clock, ScriptedRunner(delay=0.05))
        schedule = await scheduler.create_schedule(interval())

        assert (await scheduler.force_execute(schedule.id))["dispatched"] is True
        second = await scheduler.force_execute(schedule.id)
        assert second == {"schedule_id": schedule.id, "dispatched": False, "reason": "in_flight"}
        await wait_idle(scheduler)

    async def test_force_execute_unknown(self, scheduler):
        with pytest.raises(ScheduleNotFound):
            await scheduler.force_execute("missing")

    async def test_fire_event(self, scheduler, runner, clock):
        listener = await scheduler.create_schedule(Schedule(
            workflow_id="wf-1", schedule_type=ScheduleType.EVENT, event_name="order.paid",
        ))
        await scheduler.create_schedule(Schedule(
            workflow_id="wf-2", schedule_type=ScheduleType.EVENT, event_name="order.refunded",
        ))

        result = await scheduler.fire_event("order.paid", {"order_id": 42})
        assert result["dispatched"] == [listener.id]
        await wait_idle(scheduler)

        assert runner.requests[0].trigger_data["payload"] == {"order_id": 42}
        updated = await scheduler.get_schedule(listener.id)
        assert updated.execution_count == 1
        assert updated.state == ScheduleState.ENABLED

        clock.advance(days=1)
        assert (await scheduler.tick())["dispatched"] == []

    async def test_update_timing_recomputes_next_run(self, scheduler, clock):
        schedule = await scheduler.create_schedule(interval(name="old"))
        clock.advance(seconds=30)
        updated = await scheduler.update_schedule(schedule.id, {"interval_ms": 120_000, "name": "new"})
        assert updated.name == "new"
        assert updated.next_run_at == clock.now + timedelta(minutes=2)

    async def test_update_ignores_bookkeeping_fields(self, scheduler):
        schedule = await scheduler.create_schedule(interval())
        updated = await scheduler.update_schedule(schedule.id, {"execution_count": 99})
        assert updated.execution_count == 0

    async def test_update_enabled_routes_to_toggle(self, scheduler):
        schedule = await scheduler.create_schedule(interval())
        updated = await scheduler.update_schedule(schedule.id, {"enabled": False})
        assert updated.state == ScheduleState.DISABLED

    async def test_update_rejects_bad_cron(self, scheduler):
        schedule = await scheduler.create_schedule(Schedule(
            workflow_id="wf-1", schedule_type=ScheduleType.CRON, cron_expression="0 9 * * *",
        ))
        with pytest.raises(InvalidScheduleExpression):
            await scheduler.update_schedule(schedule.id, {"cron_expression": "99 * * * *"})
        assert (await scheduler.get_schedule(schedule.id)).cron_expression == "0 9 * * *"

    async def test_remove(self, scheduler):
        schedule = await scheduler.create_schedule(interval())
        await scheduler.remove_schedule(schedule.id)
        with pytest.raises(ScheduleNotFound):
            await scheduler.get_schedule(schedule.id)
        with pytest.raises(ScheduleNotFound):
            await scheduler.remove_schedule(schedule.id)

    async def test_list_filters(self, scheduler):
        first = await scheduler.create_schedule(interval(workflow_id="wf-a"))
        second = await scheduler.create_schedule(interval(workflow_id="wf-b"))
        await scheduler.toggle_schedule(second.id, False)

        assert [s.id for s in await scheduler.list_schedules(workflow_id="wf-a")] == [first.id]
        assert [s.id for s in await scheduler.list_schedules(enabled=False)] == [second.id]


class TestStatusAndStats:

    async def test_start_and_stop(self, scheduler, runner, clock):
        await scheduler.create_schedule(interval())
        clock.advance(minutes=1)

        await scheduler.start()
        assert scheduler.is_running
        assert scheduler.started_at == clock.now

        async def dispatched():
            while not runner.requests:
                await asyncio.sleep(0.005)

        await asyncio.wait_for(dispatched(), 2.0)
        clock.advance(seconds=30)
        assert scheduler.uptime_seconds == 30.0

        await scheduler.stop()
        assert not scheduler.is_running
        assert scheduler.started_at is None
        assert scheduler.status()["uptime_seconds"] == 0.0

    async def test_stop_cancels_in_flight(self, store, clock):
        runner = ScriptedRunner(delay=10)
        scheduler = build(store, clock, runner)
        schedule = await scheduler.create_schedule(interval())
        clock.advance(minutes=1)
        await scheduler.tick()
        while not runner.requests:
            await asyncio.sleep(0.001)

        assert len(scheduler.status()["running_executions"]) == 1
        await scheduler.stop()
        assert scheduler.in_flight == []
        records = await store.list_executions(schedule_id=schedule.id)
        assert records[0].status == ExecutionStatus.CANCELLED

    async def test_stats(self, scheduler, clock):
        soon = await scheduler.create_schedule(interval(10 * 60_000, name="soon"))
        later = await scheduler.create_schedule(interval(2 * 60 * 60_000, name="later"))
        await scheduler.create_schedule(Schedule(
            workflow_id="wf-1", schedule_type=ScheduleType.EVENT, event_name="x",
        ))
        await scheduler.force_execute(soon.id, wait=True)

        stats = await scheduler.get_stats()
        assert stats["total_schedules"] == 3
        assert stats["active_schedules"] == 3
        assert stats["executions_due_next_hour"] == 1
        assert stats["executions_due_next_24h"] == 2
        assert [u["schedule_id"] for u in stats["upcoming_executions"]] == [soon.id, later.id]
        assert stats["successful_executions"] == 1
        assert stats["success_rate"] == 100.0
        assert stats["scheduler"]["is_running"] is False

        assert len((await scheduler.get_stats(upcoming_limit=1))["upcoming_executions"]) == 1
