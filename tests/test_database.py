"""SQLModel-backed store against a temporary SQLite database."""

from datetime import datetime, timedelta, timezone

import pytest

from workflow_scheduler.core.config import Settings
from workflow_scheduler.core.database import Database
from workflow_scheduler.models.execution import ExecutionRecord, ExecutionStatus, TriggerType
from workflow_scheduler.models.schedule import RetryPolicy, Schedule, ScheduleState, ScheduleType

NOW = datetime(2024, 1, 5, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
async def database(tmp_path):
    settings = Settings(persistence="database", database_url=f"sqlite+aiosqlite:///{tmp_path}/scheduler.db")
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


def interval(**overrides) -> Schedule:
    fields = dict(
        workflow_id="wf-1",
        schedule_type=ScheduleType.INTERVAL,
        interval_ms=60_000,
        next_run_at=NOW - timedelta(seconds=1),
    )
    fields.update(overrides)
    return Schedule(**fields)


async def test_schedule_round_trip(database):
    schedule = interval(
        name="sync",
        timezone="Europe/Berlin",
        blocking_conditions=[{"field": "hour", "operator": "less_than", "value": 18}],
        variables={"region": "eu"},
        retry_policy=RetryPolicy(max_retries=2, retry_delay_ms=500),
    )
    await database.insert_schedule(schedule)

    loaded = await database.get_schedule(schedule.id)
    assert loaded.name == "sync"
    assert loaded.next_run_at == schedule.next_run_at
    assert loaded.next_run_at.tzinfo is not None
    assert loaded.blocking_conditions == schedule.blocking_conditions
    assert loaded.variables == {"region": "eu"}
    assert loaded.retry_policy.max_retries == 2
    assert await database.get_schedule("missing") is None


async def test_update_and_delete(database):
    schedule = await database.insert_schedule(interval())
    schedule.state = ScheduleState.DISABLED
    await database.update_schedule(schedule)

    assert (await database.get_schedule(schedule.id)).state == ScheduleState.DISABLED
    assert [s.id for s in await database.list_schedules(enabled=False)] == [schedule.id]
    assert await database.list_schedules(enabled=True) == []

    assert await database.delete_schedule(schedule.id) is True
    assert await database.delete_schedule(schedule.id) is False


async def test_fetch_due_schedules_filters(database):
    due = await database.insert_schedule(interval(next_run_at=NOW - timedelta(minutes=5)))
    due_later = await database.insert_schedule(interval(next_run_at=NOW))
    await database.insert_schedule(interval(next_run_at=NOW + timedelta(minutes=1)))
    await database.insert_schedule(interval(state=ScheduleState.DISABLED))
    await database.insert_schedule(interval(state=ScheduleState.EXHAUSTED))
    await database.insert_schedule(interval(max_executions=2, execution_count=2))
    await database.insert_schedule(interval(workflow_id="wf-off"))
    await database.insert_schedule(Schedule(
        workflow_id="wf-1", schedule_type=ScheduleType.EVENT, event_name="x",
    ))
    await database.save_workflow("wf-off", name="paused", active=False)
    assert await database.is_workflow_active("wf-off") is False
    assert await database.is_workflow_active("wf-unknown") is True

    result = await database.fetch_due_schedules(NOW)
    assert [s.id for s in result] == [due.id, due_later.id]


async def test_record_run_preserves_concurrent_disable(database):
    schedule = await database.insert_schedule(interval())
    updated = await database.record_run(schedule.id, NOW, NOW + timedelta(minutes=1),
                                        ScheduleState.ENABLED, success=True)
    assert updated.execution_count == 1
    assert updated.successful_runs == 1
    assert updated.next_run_at == NOW + timedelta(minutes=1)

    updated.state = ScheduleState.DISABLED
    await database.update_schedule(updated)

    again = await database.record_run(schedule.id, NOW, None, ScheduleState.EXHAUSTED, success=False)
    assert again.execution_count == 2
    assert again.failed_runs == 1
    assert again.state == ScheduleState.DISABLED


async def test_record_run_applies_terminal_state(database):
    schedule = await database.insert_schedule(interval())
    updated = await database.record_run(schedule.id, NOW, None, ScheduleState.EXHAUSTED, success=None)
    assert updated.state == ScheduleState.EXHAUSTED
    assert updated.enabled is False
    assert updated.successful_runs == 0
    assert updated.failed_runs == 0


async def test_record_run_unknown_schedule(database):
    assert await database.record_run("missing", NOW, None, ScheduleState.ENABLED, True) is None


async def test_executions(database):
    record = ExecutionRecord(workflow_id="wf-1", schedule_id="s-1", trigger_type=TriggerType.SCHEDULED,
                             trigger_data={"scheduled_for": NOW.isoformat()})
    await database.insert_execution(record)
    record.mark_running(NOW)
    record.mark_failed("x" * 3000, NOW + timedelta(seconds=2))
    await database.update_execution(record)

    loaded = await database.get_execution(record.id)
    assert loaded.status == ExecutionStatus.FAILED
    assert loaded.duration_ms == 2000
    assert len(loaded.error) == 2000
    assert loaded.trigger_data == record.trigger_data

    failed = await database.list_executions(status=ExecutionStatus.FAILED)
    assert [r.id for r in failed] == [record.id]
    assert await database.list_executions(workflow_id="other") == []


async def test_fetch_due_retries_orders_by_scheduled_for(database):
    later = ExecutionRecord(workflow_id="wf-1", schedule_id="s-1", trigger_type=TriggerType.SCHEDULED,
                            attempts_made=1, scheduled_for=NOW)
    sooner = ExecutionRecord(workflow_id="wf-1", schedule_id="s-2", trigger_type=TriggerType.SCHEDULED,
                             attempts_made=1, scheduled_for=NOW - timedelta(minutes=1))
    future = ExecutionRecord(workflow_id="wf-1", schedule_id="s-3", trigger_type=TriggerType.SCHEDULED,
                             attempts_made=1, scheduled_for=NOW + timedelta(minutes=1))
    for record in (later, sooner, future):
        await database.insert_execution(record)

    due = await database.fetch_due_retries(NOW)
    assert [r.id for r in due] == [sooner.id, later.id]
