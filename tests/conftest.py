"""Shared fixtures for scheduler tests."""

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Union

import pytest
from aiohttp import test_utils, web

from workflow_scheduler.core.store import InMemoryScheduleStore
from workflow_scheduler.services.conditions import ConditionalEngine
from workflow_scheduler.services.runner import RunOutcome, RunRequest
from workflow_scheduler.services.scheduler import WorkflowScheduler
from workflow_scheduler.services.triggers import TriggerSystem

# Friday, 2024-01-05 12:00 UTC
T0 = datetime(2024, 1, 5, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock injected wherever services read the time."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class ScriptedRunner:
    """Execution runner that replays scripted outcomes.

    ``outcomes`` items may be RunOutcome instances or exceptions to raise.
    ``delay`` keeps each run in flight for that many seconds.
    """

    def __init__(self, outcomes: Optional[List[Union[RunOutcome, Exception]]] = None,
                 delay: float = 0.0):
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.requests: List[RunRequest] = []
        self.cancel_events: List[asyncio.Event] = []
        self.active: Dict[Optional[str], int] = defaultdict(int)
        self.peak: Dict[Optional[str], int] = defaultdict(int)

    async def run(self, request: RunRequest, cancel_event: asyncio.Event) -> RunOutcome:
        self.requests.append(request)
        self.cancel_events.append(cancel_event)
        key = request.schedule_id
        self.active[key] += 1
        self.peak[key] = max(self.peak[key], self.active[key])
        try:
            if self.delay:
                try:
                    await asyncio.wait_for(cancel_event.wait(), self.delay)
                    return RunOutcome(success=False, error="Cancelled")
                except asyncio.TimeoutError:
                    pass
            outcome = self.outcomes.pop(0) if self.outcomes else RunOutcome(success=True, result={"ok": True})
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.active[key] -= 1


async def wait_idle(scheduler: WorkflowScheduler, timeout: float = 5.0) -> None:
    """Wait until every in-flight dispatch has finished its bookkeeping."""
    async def _drain():
        while scheduler.in_flight:
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_drain(), timeout)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def store():
    store = InMemoryScheduleStore()
    await store.startup()
    yield store
    await store.shutdown()


@pytest.fixture
def runner() -> ScriptedRunner:
    return ScriptedRunner()


@pytest.fixture
def engine() -> ConditionalEngine:
    return ConditionalEngine()


@pytest.fixture
def triggers(store, runner, clock) -> TriggerSystem:
    return TriggerSystem(store, runner, execution_timeout=5.0, clock=clock)


@pytest.fixture
async def scheduler(store, triggers, engine, clock):
    scheduler = WorkflowScheduler(store, triggers, engine, poll_interval=0.01, clock=clock)
    yield scheduler
    await scheduler.stop()


def failure(error: str = "boom") -> RunOutcome:
    return RunOutcome(success=False, error=error)


@pytest.fixture
async def remote():
    """A stand-in runner service recording the cancel calls it receives.

    ``wf-crash`` answers 500; ``wf-slow`` holds until its execution is cancelled.
    """
    cancelled = []
    release = asyncio.Event()

    async def execute(req):
        body = await req.json()
        if body["workflow_id"] == "wf-crash":
            return web.Response(status=500, text="internal error")
        if body["workflow_id"] == "wf-slow":
            await release.wait()
        return web.json_response({"success": True, "result": {"echo": body["trigger_data"]}})

    async def cancel(req):
        cancelled.append(req.match_info["execution_id"])
        release.set()
        return web.json_response({"acknowledged": True})

    async def health(req):
        return web.json_response({"status": "OK"})

    app = web.Application()
    app.router.add_post("/execute", execute)
    app.router.add_post("/cancel/{execution_id}", cancel)
    app.router.add_get("/health", health)

    server = test_utils.TestServer(app)
    await server.start_server()
    yield str(server.make_url("/")), cancelled
    await server.close()
