"""Execution runner clients."""

import asyncio

import pytest

from workflow_scheduler.core.exceptions import ExecutionDispatchFailure
from workflow_scheduler.services.runner import (
    CallbackExecutionRunner,
    HttpExecutionRunner,
    NullExecutionRunner,
    RunRequest,
)


def request(workflow_id: str = "wf-1") -> RunRequest:
    return RunRequest(execution_id=f"exec-{workflow_id}", workflow_id=workflow_id,
                      trigger_type="manual", trigger_data={"k": "v"})


class TestHttpRunner:

    async def test_success(self, remote):
        url, _ = remote
        outcome = await HttpExecutionRunner(url).run(request(), asyncio.Event())
        assert outcome.success
        assert outcome.result == {"echo": {"k": "v"}}

    async def test_server_error_is_dispatch_failure(self, remote):
        url, _ = remote
        with pytest.raises(ExecutionDispatchFailure) as exc_info:
            await HttpExecutionRunner(url).run(request("wf-crash"), asyncio.Event())
        assert exc_info.value.details["status"] == 500

    async def test_unreachable_is_dispatch_failure(self):
        with pytest.raises(ExecutionDispatchFailure):
            await HttpExecutionRunner("http://127.0.0.1:1", timeout=2).run(request(), asyncio.Event())

    async def test_cancel_event_notifies_remote(self, remote):
        url, cancelled = remote
        cancel_event = asyncio.Event()
        task = asyncio.create_task(HttpExecutionRunner(url).run(request("wf-slow"), cancel_event))
        await asyncio.sleep(0.05)
        cancel_event.set()

        outcome = await asyncio.wait_for(task, 5)
        assert outcome.success is False
        assert outcome.error == "Cancelled"
        assert cancelled == ["exec-wf-slow"]

    async def test_health(self, remote):
        url, _ = remote
        assert await HttpExecutionRunner(url).health_check() == {"status": "OK"}


class TestInProcessRunners:

    async def test_null_runner_succeeds(self):
        outcome = await NullExecutionRunner().run(request(), asyncio.Event())
        assert outcome.success
        assert outcome.result == {"executed": False}

    async def test_callback_exception_becomes_failure(self):
        async def explode(req, cancel_event):
            raise ValueError("bad input")

        outcome = await CallbackExecutionRunner(explode).run(request(), asyncio.Event())
        assert outcome.success is False
        assert outcome.error == "bad input"
