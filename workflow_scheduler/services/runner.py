"""Execution Runner collaborator.

The runner executes a workflow's action graph. The trigger system hands it a
``RunRequest`` plus a cancellation event and awaits a terminal ``RunOutcome``.
Deadlines are enforced by the caller; runners should still watch the event
and stop promptly once it is set.

Usage:
    runner = HttpExecutionRunner(settings.runner_url) if settings.runner_url else NullExecutionRunner()
    outcome = await runner.run(request, cancel_event)
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union

import aiohttp

from workflow_scheduler.core.exceptions import ExecutionDispatchFailure
from workflow_scheduler.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RunRequest:
    """What to run and why."""
    execution_id: str
    workflow_id: str
    trigger_type: str
    trigger_data: Dict[str, Any] = field(default_factory=dict)
    schedule_id: Optional[str] = None
    timeout_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "trigger_type": self.trigger_type,
            "trigger_data": self.trigger_data,
            "schedule_id": self.schedule_id,
            "timeout_seconds": self.timeout_seconds,
        }


@dataclass
class RunOutcome:
    """Terminal report from the runner."""
    success: bool
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunOutcome":
        return cls(
            success=bool(data.get("success")),
            result=data.get("result"),
            error=data.get("error"),
        )


class ExecutionRunner(Protocol):
    """Protocol for execution runners (enables duck typing)."""

    async def run(self, request: RunRequest, cancel_event: asyncio.Event) -> RunOutcome:
        """Execute the workflow and report its terminal outcome."""
        ...


class NullExecutionRunner:
    """No-op runner used when no runner is configured.

    Follows the Null Object pattern - every run succeeds immediately.
    """

    async def run(self, request: RunRequest, cancel_event: asyncio.Event) -> RunOutcome:
        logger.debug("No execution runner configured, completing immediately",
                     execution_id=request.execution_id,
                     workflow_id=request.workflow_id)
        return RunOutcome(success=True, result={"executed": False})


RunCallback = Callable[[RunRequest, asyncio.Event], Awaitable[Union[RunOutcome, Dict[str, Any]]]]


class CallbackExecutionRunner:
    """Adapts an in-process coroutine function into an ExecutionRunner.

    The callback may return a RunOutcome or a ``{success, result, error}`` dict.
    Exceptions it raises are reported as failed outcomes.
    """

    def __init__(self, callback: RunCallback):
        self._callback = callback

    async def run(self, request: RunRequest, cancel_event: asyncio.Event) -> RunOutcome:
        try:
            outcome = await self._callback(request, cancel_event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Execution callback raised",
                           execution_id=request.execution_id, error=str(e))
            return RunOutcome(success=False, error=str(e))

        if isinstance(outcome, RunOutcome):
            return outcome
        return RunOutcome.from_dict(outcome or {})


class HttpExecutionRunner:
    """Async HTTP client for a remote execution runner service.

    Endpoints:
        POST {base_url}/execute          -> {success, result, error}
        POST {base_url}/cancel/{exec_id} -> acknowledgement
    """

    def __init__(self, base_url: str, timeout: float = 300):
        """Initialize client with base URL and timeout.

        Args:
            base_url: Base URL of the runner (e.g., http://127.0.0.1:3020)
            timeout: Default request timeout in seconds
        """
        self._base_url = base_url.rstrip('/')
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def health_check(self) -> Dict[str, Any]:
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.get(f"{self._base_url}/health") as response:
                return await response.json()

    async def _post_execute(self, request: RunRequest) -> RunOutcome:
        # The deadline is the caller's; it ends this request through the cancel event
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(f"{self._base_url}/execute", json=request.to_dict()) as response:
                    if response.status >= 500:
                        text = await response.text()
                        raise ExecutionDispatchFailure(
                            f"Runner returned HTTP {response.status}",
                            status=response.status,
                            body=text[:500],
                        )
                    return RunOutcome.from_dict(await response.json())
        except aiohttp.ClientError as e:
            raise ExecutionDispatchFailure(f"Runner unreachable: {e}", url=self._base_url)

    async def cancel(self, execution_id: str) -> None:
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10)) as session:
                async with session.post(f"{self._base_url}/cancel/{execution_id}") as response:
                    logger.info("Cancel signal sent to runner",
                                execution_id=execution_id, status=response.status)
        except aiohttp.ClientError as e:
            logger.warning("Failed to send cancel signal", execution_id=execution_id, error=str(e))

    async def run(self, request: RunRequest, cancel_event: asyncio.Event) -> RunOutcome:
        request_task = asyncio.ensure_future(self._post_execute(request))
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({request_task, cancel_task},
                                         return_when=asyncio.FIRST_COMPLETED)
            if request_task in done:
                return request_task.result()

            request_task.cancel()
            await self.cancel(request.execution_id)
            return RunOutcome(success=False, error="Cancelled")
        finally:
            for task in (request_task, cancel_task):
                if not task.done():
                    task.cancel()
