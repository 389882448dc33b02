"""Scheduler exception hierarchy.

Every error raised across the engine derives from ``SchedulerError`` so the
HTTP layer can map it to a response with a single handler.
"""

from typing import Any, Dict


class SchedulerError(Exception):
    """Base exception for all scheduling and trigger-execution errors."""

    status_code: int = 400
    error_type: str = "scheduler_error"

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.error_type,
            "message": self.message,
            "details": self.details,
        }


class InvalidScheduleExpression(SchedulerError):
    """Cron expression, timezone or schedule parameters cannot be interpreted."""

    status_code = 400
    error_type = "invalid_schedule_expression"


class ScheduleNotFound(SchedulerError):
    """No schedule exists with the requested id."""

    status_code = 404
    error_type = "schedule_not_found"

    def __init__(self, schedule_id: str):
        self.schedule_id = schedule_id
        super().__init__(f"Schedule not found: {schedule_id}", schedule_id=schedule_id)


class ExecutionNotFound(SchedulerError):
    """No execution record exists with the requested id."""

    status_code = 404
    error_type = "execution_not_found"

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}", execution_id=execution_id)


class AccessDenied(SchedulerError):
    """Caller is not allowed to act on the schedule or workflow."""

    status_code = 403
    error_type = "access_denied"

    def __init__(self, workflow_id: str, reason: str):
        self.workflow_id = workflow_id
        super().__init__(f"Access denied to workflow {workflow_id}: {reason}",
                         workflow_id=workflow_id, reason=reason)


class ExecutionDispatchFailure(SchedulerError):
    """The execution runner could not be invoked or reported a failure."""

    status_code = 502
    error_type = "execution_dispatch_failure"


class ExecutionTimeout(SchedulerError):
    """A dispatched execution exceeded its deadline."""

    status_code = 504
    error_type = "execution_timeout"

    def __init__(self, execution_id: str, timeout_seconds: float):
        self.execution_id = execution_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Execution {execution_id} timed out after {timeout_seconds}s",
            execution_id=execution_id,
            timeout_seconds=timeout_seconds,
        )


class LoopLimitExceeded(SchedulerError):
    """A loop-while or loop-for node hit its iteration cap."""

    status_code = 422
    error_type = "loop_limit_exceeded"

    def __init__(self, max_iterations: int):
        self.max_iterations = max_iterations
        super().__init__(
            f"Loop exceeded maximum of {max_iterations} iterations",
            max_iterations=max_iterations,
        )


class EvaluationTypeMismatch(SchedulerError):
    """A condition compared operands of incompatible types."""

    status_code = 422
    error_type = "evaluation_type_mismatch"

    def __init__(self, operator: str, actual: Any, expected: Any, field: str = ""):
        self.operator = operator
        self.field = field
        super().__init__(
            f"Cannot apply '{operator}' to {type(actual).__name__} and {type(expected).__name__}"
            + (f" (field '{field}')" if field else ""),
            operator=operator,
            field=field,
            actual_type=type(actual).__name__,
            expected_type=type(expected).__name__,
        )


class InvalidStatusTransition(SchedulerError):
    """An execution record or schedule was moved to a state it cannot reach."""

    status_code = 409
    error_type = "invalid_status_transition"

    def __init__(self, entity_id: str, current: str, target: str):
        self.entity_id = entity_id
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot transition {entity_id} from {current} to {target}",
            entity_id=entity_id,
            current=current,
            target=target,
        )
