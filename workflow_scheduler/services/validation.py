"""Dry-run validation of schedule and condition payloads.

Nothing is persisted. Each validator returns:

    {
        "valid": bool,
        "errors": [{"field": "...", "message": "..."}],
        "warnings": [{"field": "...", "message": "..."}],
        ...
    }
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from workflow_scheduler.constants import MIN_INTERVAL_WARNING_MS, VALIDATION_SAMPLE_SIZE
from workflow_scheduler.core.exceptions import InvalidScheduleExpression
from workflow_scheduler.core.logging import get_logger
from workflow_scheduler.models.conditions import LoopForConfig, LoopWhileConfig, parse_condition_config
from workflow_scheduler.models.payloads import REQUIRED_PARAMS, SchedulePayload
from workflow_scheduler.models.schedule import ScheduleType, format_datetime, utcnow
from workflow_scheduler.services.cron_calculator import describe_cron, upcoming_runs

logger = get_logger(__name__)

# Loops allowed to run this many iterations trigger a warning
LARGE_LOOP_WARNING = 1000


def field_errors(error: ValidationError) -> List[Dict[str, str]]:
    """Flatten a pydantic ValidationError into per-field messages."""
    return [
        {
            "field": ".".join(str(part) for part in err["loc"]) or "__root__",
            "message": err["msg"],
        }
        for err in error.errors()
    ]


def _result(errors, warnings, **extra) -> Dict[str, Any]:
    return {"valid": not errors, "errors": errors, "warnings": warnings, **extra}


def validate_schedule_payload(data: Dict[str, Any], default_timezone: str = "UTC",
                              min_interval_warning_ms: int = MIN_INTERVAL_WARNING_MS,
                              now: Optional[datetime] = None) -> Dict[str, Any]:
    """Type-check a proposed schedule and preview its next executions.

    Intervals below ``min_interval_warning_ms`` are accepted with a warning.
    """
    now = now or utcnow()
    errors: List[Dict[str, str]] = []
    warnings: List[Dict[str, str]] = []

    try:
        payload = SchedulePayload.model_validate(data)
    except ValidationError as e:
        return _result(field_errors(e), warnings, sample_next_executions=[])

    try:
        schedule = payload.to_schedule(default_timezone)
        samples = upcoming_runs(schedule.schedule_type, schedule.params, schedule.timezone,
                                now, count=VALIDATION_SAMPLE_SIZE)
    except InvalidScheduleExpression as e:
        field = "timezone" if "timezone" in e.details else REQUIRED_PARAMS[payload.schedule_type]
        errors.append({"field": field, "message": e.message})
        return _result(errors, warnings, sample_next_executions=[])

    if schedule.schedule_type == ScheduleType.INTERVAL and schedule.interval_ms < min_interval_warning_ms:
        warnings.append({
            "field": "interval_ms",
            "message": f"Interval of {schedule.interval_ms}ms is below the recommended minimum "
                       f"of {min_interval_warning_ms}ms",
        })

    if schedule.schedule_type == ScheduleType.DELAY and schedule.repeat \
            and schedule.delay_ms < min_interval_warning_ms:
        warnings.append({
            "field": "delay_ms",
            "message": f"Repeating delay of {schedule.delay_ms}ms is below the recommended minimum "
                       f"of {min_interval_warning_ms}ms",
        })

    if schedule.schedule_type == ScheduleType.CRON and len(samples) >= 2:
        gap_ms = (samples[1] - samples[0]).total_seconds() * 1000
        if gap_ms < min_interval_warning_ms:
            warnings.append({
                "field": "cron_expression",
                "message": f"Cron expression fires every {gap_ms / 1000:g}s, below the recommended "
                           f"minimum of {min_interval_warning_ms / 1000:g}s",
            })

    if schedule.schedule_type == ScheduleType.ONCE and schedule.execute_at <= now:
        warnings.append({
            "field": "execute_at",
            "message": "execute_at is in the past; the schedule will fire on the next tick",
        })

    extra: Dict[str, Any] = {
        "sample_next_executions": [format_datetime(s) for s in samples],
        "timezone": schedule.timezone,
    }
    if schedule.schedule_type == ScheduleType.CRON:
        extra["description"] = describe_cron(schedule.cron_expression)

    return _result(errors, warnings, **extra)


def validate_condition_payload(data: Any) -> Dict[str, Any]:
    """Type-check a conditional node config without evaluating it."""
    warnings: List[Dict[str, str]] = []

    try:
        config = parse_condition_config(data)
    except ValidationError as e:
        return _result(field_errors(e), warnings)

    if isinstance(config, (LoopWhileConfig, LoopForConfig)):
        if config.max_iterations > LARGE_LOOP_WARNING:
            warnings.append({
                "field": "max_iterations",
                "message": f"max_iterations of {config.max_iterations} may make runs very slow",
            })
        if not config.actions:
            warnings.append({"field": "actions", "message": "Loop has no actions to execute"})

    if isinstance(config, LoopForConfig) and isinstance(config.items, list) \
            and len(config.items) > config.max_iterations:
        warnings.append({
            "field": "items",
            "message": f"{len(config.items)} items exceed max_iterations ({config.max_iterations}); "
                       "evaluation will fail",
        })

    return _result([], warnings, type=config.type)
