"""Schedule state models.

All models are JSON-serializable so they can cross the persistence and HTTP
boundaries unchanged.

Lifecycle:
    ENABLED -> DISPATCHING -> ENABLED   (normal cycle, reported while in flight)
    ENABLED -> EXHAUSTED                (max_executions reached / one-shot delay fired)
    ENABLED -> COMPLETED                (once schedule fired)
    ENABLED <-> DISABLED                (explicit toggle)
"""

import uuid
from copy import deepcopy
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to an aware UTC instant (naive values are taken as UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO string or datetime into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ScheduleType(str, Enum):
    """When a schedule fires."""
    CRON = "cron"
    INTERVAL = "interval"
    DELAY = "delay"
    ONCE = "once"
    EVENT = "event"


class ScheduleState(str, Enum):
    """Schedule lifecycle states."""
    ENABLED = "enabled"
    DISPATCHING = "dispatching"   # In flight, never persisted
    DISABLED = "disabled"
    EXHAUSTED = "exhausted"       # max_executions reached or one-shot delay fired
    COMPLETED = "completed"       # once schedule fired

    @property
    def is_terminal(self) -> bool:
        return self in (ScheduleState.EXHAUSTED, ScheduleState.COMPLETED)


@dataclass
class RetryPolicy:
    """Retry configuration applied when a scheduled execution fails.

    Delay formula: retry_delay_ms * (backoff_multiplier ^ attempts_made)
    """
    max_retries: int = 0
    retry_delay_ms: int = 60_000
    backoff_multiplier: float = 2.0

    def should_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.max_retries

    def calculate_delay_ms(self, attempts_made: int) -> float:
        """Delay before the retry that follows ``attempts_made`` previous retries."""
        return self.retry_delay_ms * (self.backoff_multiplier ** attempts_made)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "retry_delay_ms": self.retry_delay_ms,
            "backoff_multiplier": self.backoff_multiplier,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RetryPolicy":
        data = data or {}
        return cls(
            max_retries=data.get("max_retries", 0),
            retry_delay_ms=data.get("retry_delay_ms", 60_000),
            backoff_multiplier=data.get("backoff_multiplier", 2.0),
        )


@dataclass
class Schedule:
    """Persisted definition of when and how a workflow runs automatically."""
    workflow_id: str
    schedule_type: ScheduleType
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    description: Optional[str] = None

    # Type-specific parameters
    cron_expression: Optional[str] = None
    interval_ms: Optional[int] = None
    delay_ms: Optional[int] = None
    execute_at: Optional[datetime] = None
    event_name: Optional[str] = None
    repeat: bool = False  # delay schedules only

    timezone: str = "UTC"
    state: ScheduleState = ScheduleState.ENABLED
    max_executions: Optional[int] = None
    execution_count: int = 0
    successful_runs: int = 0
    failed_runs: int = 0

    # Condition expressions that must all hold for the schedule to fire
    blocking_conditions: List[Dict[str, Any]] = field(default_factory=list)
    variables: Dict[str, Any] = field(default_factory=dict)
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)

    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def enabled(self) -> bool:
        return self.state in (ScheduleState.ENABLED, ScheduleState.DISPATCHING)

    @property
    def is_exhausted(self) -> bool:
        if self.state.is_terminal:
            return True
        return self.max_executions is not None and self.execution_count >= self.max_executions

    @property
    def params(self) -> Dict[str, Any]:
        """Type-specific parameters in the shape the cron calculator expects."""
        return {
            "cron_expression": self.cron_expression,
            "interval_ms": self.interval_ms,
            "delay_ms": self.delay_ms,
            "execute_at": self.execute_at,
            "event_name": self.event_name,
            "repeat": self.repeat,
        }

    def is_due(self, now: datetime) -> bool:
        return (
            self.state == ScheduleState.ENABLED
            and self.schedule_type != ScheduleType.EVENT
            and not self.is_exhausted
            and self.next_run_at is not None
            and self.next_run_at <= now
        )

    def copy(self, **changes: Any) -> "Schedule":
        return replace(deepcopy(self), **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "name": self.name,
            "description": self.description,
            "schedule_type": self.schedule_type.value,
            "cron_expression": self.cron_expression,
            "interval_ms": self.interval_ms,
            "delay_ms": self.delay_ms,
            "execute_at": format_datetime(self.execute_at),
            "event_name": self.event_name,
            "repeat": self.repeat,
            "timezone": self.timezone,
            "enabled": self.enabled,
            "state": self.state.value,
            "max_executions": self.max_executions,
            "execution_count": self.execution_count,
            "successful_runs": self.successful_runs,
            "failed_runs": self.failed_runs,
            "blocking_conditions": self.blocking_conditions,
            "variables": self.variables,
            "retry_policy": self.retry_policy.to_dict(),
            "last_run_at": format_datetime(self.last_run_at),
            "next_run_at": format_datetime(self.next_run_at),
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Schedule":
        """Create from dict."""
        state = data.get("state")
        if state is None:
            state = ScheduleState.ENABLED if data.get("enabled", True) else ScheduleState.DISABLED
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            workflow_id=data["workflow_id"],
            name=data.get("name", ""),
            description=data.get("description"),
            schedule_type=ScheduleType(data["schedule_type"]),
            cron_expression=data.get("cron_expression"),
            interval_ms=data.get("interval_ms"),
            delay_ms=data.get("delay_ms"),
            execute_at=parse_datetime(data.get("execute_at")),
            event_name=data.get("event_name"),
            repeat=data.get("repeat", False),
            timezone=data.get("timezone", "UTC"),
            state=ScheduleState(state),
            max_executions=data.get("max_executions"),
            execution_count=data.get("execution_count", 0),
            successful_runs=data.get("successful_runs", 0),
            failed_runs=data.get("failed_runs", 0),
            blocking_conditions=data.get("blocking_conditions") or [],
            variables=data.get("variables") or {},
            retry_policy=RetryPolicy.from_dict(data.get("retry_policy")),
            last_run_at=parse_datetime(data.get("last_run_at")),
            next_run_at=parse_datetime(data.get("next_run_at")),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=parse_datetime(data.get("updated_at")) or utcnow(),
        )
