"""Pydantic request models for the HTTP boundary.

Accept both snake_case and camelCase keys. Type-specific schedule parameters
are checked here so a payload that reaches the scheduler is structurally
complete; whether the values actually schedule (cron syntax, timezone) is
checked by the cron calculator.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from workflow_scheduler.models.conditions import Expression
from workflow_scheduler.models.schedule import RetryPolicy, Schedule, ScheduleState, ScheduleType
from workflow_scheduler.services.cron_calculator import localize

# Parameter each schedule type requires
REQUIRED_PARAMS: Dict[str, str] = {
    "cron": "cron_expression",
    "interval": "interval_ms",
    "delay": "delay_ms",
    "once": "execute_at",
    "event": "event_name",
}


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class RetryPolicyPayload(_Payload):
    max_retries: int = Field(default=0, ge=0, le=10)
    retry_delay_ms: int = Field(default=60_000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)


class SchedulePayload(_Payload):
    """Schedule definition as submitted by a client."""
    workflow_id: str = Field(min_length=1)
    schedule_type: Literal["cron", "interval", "delay", "once", "event"]
    name: str = ""
    description: Optional[str] = None
    cron_expression: Optional[str] = None
    interval_ms: Optional[int] = Field(default=None, gt=0)
    delay_ms: Optional[int] = Field(default=None, gt=0)
    execute_at: Optional[datetime] = None
    event_name: Optional[str] = None
    repeat: bool = False
    timezone: Optional[str] = None
    enabled: bool = True
    max_executions: Optional[int] = Field(default=None, ge=1)
    blocking_conditions: List[Expression] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)
    retry_policy: RetryPolicyPayload = Field(default_factory=RetryPolicyPayload)

    @model_validator(mode="after")
    def check_type_params(self):
        required = REQUIRED_PARAMS[self.schedule_type]
        if getattr(self, required) in (None, ""):
            raise ValueError(f"{required} is required for {self.schedule_type} schedules")
        return self

    def to_schedule(self, default_timezone: str = "UTC") -> Schedule:
        timezone = self.timezone or default_timezone
        return Schedule(
            workflow_id=self.workflow_id,
            schedule_type=ScheduleType(self.schedule_type),
            name=self.name,
            description=self.description,
            cron_expression=self.cron_expression,
            interval_ms=self.interval_ms,
            delay_ms=self.delay_ms,
            execute_at=localize(self.execute_at, timezone),
            event_name=self.event_name,
            repeat=self.repeat,
            timezone=timezone,
            state=ScheduleState.ENABLED if self.enabled else ScheduleState.DISABLED,
            max_executions=self.max_executions,
            blocking_conditions=[c.model_dump() for c in self.blocking_conditions],
            variables=self.variables,
            retry_policy=RetryPolicy(**self.retry_policy.model_dump()),
        )


class ScheduleUpdatePayload(_Payload):
    """Partial update; only fields that are set are applied."""
    name: Optional[str] = None
    description: Optional[str] = None
    schedule_type: Optional[Literal["cron", "interval", "delay", "once", "event"]] = None
    cron_expression: Optional[str] = None
    interval_ms: Optional[int] = Field(default=None, gt=0)
    delay_ms: Optional[int] = Field(default=None, gt=0)
    execute_at: Optional[datetime] = None
    event_name: Optional[str] = None
    repeat: Optional[bool] = None
    timezone: Optional[str] = None
    enabled: Optional[bool] = None
    max_executions: Optional[int] = Field(default=None, ge=1)
    blocking_conditions: Optional[List[Expression]] = None
    variables: Optional[Dict[str, Any]] = None
    retry_policy: Optional[RetryPolicyPayload] = None

    def to_changes(self, timezone: str) -> Dict[str, Any]:
        changes = self.model_dump(exclude_unset=True)
        if self.execute_at is not None:
            changes["execute_at"] = localize(self.execute_at, self.timezone or timezone)
        if self.blocking_conditions is not None:
            changes["blocking_conditions"] = [c.model_dump() for c in self.blocking_conditions]
        return changes


class TogglePayload(_Payload):
    enabled: Optional[bool] = None


class ConditionalExecutePayload(_Payload):
    config: Dict[str, Any]
    context: Dict[str, Any] = Field(default_factory=dict)
    failure_policy: Literal["stop", "continue", "notify"] = "stop"


class TriggerPayload(_Payload):
    payload: Dict[str, Any] = Field(default_factory=dict)
