"""Execution record model.

State transitions (monotonic, never reversed):
    PENDING -> RUNNING -> COMPLETED
                       -> FAILED
                       -> CANCELLED
    PENDING -> CANCELLED  (retry cancelled before it started)

``completed_at`` is set iff the status is terminal.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional

from workflow_scheduler.core.exceptions import InvalidStatusTransition
from workflow_scheduler.models.schedule import format_datetime, parse_datetime, utcnow


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


class TriggerType(str, Enum):
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"
    MANUAL = "manual"
    EVENT = "event"


ALLOWED_TRANSITIONS: Dict[ExecutionStatus, frozenset] = {
    ExecutionStatus.PENDING: frozenset([ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED]),
    ExecutionStatus.RUNNING: frozenset([
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    ]),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}


@dataclass
class ExecutionRecord:
    """One run of a workflow's action graph."""
    workflow_id: str
    trigger_type: TriggerType
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    schedule_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    trigger_data: Dict[str, Any] = field(default_factory=dict)
    attempts_made: int = 0  # retries that preceded this attempt
    scheduled_for: Optional[datetime] = None  # when a pending retry becomes runnable
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def duration_ms(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds() * 1000
        return None

    def _transition(self, target: ExecutionStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStatusTransition(self.id, self.status.value, target.value)
        self.status = target

    def mark_running(self, now: Optional[datetime] = None) -> None:
        self._transition(ExecutionStatus.RUNNING)
        self.started_at = now or utcnow()

    def mark_completed(self, now: Optional[datetime] = None,
                       result: Optional[Dict[str, Any]] = None) -> None:
        self._transition(ExecutionStatus.COMPLETED)
        self.completed_at = now or utcnow()
        self.result = result

    def mark_failed(self, error: str, now: Optional[datetime] = None) -> None:
        self._transition(ExecutionStatus.FAILED)
        self.completed_at = now or utcnow()
        self.error = error

    def mark_cancelled(self, reason: str = "Cancelled", now: Optional[datetime] = None) -> None:
        self._transition(ExecutionStatus.CANCELLED)
        self.completed_at = now or utcnow()
        self.error = reason

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "id": self.id,
            "schedule_id": self.schedule_id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "trigger_type": self.trigger_type.value,
            "trigger_data": self.trigger_data,
            "attempts_made": self.attempts_made,
            "scheduled_for": format_datetime(self.scheduled_for),
            "started_at": format_datetime(self.started_at),
            "completed_at": format_datetime(self.completed_at),
            "duration_ms": self.duration_ms,
            "error": self.error,
            "result": self.result,
            "created_at": format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionRecord":
        """Create from dict."""
        return cls(
            id=data["id"],
            schedule_id=data.get("schedule_id"),
            workflow_id=data["workflow_id"],
            status=ExecutionStatus(data.get("status", "pending")),
            trigger_type=TriggerType(data["trigger_type"]),
            trigger_data=data.get("trigger_data") or {},
            attempts_made=data.get("attempts_made", 0),
            scheduled_for=parse_datetime(data.get("scheduled_for")),
            started_at=parse_datetime(data.get("started_at")),
            completed_at=parse_datetime(data.get("completed_at")),
            error=data.get("error"),
            result=data.get("result"),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
        )
