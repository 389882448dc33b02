"""Schedule management routes."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query

from workflow_scheduler.core.config import Settings
from workflow_scheduler.core.container import container
from workflow_scheduler.core.logging import get_logger
from workflow_scheduler.models.payloads import SchedulePayload, ScheduleUpdatePayload, TogglePayload
from workflow_scheduler.services.scheduler import WorkflowScheduler
from workflow_scheduler.services.validation import validate_schedule_payload

logger = get_logger(__name__)
router = APIRouter(prefix="/api/schedules", tags=["schedules"])


def get_scheduler() -> WorkflowScheduler:
    return container.scheduler()


def get_settings() -> Settings:
    return container.settings()


@router.post("", status_code=201)
async def create_schedule(
    request: SchedulePayload,
    scheduler: WorkflowScheduler = Depends(get_scheduler),
    settings: Settings = Depends(get_settings)
):
    """Create a schedule and compute its first run."""
    schedule = await scheduler.create_schedule(request.to_schedule(settings.default_timezone))
    return {"success": True, "schedule": schedule.to_dict()}


@router.get("")
async def list_schedules(
    workflow_id: Optional[str] = Query(default=None),
    enabled: Optional[bool] = Query(default=None),
    scheduler: WorkflowScheduler = Depends(get_scheduler)
):
    schedules = await scheduler.list_schedules(workflow_id=workflow_id, enabled=enabled)
    return {
        "success": True,
        "schedules": [s.to_dict() for s in schedules],
        "count": len(schedules),
    }


@router.get("/stats")
async def get_stats(
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    scheduler: WorkflowScheduler = Depends(get_scheduler)
):
    """Execution aggregates and upcoming executions."""
    return {"success": True, "stats": await scheduler.get_stats(limit)}


@router.get("/status")
async def get_status(scheduler: WorkflowScheduler = Depends(get_scheduler)):
    return {"success": True, "status": scheduler.status()}


@router.post("/validate")
async def validate_schedule(
    payload: Dict[str, Any] = Body(...),
    settings: Settings = Depends(get_settings)
):
    """Dry-run validation; never persists."""
    return validate_schedule_payload(
        payload,
        default_timezone=settings.default_timezone,
        min_interval_warning_ms=settings.min_interval_warning_ms,
    )


@router.post("/tick")
async def run_tick(scheduler: WorkflowScheduler = Depends(get_scheduler)):
    """Run a single dispatch pass immediately."""
    summary = await scheduler.tick()
    return {"success": True, "tick": summary}


@router.get("/{schedule_id}")
async def get_schedule(schedule_id: str, scheduler: WorkflowScheduler = Depends(get_scheduler)):
    schedule = await scheduler.get_schedule(schedule_id)
    return {"success": True, "schedule": schedule.to_dict()}


@router.patch("/{schedule_id}")
async def update_schedule(
    schedule_id: str,
    request: ScheduleUpdatePayload,
    scheduler: WorkflowScheduler = Depends(get_scheduler)
):
    existing = await scheduler.get_schedule(schedule_id)
    schedule = await scheduler.update_schedule(schedule_id, request.to_changes(existing.timezone))
    return {"success": True, "schedule": schedule.to_dict()}


@router.post("/{schedule_id}/toggle")
async def toggle_schedule(
    schedule_id: str,
    request: Optional[TogglePayload] = None,
    scheduler: WorkflowScheduler = Depends(get_scheduler)
):
    """Set the enabled flag, or flip it when no flag is given."""
    enabled = request.enabled if request else None
    schedule = await scheduler.toggle_schedule(schedule_id, enabled)
    return {"success": True, "schedule": schedule.to_dict()}


@router.post("/{schedule_id}/execute")
async def force_execute(
    schedule_id: str,
    wait: bool = Query(default=False),
    scheduler: WorkflowScheduler = Depends(get_scheduler)
):
    """Dispatch now, bypassing next_run_at."""
    result = await scheduler.force_execute(schedule_id, wait=wait)
    return {"success": True, **result}


@router.delete("/{schedule_id}")
async def remove_schedule(schedule_id: str, scheduler: WorkflowScheduler = Depends(get_scheduler)):
    await scheduler.remove_schedule(schedule_id)
    return {"success": True, "schedule_id": schedule_id}
