"""Manual, webhook and event triggers plus execution history routes."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query, Request

from workflow_scheduler.core.container import container
from workflow_scheduler.core.logging import get_logger
from workflow_scheduler.models.execution import ExecutionStatus
from workflow_scheduler.models.payloads import TriggerPayload
from workflow_scheduler.services.scheduler import WorkflowScheduler
from workflow_scheduler.services.triggers import TriggerSystem

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["triggers"])

# Forwarded to the runner as part of the webhook trigger data
FORWARDED_HEADERS = ("content-type", "user-agent", "x-request-id", "x-webhook-id")


def get_trigger_system() -> TriggerSystem:
    return container.trigger_system()


def get_scheduler() -> WorkflowScheduler:
    return container.scheduler()


@router.post("/triggers/manual/{workflow_id}")
async def trigger_manual(
    workflow_id: str,
    request: Optional[TriggerPayload] = None,
    triggers: TriggerSystem = Depends(get_trigger_system)
):
    """Run a workflow now and return its finished execution record."""
    record = await triggers.handle_manual(workflow_id, request.payload if request else None)
    return {"success": True, "execution": record.to_dict()}


@router.post("/triggers/webhook/{workflow_id}")
async def trigger_webhook(
    workflow_id: str,
    http_request: Request,
    payload: Optional[Dict[str, Any]] = Body(default=None),
    triggers: TriggerSystem = Depends(get_trigger_system)
):
    headers = {k: v for k, v in http_request.headers.items() if k.lower() in FORWARDED_HEADERS}
    record = await triggers.handle_webhook(workflow_id, payload or {}, headers)
    return {"success": True, "execution": record.to_dict()}


@router.post("/triggers/events/{event_name}")
async def fire_event(
    event_name: str,
    payload: Optional[Dict[str, Any]] = Body(default=None),
    scheduler: WorkflowScheduler = Depends(get_scheduler)
):
    """Dispatch every enabled event schedule listening for ``event_name``."""
    result = await scheduler.fire_event(event_name, payload or {})
    return {"success": True, **result}


@router.get("/executions")
async def list_executions(
    workflow_id: Optional[str] = Query(default=None),
    schedule_id: Optional[str] = Query(default=None),
    status: Optional[ExecutionStatus] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    triggers: TriggerSystem = Depends(get_trigger_system)
):
    records = await triggers.list_executions(workflow_id, schedule_id, status, limit)
    return {
        "success": True,
        "executions": [r.to_dict() for r in records],
        "count": len(records),
    }


@router.get("/executions/{execution_id}")
async def get_execution(execution_id: str, triggers: TriggerSystem = Depends(get_trigger_system)):
    record = await triggers.get_execution(execution_id)
    return {"success": True, "execution": record.to_dict()}


@router.post("/executions/{execution_id}/cancel")
async def cancel_execution(execution_id: str, triggers: TriggerSystem = Depends(get_trigger_system)):
    """Signal a running execution to stop, or cancel a pending retry."""
    record = await triggers.cancel_execution(execution_id)
    return {"success": True, "execution": record.to_dict()}
