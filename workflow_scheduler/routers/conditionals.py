"""Conditional node evaluation routes."""

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends

from workflow_scheduler.core.container import container
from workflow_scheduler.core.logging import get_logger
from workflow_scheduler.models.conditions import ExecutionContext
from workflow_scheduler.models.payloads import ConditionalExecutePayload
from workflow_scheduler.services.conditions import ConditionalEngine, FailurePolicy
from workflow_scheduler.services.validation import validate_condition_payload

logger = get_logger(__name__)
router = APIRouter(prefix="/api/conditionals", tags=["conditionals"])


def get_engine() -> ConditionalEngine:
    return container.conditional_engine()


@router.post("/execute")
async def execute_conditional(
    request: ConditionalExecutePayload,
    engine: ConditionalEngine = Depends(get_engine)
):
    """Evaluate a conditional node against a context."""
    context = ExecutionContext.from_dict(request.context)
    result = await engine.evaluate_step(request.config, context, FailurePolicy(request.failure_policy))
    return {
        "success": result.error is None,
        "result": result.to_dict(),
        "context": context.to_dict(),
        "cache_stats": engine.cache_stats(),
    }


@router.post("/validate")
async def validate_conditional(payload: Dict[str, Any] = Body(...)):
    return validate_condition_payload(payload)


@router.get("/cache")
async def cache_stats(engine: ConditionalEngine = Depends(get_engine)):
    return {"success": True, "cache_stats": engine.cache_stats()}


@router.delete("/cache")
async def clear_cache(engine: ConditionalEngine = Depends(get_engine)):
    removed = engine.clear_cache()
    return {"success": True, "cleared": removed, "cache_stats": engine.cache_stats()}


@router.get("/operators")
async def get_operators(engine: ConditionalEngine = Depends(get_engine)):
    """Operator metadata for the UI."""
    return {"success": True, "operators": engine.get_available_operators()}
