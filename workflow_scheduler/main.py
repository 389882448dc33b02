"""
FastAPI service for the workflow scheduling and trigger-execution engine.

Services are wired through the dependency injection container and started in
the application lifespan.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, ORJSONResponse
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from workflow_scheduler import __version__
from workflow_scheduler.core.container import container
from workflow_scheduler.core.exceptions import SchedulerError
from workflow_scheduler.core.logging import configure_logging, get_logger
from workflow_scheduler.routers import conditionals, schedules, triggers
from workflow_scheduler.services.validation import field_errors

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)

# Suppress noisy loggers
logging.getLogger("uvicorn").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("uvicorn.error").setLevel(logging.WARNING)
logging.getLogger("watchfiles").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting workflow scheduler service")

    app_settings = container.settings()
    await container.store().startup()

    scheduler = container.scheduler()
    if app_settings.scheduler_autostart:
        await scheduler.start()

    logger.info("Services started successfully",
                persistence=app_settings.persistence,
                scheduler_running=scheduler.is_running)
    yield

    # Shutdown
    await scheduler.stop()
    await container.store().shutdown()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Workflow Scheduler",
    version=__version__,
    description="Timezone-aware workflow scheduling, trigger execution and conditional evaluation",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled exception",
                         error_type=type(e).__name__,
                         error=str(e),
                         path=request.url.path,
                         exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


app.add_middleware(CatchAllExceptionsMiddleware)


@app.exception_handler(SchedulerError)
async def scheduler_error_handler(request: Request, exc: SchedulerError):
    """Map the scheduler exception hierarchy onto HTTP status codes."""
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, error=exc.message)
    else:
        logger.info("Request rejected", path=request.url.path,
                    error_type=exc.error_type, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    """Payloads validated inside handlers (condition configs) report per-field errors."""
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": "validation_error",
            "errors": field_errors(exc),
        }
    )


# Include routers
app.include_router(schedules.router)
app.include_router(conditionals.router)
app.include_router(triggers.router)


@app.get("/health")
async def health_check():
    """Detailed health check."""
    scheduler = container.scheduler()
    app_settings = container.settings()

    return {
        "status": "OK",
        "service": "workflow-scheduler",
        "version": __version__,
        "environment": "development" if app_settings.is_development else "production",
        "persistence": app_settings.persistence,
        "scheduler": scheduler.status(),
        "condition_cache": container.conditional_engine().cache_stats(),
        "timestamp": datetime.now().isoformat()
    }


def run() -> None:
    """Console entry point."""
    import uvicorn

    logger.info("Starting workflow scheduler service",
                host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "workflow_scheduler.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
