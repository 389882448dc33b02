"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from workflow_scheduler.core.config import Settings
from workflow_scheduler.core.database import Database
from workflow_scheduler.core.store import InMemoryScheduleStore
from workflow_scheduler.services.conditions import ConditionalEngine
from workflow_scheduler.services.runner import HttpExecutionRunner, NullExecutionRunner
from workflow_scheduler.services.scheduler import WorkflowScheduler
from workflow_scheduler.services.triggers import TriggerSystem


def create_store(settings: Settings):
    """SQLModel database when persistence=database, otherwise in-memory."""
    if settings.uses_database:
        return Database(settings)
    return InMemoryScheduleStore()


def create_runner(settings: Settings):
    """HTTP runner when RUNNER_URL is set, otherwise the no-op runner."""
    if settings.runner_url:
        return HttpExecutionRunner(settings.runner_url, timeout=settings.execution_timeout)
    return NullExecutionRunner()


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Persistence collaborator
    store = providers.Singleton(
        create_store,
        settings=settings
    )

    # Execution Runner collaborator
    runner = providers.Singleton(
        create_runner,
        settings=settings
    )

    # Services
    conditional_engine = providers.Singleton(
        ConditionalEngine,
        max_cache_entries=settings.provided.condition_cache_max_entries
    )

    trigger_system = providers.Singleton(
        TriggerSystem,
        store=store,
        runner=runner,
        execution_timeout=settings.provided.execution_timeout,
        cancel_grace=settings.provided.execution_cancel_grace
    )

    scheduler = providers.Singleton(
        WorkflowScheduler,
        store=store,
        trigger_system=trigger_system,
        conditional_engine=conditional_engine,
        poll_interval=settings.provided.scheduler_poll_interval,
        max_concurrent_dispatches=settings.provided.max_concurrent_dispatches,
        default_timezone=settings.provided.default_timezone,
        upcoming_limit=settings.provided.upcoming_limit
    )


# Global container instance
container = Container()
