"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.cache import CacheService
from services.config_store import WorkflowConfigStore
from services.execution import ChainExecutor
from services.handlers import SheetsClient
from services.node_executor import build_node_registry
from services.queue import (
    StalledJobSweeper,
    Worker,
    WorkflowProcessor,
    WorkflowQueue,
    WorkflowScheduler,
)
from services.status_broadcaster import JobEventBridge
from services.workflow import WorkflowService


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Cache service (uses Redis when enabled, process memory otherwise)
    cache = providers.Singleton(
        CacheService,
        settings=settings
    )

    # Storage
    config_store = providers.Singleton(
        WorkflowConfigStore,
        cache=cache
    )

    queue = providers.Singleton(
        WorkflowQueue,
        cache=cache,
        settings=settings
    )

    scheduler = providers.Singleton(
        WorkflowScheduler,
        queue=queue,
        config_store=config_store
    )

    # Execution
    sheets_client = providers.Singleton(
        SheetsClient,
        service_account_file=settings.provided.google_service_account_file
    )

    node_registry = providers.Singleton(
        build_node_registry,
        settings=settings,
        sheets_client=sheets_client
    )

    chain_executor = providers.Singleton(
        ChainExecutor,
        registry=node_registry
    )

    processor = providers.Singleton(
        WorkflowProcessor,
        config_store=config_store,
        executor=chain_executor,
        sheets_client=sheets_client,
        read_range=settings.provided.sheets_read_range
    )

    # Events
    event_bridge = providers.Singleton(
        JobEventBridge,
        cache=cache,
        channel=settings.provided.events_channel
    )

    # Worker side
    worker = providers.Singleton(
        Worker,
        queue=queue,
        processor=processor,
        bridge=event_bridge,
        concurrency=settings.provided.worker_concurrency,
        poll_interval=settings.provided.worker_poll_interval
    )

    stalled_sweeper = providers.Singleton(
        StalledJobSweeper,
        queue=queue,
        bridge=event_bridge,
        sweep_interval=settings.provided.stalled_sweep_interval
    )

    # Services
    workflow_service = providers.Singleton(
        WorkflowService,
        scheduler=scheduler,
        queue=queue,
        registry=node_registry,
        settings=settings
    )


# Global container instance
container = Container()
