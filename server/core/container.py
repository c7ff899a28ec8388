"""Dependency injection container for the application."""

import httpx
from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cache import CacheService
from services.crm import InMemoryCRMGateway
from services.handlers import build_handler_registry
from services.playbooks.cache import RunStore
from services.playbooks.conditions import ConditionEvaluator
from services.playbooks.dispatcher import ActionDispatcher
from services.playbooks.engine import PlaybookEngine
from services.playbooks.recovery import RecoverySweeper, ResumeScheduler
from services.playbooks.registry import NodeTypeRegistry
from services.playbooks.simulator import Simulator
from services.playbooks.triggers import TriggerManager


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Storage
    database = providers.Singleton(
        Database,
        settings=settings
    )

    cache = providers.Singleton(
        CacheService,
        settings=settings,
        database=database
    )

    run_store = providers.Singleton(
        RunStore,
        cache_service=cache,
        finished_ttl=settings.provided.run_state_ttl
    )

    # Node catalog and evaluation
    registry = providers.Singleton(
        NodeTypeRegistry,
        max_loop_iterations=settings.provided.max_loop_iterations
    )

    evaluator = providers.Singleton(
        ConditionEvaluator,
        timezone_name=settings.provided.business_timezone
    )

    # Action handlers
    crm = providers.Singleton(
        InMemoryCRMGateway
    )

    http_client = providers.Singleton(
        httpx.AsyncClient,
        timeout=settings.provided.webhook_timeout
    )

    handlers = providers.Singleton(
        build_handler_registry,
        crm=crm,
        settings=settings,
        http_client=http_client
    )

    dispatcher = providers.Singleton(
        ActionDispatcher,
        handlers=handlers,
        evaluator=evaluator,
        default_timeout=settings.provided.action_timeout
    )

    # Engine
    engine = providers.Singleton(
        PlaybookEngine,
        store=database,
        run_store=run_store,
        dispatcher=dispatcher,
        evaluator=evaluator,
        registry=registry
    )

    resume_scheduler = providers.Singleton(
        ResumeScheduler,
        resume_callback=engine.provided.resume_run
    )

    recovery_sweeper = providers.Singleton(
        RecoverySweeper,
        engine=engine,
        run_store=run_store,
        resume_scheduler=resume_scheduler,
        sweep_interval=settings.provided.recovery_sweep_interval
    )

    trigger_manager = providers.Singleton(
        TriggerManager,
        engine=engine,
        store=database,
        timezone=settings.provided.business_timezone
    )

    simulator = providers.Singleton(
        Simulator,
        registry=registry,
        evaluator=evaluator,
        dispatcher=dispatcher,
        failure_rate=settings.provided.simulator_failure_rate
    )


# Global container instance
container = Container()
