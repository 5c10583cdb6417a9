"""Workflow Execution Engine - process bootstrap.

Host applications embed the engine through ``engine_lifespan``:

    async with engine_lifespan(data_layer=db, notification_service=notifier) as manager:
        manager.register_workflow(definition)
        ...
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog

from app.config import Settings, get_settings
from core.logging_config import setup_logging
from workflow.manager import WorkflowManager
from workflow.ports import DataLayer, EmailService, NotificationService, PluginRegistry

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def engine_lifespan(
    data_layer: Optional[DataLayer] = None,
    notification_service: Optional[NotificationService] = None,
    email_service: Optional[EmailService] = None,
    plugin_registry: Optional[PluginRegistry] = None,
    settings: Optional[Settings] = None,
) -> AsyncIterator[WorkflowManager]:
    """Engine startup and shutdown."""
    settings = settings or get_settings()
    setup_logging(settings)

    manager = WorkflowManager(
        data_layer=data_layer,
        notification_service=notification_service,
        email_service=email_service,
        plugin_registry=plugin_registry,
        settings=settings,
    )
    logger.info(
        "Engine started",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        max_concurrent=manager.queue.options.max_concurrent,
    )
    try:
        yield manager
    finally:
        await manager.shutdown(settings.WORKFLOW_JOB_TIMEOUT_MS)
        logger.info("Engine shut down")
