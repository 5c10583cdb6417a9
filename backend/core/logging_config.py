"""Structured logging for the workflow engine.

JSON lines in production, colored console output in development or when
``LOG_FORMAT=text``. Every entry carries the service name and environment
so engine logs can be told apart inside a host application's stream.
"""

import logging
import sys
from typing import Any, Optional

import structlog
from app.config import Settings, get_settings

# Libraries whose INFO output would drown out job lifecycle logs
QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")


def _service_info(settings: Settings):
    service = settings.APP_NAME
    environment = settings.ENVIRONMENT

    def add_service_info(logger: Any, method_name: str, event_dict: dict) -> dict:
        event_dict.setdefault("service", service)
        event_dict.setdefault("environment", environment)
        return event_dict

    return add_service_info


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure structlog and route stdlib loggers through it.

    Args:
        settings: Settings override; engine_lifespan passes its own
    """
    settings = settings or get_settings()

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        _service_info(settings),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.is_development or settings.LOG_FORMAT == "text":
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
        render_processors: list = [renderer]
    else:
        # Job failures are logged with exc_info; JSON needs the traceback as text
        render_processors = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Circuit breaker and condition warnings come through stdlib logging
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *render_processors,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
