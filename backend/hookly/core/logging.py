"""Structured logging for the billing service.

structlog is configured once at startup with a stdlib bridge, so library logs
(uvicorn, SQLAlchemy, httpx) come out in the same format:
- JSON lines in production, ConsoleRenderer when debug is on
- correlation_id from asgi-correlation-id on every entry
- webhook context (provider, external_id) bound per delivery via contextvars
"""

import logging
import logging.config

import structlog
from asgi_correlation_id.context import correlation_id


def add_correlation_id(logger, method, event_dict):
    """Inject correlation_id from the asgi-correlation-id context into every log entry."""
    cid = correlation_id.get(None)
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structlog and route stdlib logging through the same renderer.

    Must run before the first structlog logger is used, because the processor
    chain is cached on first use.

    Args:
        log_level: Root log level ("DEBUG", "INFO", "WARNING", "ERROR")
        json_logs: True for JSON output, False for ConsoleRenderer
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_correlation_id,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    renderer,
                ],
                "foreign_pre_chain": shared_processors,
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["default"], "level": log_level},
        "loggers": {
            "uvicorn.access": {"level": "WARNING"},
            "sqlalchemy.engine": {"level": "WARNING"},
            "httpx": {"level": "WARNING"},
            "botocore": {"level": "WARNING"},
        },
    })

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def webhook_log_context(provider: str, external_id: str, event_type: str):
    """Bind webhook identifiers to every log line emitted inside the block."""
    return structlog.contextvars.bound_contextvars(
        provider=provider,
        external_id=external_id,
        event_type=event_type,
    )
