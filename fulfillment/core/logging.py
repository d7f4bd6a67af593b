"""structlog setup shared by the worker processes and the ops API.

Every record, ours or a library's (aiokafka, SQLAlchemy, uvicorn), goes
through one ProcessorFormatter: JSON lines in production, ConsoleRenderer
when debugging.

Two sources of correlation ids:
  - workers bind the event's ids with ``event_context`` while a record is
    being handled
  - the ops API gets X-Request-ID from asgi-correlation-id
"""

import logging
import logging.config
from contextlib import contextmanager

import structlog
from asgi_correlation_id.context import correlation_id

# Chatty libraries kept at WARNING unless debugging
NOISY_LOGGERS = ("aiokafka", "httpx", "uvicorn.access", "sqlalchemy.engine")


def add_correlation_id(logger, method, event_dict):
    """Fall back to the HTTP request id when no event correlation id is bound."""
    if "correlation_id" not in event_dict:
        request_id = correlation_id.get(None)
        if request_id:
            event_dict["correlation_id"] = request_id
    return event_dict


@contextmanager
def event_context(envelope, stage: str):
    """Bind the envelope's ids to every log line emitted while it is handled."""
    with structlog.contextvars.bound_contextvars(
        correlation_id=envelope.correlation_id,
        event_id=envelope.event_id,
        event_type=envelope.type,
        stage=stage,
    ):
        yield


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_correlation_id,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Install the structlog processor chain and the stdlib bridge.

    Entry points call this before importing the rest of the package:
    loggers created earlier keep whatever chain was configured at first use.
    """
    processors = _shared_processors()
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    quiet_level = log_level if log_level == "DEBUG" else "WARNING"

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structlog": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    renderer,
                ],
                "foreign_pre_chain": processors,
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "formatter": "structlog",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["stdout"], "level": log_level},
        "loggers": {name: {"level": quiet_level} for name in NOISY_LOGGERS},
    })

    structlog.configure(
        processors=processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
