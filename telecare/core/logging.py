import logging
import logging.config
import sys
from typing import Any, Dict, List

import sentry_sdk
import structlog
from structlog.types import EventDict, WrappedLogger

from telecare.core.config import settings

# Third-party loggers and the floor each one is held to
LIBRARY_LOG_LEVELS: Dict[str, str] = {
    "uvicorn": "INFO",
    "uvicorn.error": "INFO",
    "uvicorn.access": "INFO",
    "websockets": "WARNING",
    "pymongo": "WARNING",
    "httpx": "WARNING",
}

CREDENTIAL_KEYS = frozenset({"token", "authorization", "ingest_key", "x_ingest_key"})
REDACTED = "[redacted]"


def add_service_context(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", settings.PROJECT_NAME)
    if settings.ENVIRONMENT:
        event_dict.setdefault("environment", settings.ENVIRONMENT)
    return event_dict


def redact_credentials(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Bearer tokens and ingest keys never reach a log sink."""
    for key in CREDENTIAL_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def _renderer() -> structlog.types.Processor:
    if settings.ENVIRONMENT in ("local", "dev"):
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def _init_sentry() -> None:
    if not settings.SENTRY_DSN:
        return
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT or None,
        traces_sample_rate=1.0 if settings.ENVIRONMENT == "local" else 0.1,
        # Alerts carry patient vitals
        send_default_pii=False,
    )


def setup_logging() -> None:
    """
    Route service, uvicorn and client-library logs through one structlog formatter.

    Console output locally, JSON elsewhere. Credentials are redacted before rendering.
    """
    _init_sentry()

    pre_chain: List[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        add_service_context,
        redact_credentials,
    ]
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    loggers: Dict[str, Any] = {
        name: {"handlers": ["stdout"], "level": level, "propagate": False}
        for name, level in LIBRARY_LOG_LEVELS.items()
    }
    loggers[""] = {"handlers": ["stdout"], "level": settings.LOG_LEVEL}
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structured": {
                    "()": structlog.stdlib.ProcessorFormatter,
                    "processor": _renderer(),
                    "foreign_pre_chain": pre_chain,
                },
            },
            "handlers": {
                "stdout": {
                    "level": settings.LOG_LEVEL,
                    "class": "logging.StreamHandler",
                    "stream": sys.stdout,
                    "formatter": "structured",
                },
            },
            "loggers": loggers,
        }
    )


def bind_connection_context(connection_id: str, **values: Any) -> None:
    """Bind WebSocket session identifiers so every log line of the session carries them."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(connection_id=connection_id, **values)
