"""
Structured logging for the API and the workers.

structlog events carry the request id bound by the API middleware (or the
worker name) through contextvars. Gateway secrets never reach the output.
"""
import logging
import sys
from typing import Any, MutableMapping, Optional

import structlog
from pythonjsonlogger import jsonlogger

from pod_booking.config import get_settings

REDACTED = "***"

# Event keys whose values are signatures or signing material.
SECRET_KEYS = frozenset(
    {
        "vnp_SecureHash",
        "vnp_hash_secret",
        "hash_secret",
        "secure_hash",
    }
)

QUIET_LOGGERS = ("sqlalchemy.engine", "asyncio", "httpx", "httpcore")


def add_service_context(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    settings = get_settings()
    event_dict.setdefault("service", settings.app_name)
    event_dict["app_env"] = settings.app_env
    if settings.is_sandbox:
        event_dict["gateway"] = "vnpay-sandbox"
    return event_dict


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: REDACTED if k in SECRET_KEYS else _redact(v) for k, v in value.items()}
    return value


def redact_gateway_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask signatures, including inside logged callback parameter dicts."""
    for key in list(event_dict):
        if key in SECRET_KEYS:
            event_dict[key] = REDACTED
        else:
            event_dict[key] = _redact(event_dict[key])
    return event_dict


def setup_logging(service: Optional[str] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    JSON output goes to stdout through python-json-logger, so records from
    uvicorn and sqlalchemy share the shape of our own events. With
    ``LOG_JSON=false`` events render for a terminal instead.

    Args:
        service: Name bound to every event of this process (api, outbox, expiry)
    """
    settings = get_settings()

    renderer: Any
    if settings.log_json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_service_context,
            redact_gateway_secrets,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if service:
        structlog.contextvars.bind_contextvars(service=service)

    handler = logging.StreamHandler(sys.stdout)
    if settings.log_json:
        handler.setFormatter(
            jsonlogger.JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s",
                rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
            )
        )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        json=settings.log_json,
    )


def get_logger(name: str, **initial_values: Any) -> Any:
    """A structlog logger with values bound up front."""
    return structlog.get_logger(name, **initial_values)
