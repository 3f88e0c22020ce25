"""
Structured logging for the coach service.

Every entry is a JSON object (or a console line in development) carrying:
- timestamp (ISO 8601)
- level
- service
- trace_id / request_id when handling an HTTP request
- conversation_id when a coach pipeline run is in progress

Credentials are never passed to the logger; provider adapters are logged by
provider name and model only.

Environment configuration (read by main.py):
- LOG_LEVEL: DEBUG | INFO | WARNING | ERROR (default: INFO)
- LOG_JSON: "true" for JSON output, "false" for console output (default: true)
"""
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from structlog.types import Processor

trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
conversation_id_var: ContextVar[Optional[str]] = ContextVar("conversation_id", default=None)

SERVICE_NAME = "aria_coach"


def add_request_context(
    logger: structlog.BoundLogger,
    method_name: str,
    event_dict: Dict[str, Any],
) -> Dict[str, Any]:
    """Attach trace/request/conversation ids and the service name to an entry."""
    for key, var in (
        ("trace_id", trace_id_var),
        ("request_id", request_id_var),
        ("conversation_id", conversation_id_var),
    ):
        value = var.get()
        if value:
            event_dict[key] = value

    event_dict["service"] = SERVICE_NAME
    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    service_name: Optional[str] = None,
    json_output: bool = True,
) -> None:
    """
    Configure structlog on top of the standard library logging module.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        service_name: Overrides SERVICE_NAME when given
        json_output: JSON lines when True, colored console output otherwise
    """
    global SERVICE_NAME
    if service_name:
        SERVICE_NAME = service_name

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_request_context,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Return a structlog logger, typically ``get_logger(__name__)``."""
    return structlog.get_logger(name)


def set_trace_id(trace_id: Optional[str]) -> None:
    trace_id_var.set(trace_id)


def get_trace_id() -> Optional[str]:
    return trace_id_var.get()


def set_request_id(request_id: Optional[str]) -> None:
    request_id_var.set(request_id)


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def set_conversation_id(conversation_id: Optional[str]) -> None:
    conversation_id_var.set(conversation_id)


def get_conversation_id() -> Optional[str]:
    return conversation_id_var.get()


def generate_trace_id() -> str:
    """New UUID4 trace id."""
    return str(uuid.uuid4())


def generate_request_id() -> str:
    """New UUID4 request id."""
    return str(uuid.uuid4())
