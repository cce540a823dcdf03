"""
Structured logging for the market data client.

Log records are rendered as JSON on stderr so that stdout stays free for
the command line's own output. Each record carries the component that
emitted it plus the correlation ids bound in the current context.
"""

import sys
import structlog
import logging
import uuid
from typing import Any, Dict, Optional
from contextvars import ContextVar

ROOT_LOGGER = "market_client"

# Correlation ids
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
client_id_var: ContextVar[Optional[str]] = ContextVar('client_id', default=None)


def configure_logging(root_logger: str = ROOT_LOGGER, log_level: str = "info") -> None:
    """Route structlog through stdlib logging and emit JSON lines on stderr."""
    level = getattr(logging, log_level.upper())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            add_component,
            add_correlation_context,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)
    logging.getLogger(root_logger).setLevel(level)


def add_component(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Name the emitting component, e.g. ``stream.client`` for ``market_client.stream.client``."""
    name = event_dict.get("logger", "")
    prefix = ROOT_LOGGER + "."
    if name.startswith(prefix):
        event_dict["component"] = name[len(prefix):]
    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Attach the request id and the server-assigned stream connection id, when bound."""
    for key, var in (("request_id", request_id_var), ("client_id", client_id_var)):
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind a request id for the current task, generating one when absent."""
    request_id = request_id or uuid.uuid4().hex
    request_id_var.set(request_id)
    return request_id


def set_client_id(client_id: Optional[str]) -> None:
    client_id_var.set(client_id)


def clear_context() -> None:
    request_id_var.set(None)
    client_id_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)
