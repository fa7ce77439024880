"""Structured logging for reconciliation events.

Every event is one JSON line. Events emitted while a checkout is being
handled carry its checkout_id and payment_reference through structlog
contextvars, so capture, verification and the later poll or drain can be
joined in the log stream.
"""
import logging
import sys
import uuid

import structlog

from payment_sync import config

SERVICE_NAME = "payment_sync"


def add_service(logger, method_name, event_dict):
    """Stamp the emitting service onto every event."""
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def setup_structured_logging(log_level: str = config.LOG_LEVEL):
    """
    Route structlog through stdlib logging with JSON output on stdout.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_service,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Module logger; pass __name__."""
    return structlog.get_logger(name)


def generate_checkout_id() -> str:
    """Id for one checkout attempt, e.g. ``chk-1a2b3c4d5e6f``."""
    return f"chk-{uuid.uuid4().hex[:12]}"


def bind_checkout(checkout_id: str, payment_reference: str):
    """Attach checkout identifiers to every event logged in this context."""
    structlog.contextvars.bind_contextvars(
        checkout_id=checkout_id,
        payment_reference=payment_reference,
    )


def clear_checkout():
    structlog.contextvars.clear_contextvars()
