"""Structured logging configuration using *structlog*.

Log events carry identifiers, scores and counts.  Journal text is private:
any event field named in :data:`PRIVATE_FIELDS` is replaced before
rendering, so a stray ``text=`` keyword never reaches the log stream.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

PRIVATE_FIELDS: frozenset[str] = frozenset({"text", "query", "entry_text", "medication_notes"})
REDACTED = "[redacted]"


def redact_private_fields(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor: mask free-text fields, keep their length."""
    for key in PRIVATE_FIELDS.intersection(event_dict):
        value = event_dict[key]
        event_dict[key] = f"{REDACTED} ({len(value)} chars)" if isinstance(value, str) else REDACTED
    return event_dict


def setup_logging(level: str = "INFO") -> None:
    """Configure *structlog* processors and stdlib integration.

    Call once at application startup (API lifespan or CLI).
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            redact_private_fields,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer() if sys.stderr.isatty() else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
