"""Correlation ID based logging utilities for end-to-end payment tracing.

Provides structured logging with correlation IDs so a single challenge,
authorize, verify, settle cycle can be followed across the buyer, the seller
and the settlement authority. Reconciliation liabilities (funds that may have
moved without a receipt) are escalated on a dedicated logger.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Optional

# Context variable to store correlation ID for the current request/task
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

RECONCILIATION_LOGGER = "parallelpay.reconciliation"


class CorrelationIdFilter(logging.Filter):
    """Add correlation ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "no-correlation-id"
        return True


class JsonFormatter(logging.Formatter):
    """Render records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "correlation_id": getattr(record, "correlation_id", "no-correlation-id"),
            "name": record.name,
            "message": record.getMessage(),
        }
        details = getattr(record, "details", None)
        if details:
            payload["details"] = details
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level.upper()))

    # Remove existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] [%(correlation_id)s] %(name)s: %(message)s"
        )

    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())
    logger.addHandler(handler)


def set_correlation_id(correlation_id: str) -> None:
    """Set the correlation ID for the current context."""
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID, or None if not set."""
    return correlation_id_var.get()


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return f"corr-{uuid.uuid4().hex[:12]}"


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name (typically __name__)."""
    return logging.getLogger(name)


def log_reconciliation_alert(kind: str, **details: Any) -> None:
    """Escalate a payment that needs manual reconciliation.

    Logged at CRITICAL on the reconciliation logger so operators can route it
    separately from ordinary request failures. Nothing here retries or
    reconciles automatically.

    Args:
        kind: Short machine-readable alert kind, e.g. ``settlement_outcome_unknown``.
        **details: Context to attach (payer, transaction id, resource, error).
    """
    details["correlation_id"] = get_correlation_id()
    logging.getLogger(RECONCILIATION_LOGGER).critical(
        f"Reconciliation required: {kind}",
        extra={"details": details},
    )


class CorrelationIdContext:
    """Context manager for setting correlation ID in a block of code."""

    def __init__(self, correlation_id: Optional[str] = None):
        """Initialize the context manager.

        Args:
            correlation_id: The correlation ID to set. If None, generates a new one.
        """
        self.correlation_id = correlation_id or generate_correlation_id()
        self.previous_correlation_id: Optional[str] = None

    def __enter__(self) -> str:
        self.previous_correlation_id = get_correlation_id()
        set_correlation_id(self.correlation_id)
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.previous_correlation_id:
            set_correlation_id(self.previous_correlation_id)
        else:
            correlation_id_var.set(None)
