"""
Structured logging configuration with correlation IDs and sequence context.
"""
import logging
import time
import uuid
from typing import Any, Dict, Optional
from contextlib import contextmanager
from contextvars import ContextVar
import structlog

# Context variables for request-scoped data
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
account_id_var: ContextVar[Optional[str]] = ContextVar('account_id', default=None)
sequence_id_var: ContextVar[Optional[str]] = ContextVar('sequence_id', default=None)
operator_id_var: ContextVar[Optional[str]] = ContextVar('operator_id', default=None)


def add_correlation_id(
    logger, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add correlation ID to log events."""
    correlation_id = correlation_id_var.get()
    if not correlation_id:
        correlation_id = str(uuid.uuid4())[:8]
        correlation_id_var.set(correlation_id)

    event_dict["correlation_id"] = correlation_id
    return event_dict


def add_sequence_context(
    logger, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add account, sequence and operator identifiers to log events."""
    account_id = account_id_var.get()
    if account_id and "account_id" not in event_dict:
        event_dict["account_id"] = account_id

    sequence_id = sequence_id_var.get()
    if sequence_id and "sequence_id" not in event_dict:
        event_dict["sequence_id"] = sequence_id

    operator_id = operator_id_var.get()
    if operator_id:
        event_dict["operator_id"] = operator_id

    return event_dict


def add_service_context(
    logger, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add service context to log events."""
    event_dict["service"] = "collections-sequencer"
    event_dict["version"] = "1.0.0"
    return event_dict


def add_timestamp(
    logger, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add ISO format timestamp to log events."""
    event_dict["timestamp"] = time.time()
    event_dict["iso_timestamp"] = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
    return event_dict


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging.

    Args:
        log_level: Minimum level for the standard library root logger
    """
    logging.basicConfig(format="%(message)s", level=getattr(logging, log_level.upper(), logging.INFO))

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        add_timestamp,
        add_service_context,
        add_sequence_context,
        add_correlation_id,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def get_business_logger() -> structlog.stdlib.BoundLogger:
    """Get a business event logger instance."""
    return structlog.get_logger("business")


def get_performance_logger() -> structlog.stdlib.BoundLogger:
    """Get a performance logger instance."""
    return structlog.get_logger("performance")


def set_correlation_id(correlation_id: str) -> None:
    """Set correlation ID in the current context."""
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    """Get correlation ID from current context."""
    return correlation_id_var.get()


@contextmanager
def correlation_context(correlation_id: str = None, account_id: str = None,
                        sequence_id: str = None, operator_id: str = None):
    """
    Context manager for setting correlation context.

    Args:
        correlation_id: Correlation ID for the request
        account_id: Account under collection
        sequence_id: Collection sequence identifier
        operator_id: Operator issuing a command
    """
    tokens = []
    try:
        if correlation_id:
            tokens.append((correlation_id_var, correlation_id_var.set(correlation_id)))
        if account_id:
            tokens.append((account_id_var, account_id_var.set(account_id)))
        if sequence_id:
            tokens.append((sequence_id_var, sequence_id_var.set(sequence_id)))
        if operator_id:
            tokens.append((operator_id_var, operator_id_var.set(operator_id)))

        yield

    finally:
        for var, token in reversed(tokens):
            var.reset(token)


@contextmanager
def performance_timing(operation_name: str, **context):
    """
    Context manager for timing operations.

    Args:
        operation_name: Name of the operation being timed
    """
    start_time = time.time()
    logger = get_performance_logger()

    try:
        yield

    finally:
        duration = time.time() - start_time
        logger.info(
            "Operation completed",
            operation=operation_name,
            duration_ms=round(duration * 1000, 2),
            **context
        )


def log_business_event(event_type: str, **kwargs):
    """
    Log a structured business event.

    Args:
        event_type: Type of business event
        **kwargs: Additional event data
    """
    logger = get_business_logger()
    logger.info("Business event", event_type=event_type, **kwargs)

