"""Service layer logging utilities.

Provides structured logging functions for service operations, enabling
consistent log format and context across reservation, workflow and
performance operations.

Usage:
    from atelier.services.logging_utils import get_service_logger, log_operation

    logger = get_service_logger(__name__)

    log_operation(
        logger,
        operation="reserve_for_order",
        outcome="success",
        order_id=12,
        reservation_count=3,
    )

    log_operation(
        logger,
        operation="reserve_for_order",
        outcome="insufficient_stock",
        level=logging.WARNING,
        order_id=12,
        material_id=4,
    )
"""

import logging
from typing import Any

# LogRecord attributes that cannot be overridden through ``extra``
_RESERVED_RECORD_KEYS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


def get_service_logger(name: str) -> logging.Logger:
    """
    Get a logger configured for service operations.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        Logger named 'atelier.services.<module>'

    Example:
        >>> logger = get_service_logger(__name__)
        >>> logger.name
        'atelier.services.reservation_service'
    """
    if "." in name:
        name = name.split(".")[-1]
    return logging.getLogger(f"atelier.services.{name}")


def log_operation(
    logger: logging.Logger,
    operation: str,
    outcome: str,
    level: int = logging.INFO,
    **context: Any,
) -> None:
    """
    Log a service operation with structured context.

    The context is passed via the 'extra' parameter for structured logging.
    Context keys that collide with LogRecord attributes are prefixed with
    'ctx_'.

    Args:
        logger: Logger instance to use
        operation: Operation name (e.g., "complete_stage", "sweep_expired")
        outcome: Outcome description (e.g., "success", "insufficient_stock")
        level: Log level (default: INFO)
        **context: Additional context fields (entity IDs, error details, etc.)
    """
    extra = {"operation": operation, "outcome": outcome}
    for key, value in context.items():
        if key in _RESERVED_RECORD_KEYS:
            key = f"ctx_{key}"
        extra[key] = value
    logger.log(level, f"{operation}: {outcome}", extra=extra)
