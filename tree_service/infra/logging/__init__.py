"""Logging infrastructure.

Provides structured logging with:
- JSONL format for log aggregation
- QueueHandler + QueueListener for non-blocking I/O
- Lazy evaluation for expensive debug messages

Basic usage:
    import logging

    from tree_service.infra.logging import get_lazy_logger, setup_logging

    setup_logging()
    logger = logging.getLogger(__name__)
    logger.info("Tree entity moved", extra={"entity": "Category"})

    lazy_logger = get_lazy_logger(__name__)
    lazy_logger.debug(lambda: f"Plan: {describe(plan)}")  # Only runs if DEBUG enabled
"""

from tree_service.infra.logging.config import (
    configure_logging,
    setup_logging,
    shutdown,
)
from tree_service.infra.logging.formatters import JSONFormatter
from tree_service.infra.logging.lazy import (
    LazyLoggerAdapter,
    LazyString,
    get_lazy_logger,
    lazy,
)

__all__ = [
    "JSONFormatter",
    "LazyLoggerAdapter",
    "LazyString",
    "configure_logging",
    "get_lazy_logger",
    "lazy",
    "setup_logging",
    "shutdown",
]
