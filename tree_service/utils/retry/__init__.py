"""Async retry helpers used for database start-up."""

from __future__ import annotations

from tree_service.utils.retry.decorator import retry
from tree_service.utils.retry.exceptions import RetryError, RetryStatistics
from tree_service.utils.retry.strategies import RetryStrategy

__all__ = ["RetryError", "RetryStatistics", "RetryStrategy", "retry"]
