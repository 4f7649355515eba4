"""Dialect capabilities used by the tree queries.

SQLAlchemy already renders most dialect differences; this module names the
three the tree code relies on so strategies never branch on the driver:

- ``starts_with``: prefix match rendered as ``LIKE <prefix> || '%'`` on
  SQLite and PostgreSQL and ``LIKE concat(<prefix>, '%')`` on MySQL
- ``quote_identifier``: identifier quoting for log output and raw SQL
- ``coerce_value``: normalize raw result values to the column's Python type
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import String, func, literal

if TYPE_CHECKING:
    from sqlalchemy import Column
    from sqlalchemy.engine import Dialect
    from sqlalchemy.sql import ColumnElement

logger = logging.getLogger(__name__)

LIKE_ESCAPE = "/"


def escape_like(prefix: ColumnElement[Any]) -> ColumnElement[Any]:
    """Escape LIKE wildcards inside a SQL string expression."""
    escaped = func.replace(prefix, LIKE_ESCAPE, LIKE_ESCAPE + LIKE_ESCAPE)
    escaped = func.replace(escaped, "%", LIKE_ESCAPE + "%")
    return func.replace(escaped, "_", LIKE_ESCAPE + "_")


def starts_with(expr: ColumnElement[Any], prefix: ColumnElement[Any] | str) -> ColumnElement[bool]:
    """Predicate: ``expr`` starts with ``prefix``.

    ``prefix`` may be a Python string or any SQL expression, including a
    correlated scalar sub-query. Wildcards inside the prefix are escaped, so
    the default composite-key separator ``_`` matches literally.
    """
    if isinstance(prefix, str):
        return expr.startswith(prefix, autoescape=True)
    return expr.startswith(escape_like(prefix), escape=LIKE_ESCAPE)


def concat(prefix: str, expr: ColumnElement[Any]) -> ColumnElement[str]:
    """``prefix || expr`` (``concat()`` where the dialect requires it)."""
    return literal(prefix, String) + expr


def quote_identifier(dialect: Dialect, name: str) -> str:
    """Quote ``name`` for ``dialect`` if it needs quoting."""
    return dialect.identifier_preparer.quote(name)


def coerce_value(column: Column[Any], value: Any) -> Any:
    """Coerce a raw result value to the column's declared Python type.

    Some drivers hand back integers as strings or Decimals (and SQLite keeps
    whatever was stored); relation map lookups compare keys for equality, so
    both sides must share a type. Values of types without a known Python
    equivalent pass through unchanged.
    """
    if value is None:
        return None
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return value
    if isinstance(value, python_type):
        return value
    try:
        return python_type(value)
    except (TypeError, ValueError):
        logger.debug(
            "Could not coerce %r to %s for column %s",
            value,
            python_type.__name__,
            column.key,
        )
        return value


__all__ = [
    "LIKE_ESCAPE",
    "coerce_value",
    "concat",
    "escape_like",
    "quote_identifier",
    "starts_with",
]
