"""Insert-time maintenance of the tree auxiliary structures.

``register_tree_events`` wires every tree model of a declarative base to
mapper events so the closure rows, nested-set bounds or materialized path
of a new entity are written in the same flush as the entity itself.
Changing the parent of a persisted entity is only allowed through
``TreeRepository.move``; any other parent change is rejected at flush.
Deletion is not maintained here; closure rows go away through their
``ON DELETE CASCADE`` foreign keys.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import Column, ForeignKeyConstraint, Index, Table, event
from sqlalchemy import inspect as sa_inspect

from tree_service.core.database.exceptions import InvalidMoveError, TreeConfigurationError
from tree_service.core.database.hierarchy.descriptor import (
    ANCESTOR_ROLE,
    CLOSURE_REFERENCES,
    CLOSURE_ROLE,
    DESCENDANT_ROLE,
    TreeEncoding,
    describe_tree,
)
from tree_service.core.database.hierarchy.strategies import strategy_for
from tree_service.core.database.validation import IdentifierValidationError, validate_identifier
from tree_service.core.settings import get_tree_settings

if TYPE_CHECKING:
    from collections.abc import Iterator

    from sqlalchemy import Connection
    from sqlalchemy.orm import Mapper, Session

    from tree_service.core.database.hierarchy.strategies import TreeStrategy
    from tree_service.core.settings import TreeSettings

logger = logging.getLogger(__name__)

_strategies: dict[type[Any], TreeStrategy] = {}

# Session.info key holding ids of entities whose parent may change in the current flush
REPARENT_INFO_KEY = "tree_service.reparenting"


def _strategy(model: type[Any]) -> TreeStrategy:
    for cls in model.__mro__:
        strategy = _strategies.get(cls)
        if strategy is not None:
            return strategy
    raise TreeConfigurationError(model.__name__, "tree events were not registered for this model")


def tree_before_insert(mapper: Mapper[Any], connection: Connection, target: Any) -> None:
    """Mapper ``before_insert`` hook."""
    _ = mapper
    _strategy(type(target)).on_before_insert(connection, target)


def tree_after_insert(mapper: Mapper[Any], connection: Connection, target: Any) -> None:
    """Mapper ``after_insert`` hook."""
    _ = mapper
    _strategy(type(target)).on_after_insert(connection, target)


def tree_before_update(mapper: Mapper[Any], connection: Connection, target: Any) -> None:
    """Mapper ``before_update`` hook: reject parent changes made outside a move."""
    _ = mapper, connection
    descriptor = _strategy(type(target)).descriptor
    state = sa_inspect(target)
    changed = [
        jc.attribute
        for jc in descriptor.parent_columns
        if jc.attribute and state.attrs[jc.attribute].history.has_changes()
    ]
    if not changed:
        return
    session = state.session
    if session is not None and id(target) in session.info.get(REPARENT_INFO_KEY, ()):
        return
    raise InvalidMoveError(
        descriptor.name,
        "parent changed outside TreeRepository.move",
        id=descriptor.identity(target),
        attributes=changed,
    )


@contextmanager
def reparenting(session: Session, entity: Any) -> Iterator[None]:
    """Allow ``entity``'s parent foreign key to change while the block runs."""
    allowed: set[int] = session.info.setdefault(REPARENT_INFO_KEY, set())
    allowed.add(id(entity))
    try:
        yield
    finally:
        allowed.discard(id(entity))


def closure_table_for(mapper: Mapper[Any], settings: TreeSettings) -> Table:
    """Return the closure junction table of a closure-table model, creating it if needed.

    The table is added to the entity table's metadata, so it is created by
    ``metadata.create_all`` and picked up by migration autogeneration.
    """
    model = mapper.class_
    entity_table = mapper.local_table
    metadata = entity_table.metadata

    try:
        name = validate_identifier(f"{entity_table.name}{settings.closure_table_suffix}", identifier_type="table")
        column_names = {
            (pk.key, role): validate_identifier(f"{pk.name}{suffix}", identifier_type="column")
            for pk in mapper.primary_key
            for role, suffix in (
                (ANCESTOR_ROLE, settings.ancestor_column_suffix),
                (DESCENDANT_ROLE, settings.descendant_column_suffix),
            )
        }
    except IdentifierValidationError as e:
        raise TreeConfigurationError(model.__name__, str(e)) from e

    key = f"{entity_table.schema}.{name}" if entity_table.schema else name
    existing = metadata.tables.get(key)
    if existing is not None:
        return existing

    columns = [
        Column(
            column_names[(pk.key, role)],
            pk.type,
            primary_key=True,
            autoincrement=False,
            info={CLOSURE_ROLE: role, CLOSURE_REFERENCES: pk.key},
        )
        for role in (ANCESTOR_ROLE, DESCENDANT_ROLE)
        for pk in mapper.primary_key
    ]
    # one composite constraint per role; composite keys reject per-column references
    foreign_keys = [
        ForeignKeyConstraint(
            [c for c in columns if c.info[CLOSURE_ROLE] == role],
            list(mapper.primary_key),
            ondelete="CASCADE",
        )
        for role in (ANCESTOR_ROLE, DESCENDANT_ROLE)
    ]
    descendant_columns = [c for c in columns if c.info[CLOSURE_ROLE] == DESCENDANT_ROLE]
    table = Table(
        name,
        metadata,
        *columns,
        *foreign_keys,
        Index(f"ix_{name}_descendant", *descendant_columns),
        schema=entity_table.schema,
    )
    logger.debug("Registered closure table %s for %s", name, model.__name__)
    return table


def register_tree_events(base_class: type, settings: TreeSettings | None = None) -> None:
    """Register tree maintenance events for every tree model of ``base_class``.

    Call this once after defining all models (before ``create_all``).
    Calling it again is harmless: tables and listeners are only added once.

    Args:
        base_class: SQLAlchemy declarative base class
        settings: Naming settings; defaults to ``get_tree_settings()``

    Raises:
        TreeConfigurationError: If a tree model lacks its parent relationship
            or an encoding column, or derived closure names are invalid.

    Example:
        from tree_service.core.database import Base
        from tree_service.core.database.hierarchy import register_tree_events

        # After defining all models
        register_tree_events(Base)
    """
    settings = settings or get_tree_settings()
    registry = getattr(base_class, "registry", None)
    if registry is None:
        return

    for mapper in list(registry.mappers):
        model_class = mapper.class_
        encoding = getattr(model_class, "__tree_encoding__", None)
        if encoding is None:
            continue
        # Subclasses share the listeners of their mapped tree base
        if mapper.inherits is not None and getattr(mapper.inherits.class_, "__tree_encoding__", None):
            continue

        if TreeEncoding(encoding) is TreeEncoding.CLOSURE_TABLE and model_class.__dict__.get("__closure_table__") is None:
            model_class.__closure_table__ = closure_table_for(mapper, settings)

        if model_class not in _strategies:
            _strategies[model_class] = strategy_for(describe_tree(model_class), settings, operation="register")

        if not event.contains(model_class, "before_insert", tree_before_insert):
            event.listen(model_class, "before_insert", tree_before_insert, propagate=True)
            event.listen(model_class, "after_insert", tree_after_insert, propagate=True)
            event.listen(model_class, "before_update", tree_before_update, propagate=True)
            logger.debug("Registered tree events for %s (%s)", model_class.__name__, encoding)


__all__ = [
    "REPARENT_INFO_KEY",
    "closure_table_for",
    "register_tree_events",
    "reparenting",
    "tree_after_insert",
    "tree_before_insert",
    "tree_before_update",
]
