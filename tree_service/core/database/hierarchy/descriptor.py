"""Per-model description of a tree declaration.

``describe_tree`` inspects the SQLAlchemy mapper of a model once and
records everything the tree strategies need: the declared encoding, the
primary key, the parent foreign key and the columns of whichever auxiliary
structure the encoding uses (closure junction table, nested-set bounds,
materialized path).
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from functools import cache
from typing import TYPE_CHECKING, Any

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import Mapper

from tree_service.core.database.exceptions import TreeConfigurationError, UnsupportedTreeOperationError
from tree_service.core.settings import get_tree_settings

if TYPE_CHECKING:
    from sqlalchemy import Column, Table


class TreeEncoding(enum.StrEnum):
    """Physical encoding of a tree model, fixed at declaration time."""

    CLOSURE_TABLE = "closure-table"
    NESTED_SET = "nested-set"
    MATERIALIZED_PATH = "materialized-path"


# Column.info keys marking the role of a closure junction column
CLOSURE_ROLE = "tree_role"
CLOSURE_REFERENCES = "tree_references"
ANCESTOR_ROLE = "ancestor"
DESCENDANT_ROLE = "descendant"


@dataclass(frozen=True, slots=True)
class JoinColumn:
    """A local column paired with the entity column it references.

    ``attribute`` is the mapped attribute key of ``column`` when the column
    belongs to the entity itself (parent foreign keys), else None.
    """

    column: Column[Any]
    referenced: Column[Any]
    attribute: str | None = None

    @property
    def label_key(self) -> str:
        """Name used in result labels: attribute key, falling back to the database name."""
        return self.attribute or self.column.key or self.column.name


@dataclass(frozen=True, slots=True)
class ClosureJunction:
    """Closure table plus its ancestor/descendant column sets."""

    table: Table
    ancestors: tuple[JoinColumn, ...]
    descendants: tuple[JoinColumn, ...]


@dataclass(frozen=True, slots=True)
class TreeDescriptor:
    """What the tree machinery knows about one model."""

    model: type[Any]
    encoding: TreeEncoding | None
    table: Table
    primary_key: tuple[Column[Any], ...]
    pk_attributes: tuple[str, ...]
    parent_relationship: str | None = None
    children_attribute: str | None = None
    parent_columns: tuple[JoinColumn, ...] = ()
    closure: ClosureJunction | None = None
    nested_set_left: Column[Any] | None = None
    nested_set_right: Column[Any] | None = None
    materialized_path: Column[Any] | None = None
    path_separator: str = "."
    path_key_separator: str = "_"

    @property
    def name(self) -> str:
        return self.model.__name__

    @property
    def is_tree(self) -> bool:
        return self.encoding is not None

    def require(self, operation: str) -> TreeEncoding:
        """Return the encoding or raise if the model is not a tree."""
        if self.encoding is None:
            raise UnsupportedTreeOperationError(self.name, operation)
        return self.encoding

    def attribute_for(self, column: Column[Any]) -> str:
        """Mapped attribute key of an entity column."""
        mapper: Mapper[Any] = sa_inspect(self.model)
        return mapper.get_property_by_column(column).key

    def get_value(self, entity: Any, column: Column[Any]) -> Any:
        """Current in-memory value of ``column`` on ``entity``."""
        return getattr(entity, self.attribute_for(column))

    def identity(self, entity: Any) -> tuple[Any, ...]:
        """Primary key tuple of ``entity`` (None members when not yet flushed)."""
        return tuple(getattr(entity, attr) for attr in self.pk_attributes)

    def is_persisted(self, entity: Any) -> bool:
        return all(v is not None for v in self.identity(entity))

    def parent_identity(self, entity: Any) -> tuple[Any, ...] | None:
        """Primary key of the entity's parent, or None for a root.

        Reads the foreign key columns first. When they are unset but the
        parent relationship holds an object in memory (e.g. a parent that
        was assigned before flush), that object's key is used instead. The
        relationship is never lazy-loaded here.
        """
        values = tuple(getattr(entity, jc.attribute) for jc in self.parent_columns if jc.attribute)
        if values and all(v is not None for v in values):
            # FK order follows parent_columns; reorder to the referenced PK order
            by_ref = {jc.referenced.key: v for jc, v in zip(self.parent_columns, values, strict=True)}
            return tuple(by_ref[pk.key] for pk in self.primary_key)

        if self.parent_relationship is not None:
            parent = sa_inspect(entity).dict.get(self.parent_relationship)
            if parent is not None:
                key = self.identity(parent)
                if all(v is not None for v in key):
                    return key
        return None

    def set_parent_identity(self, entity: Any, key: tuple[Any, ...] | None) -> None:
        """Write the parent foreign key columns (None detaches to a root)."""
        by_pk = dict(zip((pk.key for pk in self.primary_key), key, strict=True)) if key else {}
        for jc in self.parent_columns:
            if jc.attribute:
                setattr(entity, jc.attribute, by_pk.get(jc.referenced.key))

    def pk_clause(self, target: Any, key: tuple[Any, ...]) -> list[Any]:
        """``target.<pk> == value`` expressions for an entity or alias."""
        return [getattr(target, attr) == value for attr, value in zip(self.pk_attributes, key, strict=True)]


def _parent_columns(mapper: Mapper[Any], relationship_name: str) -> tuple[JoinColumn, ...]:
    model_name = mapper.class_.__name__
    relationship = mapper.relationships.get(relationship_name)
    if relationship is None:
        raise TreeConfigurationError(model_name, f"missing parent relationship '{relationship_name}'")
    if relationship.mapper is not mapper and not mapper.isa(relationship.mapper):
        raise TreeConfigurationError(model_name, f"relationship '{relationship_name}' does not target {model_name}")
    if relationship.uselist:
        raise TreeConfigurationError(model_name, f"relationship '{relationship_name}' must be many-to-one")

    pairs = [(local, remote) for local, remote in relationship.local_remote_pairs if not local.primary_key]
    if not pairs:
        raise TreeConfigurationError(model_name, f"relationship '{relationship_name}' has no foreign key column")

    pk_keys = {c.key for c in mapper.primary_key}
    if {remote.key for _, remote in pairs} != pk_keys:
        raise TreeConfigurationError(model_name, "parent foreign key must reference the full primary key")

    return tuple(
        JoinColumn(column=local, referenced=remote, attribute=mapper.get_property_by_column(local).key)
        for local, remote in pairs
    )


def _closure_junction(mapper: Mapper[Any]) -> ClosureJunction:
    model = mapper.class_
    table = getattr(model, "__closure_table__", None)
    if table is None:
        raise TreeConfigurationError(
            model.__name__, "closure table not registered; call register_tree_events(Base) first"
        )

    by_pk = {c.key: c for c in mapper.primary_key}
    ancestors: list[JoinColumn] = []
    descendants: list[JoinColumn] = []
    for column in table.columns:
        role = column.info.get(CLOSURE_ROLE)
        referenced = by_pk.get(column.info.get(CLOSURE_REFERENCES, ""))
        if role is None or referenced is None:
            continue
        (ancestors if role == ANCESTOR_ROLE else descendants).append(JoinColumn(column, referenced))

    if len(ancestors) != len(by_pk) or len(descendants) != len(by_pk):
        raise TreeConfigurationError(model.__name__, f"closure table {table.name} does not cover the primary key")
    return ClosureJunction(table=table, ancestors=tuple(ancestors), descendants=tuple(descendants))


def _column(mapper: Mapper[Any], attribute: str) -> Column[Any]:
    prop = mapper.column_attrs.get(attribute)
    if prop is None:
        raise TreeConfigurationError(mapper.class_.__name__, f"missing tree column '{attribute}'")
    return prop.columns[0]


@cache
def describe_tree(model: type[Any]) -> TreeDescriptor:
    """Build (and cache) the descriptor for ``model``.

    Models without a tree encoding get a descriptor whose ``encoding`` is
    None; tree operations on them raise ``UnsupportedTreeOperationError``.

    Raises:
        UnsupportedTreeOperationError: If ``model`` is not a mapped class.
        TreeConfigurationError: If a tree model is missing its parent
            relationship or the columns its encoding needs.
    """
    mapper = sa_inspect(model, raiseerr=False)
    if not isinstance(mapper, Mapper):
        raise UnsupportedTreeOperationError(getattr(model, "__name__", repr(model)), "describe_tree")

    primary_key = tuple(mapper.primary_key)
    base = {
        "model": model,
        "table": mapper.local_table,
        "primary_key": primary_key,
        "pk_attributes": tuple(mapper.get_property_by_column(c).key for c in primary_key),
    }

    encoding = getattr(model, "__tree_encoding__", None)
    if encoding is None:
        return TreeDescriptor(encoding=None, **base)
    encoding = TreeEncoding(encoding)

    parent_name = getattr(model, "__tree_parent__", "parent")
    children_name = getattr(model, "__tree_children__", "children")
    extra: dict[str, Any] = {
        "parent_relationship": parent_name,
        "children_attribute": children_name if children_name in mapper.relationships else None,
        "parent_columns": _parent_columns(mapper, parent_name),
    }

    if encoding is TreeEncoding.CLOSURE_TABLE:
        extra["closure"] = _closure_junction(mapper)
    elif encoding is TreeEncoding.NESTED_SET:
        extra["nested_set_left"] = _column(mapper, getattr(model, "__tree_left__", "nsleft"))
        extra["nested_set_right"] = _column(mapper, getattr(model, "__tree_right__", "nsright"))
    else:
        settings = get_tree_settings()
        extra["materialized_path"] = _column(mapper, getattr(model, "__tree_path__", "mpath"))
        extra["path_separator"] = getattr(model, "__tree_path_separator__", None) or settings.path_separator
        extra["path_key_separator"] = (
            getattr(model, "__tree_path_key_separator__", None) or settings.path_key_separator
        )

    return TreeDescriptor(encoding=encoding, **base, **extra)


__all__ = [
    "ANCESTOR_ROLE",
    "CLOSURE_REFERENCES",
    "CLOSURE_ROLE",
    "DESCENDANT_ROLE",
    "ClosureJunction",
    "JoinColumn",
    "TreeDescriptor",
    "TreeEncoding",
    "describe_tree",
]
