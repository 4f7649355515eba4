"""Common interface of the per-encoding tree strategies."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, ClassVar

from sqlalchemy import and_, not_, select
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import aliased
from sqlalchemy.orm.util import AliasedClass

from tree_service.core.database.exceptions import InvalidMoveError, RepositoryError
from tree_service.core.database.hierarchy.assembler import build_relation_maps, label_for
from tree_service.core.settings import get_tree_settings
from tree_service.infra.logging import get_lazy_logger

if TYPE_CHECKING:
    from sqlalchemy import Column, Connection, Select
    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.sql import ColumnElement

    from tree_service.core.database.hierarchy.assembler import Key, RelationMapEntry
    from tree_service.core.database.hierarchy.descriptor import JoinColumn, TreeDescriptor, TreeEncoding
    from tree_service.core.database.hierarchy.planning import MovePlan
    from tree_service.core.settings import TreeSettings

_UNSAFE_PARAM_CHARS = re.compile(r"\W")


class TreeStrategy(ABC):
    """Query fragments, move planning and insert bookkeeping for one encoding.

    Query builders return ``select(<aliased entity>)`` statements restricted
    to the ancestors or descendants of an entity. The alias may be given as
    a name or as an ``aliased()`` entity the caller already holds, so the
    fragment composes into larger statements (counts, labelled fetches).
    """

    encoding: ClassVar[TreeEncoding]

    def __init__(self, descriptor: TreeDescriptor, settings: TreeSettings | None = None) -> None:
        self.descriptor = descriptor
        self.settings = settings or get_tree_settings()
        self._lazy = get_lazy_logger(f"repository.{descriptor.name}", encoding=str(self.encoding))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.descriptor.name})"

    # ------------------------------------------------------------------
    # Query fragments
    # ------------------------------------------------------------------

    @abstractmethod
    def descendants_query(
        self,
        entity: Any,
        *,
        alias: str | AliasedClass[Any] | None = None,
        closure_alias: str | None = None,
        include_self: bool = False,
    ) -> Select[Any]:
        """Select the descendants of ``entity``."""

    @abstractmethod
    def ancestors_query(
        self,
        entity: Any,
        *,
        alias: str | AliasedClass[Any] | None = None,
        closure_alias: str | None = None,
        include_self: bool = False,
    ) -> Select[Any]:
        """Select the ancestors of ``entity``."""

    def roots_query(self, *, alias: str | AliasedClass[Any] | None = None) -> Select[Any]:
        """Select entities whose parent foreign key is NULL."""
        target = self.target(alias)
        return select(target).where(
            *(getattr(target, jc.attribute).is_(None) for jc in self.descriptor.parent_columns if jc.attribute)
        )

    def target(self, alias: str | AliasedClass[Any] | None = None) -> AliasedClass[Any]:
        """Aliased entity for ``alias`` (the configured entity alias by default)."""
        if isinstance(alias, AliasedClass):
            return alias
        return aliased(self.descriptor.model, name=alias or self.settings.entity_alias)

    def relation_columns(self, target: AliasedClass[Any]) -> list[ColumnElement[Any]]:
        """Labelled primary key and parent foreign key columns of ``target``."""
        name = alias_name(target)
        columns = [getattr(target, attr).label(label_for(name, attr)) for attr in self.descriptor.pk_attributes]
        columns.extend(
            getattr(target, jc.attribute).label(label_for(name, jc.label_key))
            for jc in self.descriptor.parent_columns
            if jc.attribute
        )
        return columns

    async def fetch_related(
        self,
        session: AsyncSession,
        statement: Select[Any],
        target: AliasedClass[Any],
    ) -> tuple[list[Any], list[RelationMapEntry]]:
        """Run a tree query and return (entities, relation map).

        Entities are re-populated from the row so bookkeeping columns that
        bulk statements rewrote are current on objects already in the session.
        """
        statement = statement.add_columns(*self.relation_columns(target)).execution_options(
            populate_existing=True
        )
        rows = (await session.execute(statement)).all()
        entities = [row[0] for row in rows]
        return entities, build_relation_maps(rows, self.descriptor, alias_name(target))

    # ------------------------------------------------------------------
    # Moves
    # ------------------------------------------------------------------

    @abstractmethod
    async def plan_move(self, session: AsyncSession, entity: Any, to: Any | None) -> MovePlan:
        """Build the statements that make ``entity`` a child of ``to`` (root if None).

        Planning may read the current tree through ``session``; it never
        writes.

        Raises:
            InvalidMoveError: If ``to`` is ``entity`` or one of its
                descendants, or either side is not persisted.
        """

    def stale_attributes(self) -> tuple[str, ...]:
        """Entity attributes a move rewrites behind the ORM's back."""
        return ()

    # ------------------------------------------------------------------
    # Insert bookkeeping (called from mapper events, sync context)
    # ------------------------------------------------------------------

    def on_before_insert(self, connection: Connection, entity: Any) -> None:  # noqa: B027
        """Prepare encoding columns before the entity row is INSERTed."""

    def on_after_insert(self, connection: Connection, entity: Any) -> None:  # noqa: B027
        """Write the auxiliary structure once the entity row has its key."""

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def require_key(self, entity: Any, operation: str) -> Key:
        """Primary key of a persisted entity."""
        key = self.descriptor.identity(entity)
        if any(v is None for v in key):
            raise RepositoryError(
                f"{self.descriptor.name} must be flushed before {operation}",
                details={"model": self.descriptor.name, "operation": operation},
            )
        return key

    def move_keys(self, entity: Any, to: Any | None) -> tuple[Key, Key | None]:
        """Keys of both sides of a move, rejecting unsaved entities and self-moves."""
        key = self.descriptor.identity(entity)
        if any(v is None for v in key):
            raise InvalidMoveError(self.descriptor.name, "entity is not persisted")
        if to is None:
            return key, None
        to_key = self.descriptor.identity(to)
        if any(v is None for v in to_key):
            raise InvalidMoveError(self.descriptor.name, "destination is not persisted", id=key)
        if to_key == key:
            raise InvalidMoveError(self.descriptor.name, "an entity cannot be its own parent", id=key)
        return key, to_key

    def exclude(self, target: Any, key: Key) -> ColumnElement[bool]:
        """``NOT (target.pk = key)``."""
        return not_(and_(*self.descriptor.pk_clause(target, key)))

    def table_pk_clause(self, key: Key) -> list[ColumnElement[bool]]:
        """Primary key equality against the entity's base table."""
        return [column == value for column, value in zip(self.descriptor.primary_key, key, strict=True)]

    def values_for(self, join_columns: tuple[JoinColumn, ...], key: Key) -> list[tuple[Column[Any], Any]]:
        """Pair each join column with the key member of the column it references."""
        by_pk = dict(zip((pk.key for pk in self.descriptor.primary_key), key, strict=True))
        return [(jc.column, by_pk[jc.referenced.key]) for jc in join_columns]


def alias_name(target: AliasedClass[Any]) -> str:
    return sa_inspect(target).name


def param_salt(key: Key, used: set[str]) -> str:
    """Bind-parameter suffix derived from a row key, unique within ``used``."""
    salt = "_".join(_UNSAFE_PARAM_CHARS.sub("_", str(v)) for v in key)
    candidate, n = salt, 1
    while candidate in used:
        candidate = f"{salt}_{n}"
        n += 1
    used.add(candidate)
    return candidate


__all__ = ["TreeStrategy", "alias_name", "param_salt"]
