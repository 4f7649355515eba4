"""Materialized-path encoding.

Every node stores the keys of its root path, e.g. ``"1.3.7."``. A node's
descendants are the rows whose path starts with its own; its ancestors are
the rows whose path is a prefix of its own.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import aliased
from sqlalchemy.orm.attributes import set_committed_value

from tree_service.core.database.exceptions import InvalidMoveError
from tree_service.core.database.hierarchy.descriptor import TreeEncoding
from tree_service.core.database.hierarchy.dialect import concat, starts_with
from tree_service.core.database.hierarchy.paths import MaterializedPath
from tree_service.core.database.hierarchy.planning import MovePlan
from tree_service.core.database.hierarchy.strategies.base import TreeStrategy

if TYPE_CHECKING:
    from sqlalchemy import Column, Connection, Select
    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.orm.util import AliasedClass
    from sqlalchemy.sql import ScalarSelect

    from tree_service.core.database.hierarchy.assembler import Key


class MaterializedPathStrategy(TreeStrategy):
    encoding = TreeEncoding.MATERIALIZED_PATH

    @property
    def path(self) -> Column[Any]:
        column = self.descriptor.materialized_path
        if column is None:
            raise TypeError(f"{self.descriptor.name} has no materialized path column")
        return column

    @property
    def path_attr(self) -> str:
        return self.descriptor.attribute_for(self.path)

    def make_path(self, value: str = "") -> MaterializedPath:
        return MaterializedPath(
            value,
            separator=self.descriptor.path_separator,
            key_separator=self.descriptor.path_key_separator,
        )

    def _path_of(self, key: Key, closure_alias: str | None) -> ScalarSelect[Any]:
        """Scalar sub-query selecting the stored path of the row with ``key``."""
        source = aliased(self.descriptor.model, name=closure_alias or self.settings.closure_alias)
        return (
            select(getattr(source, self.path_attr))
            .where(*self.descriptor.pk_clause(source, key))
            .scalar_subquery()
        )

    def descendants_query(
        self,
        entity: Any,
        *,
        alias: str | AliasedClass[Any] | None = None,
        closure_alias: str | None = None,
        include_self: bool = False,
    ) -> Select[Any]:
        """Rows whose path starts with the path of ``entity``."""
        key = self.require_key(entity, "find_descendants")
        target = self.target(alias)
        stmt = select(target).where(starts_with(getattr(target, self.path_attr), self._path_of(key, closure_alias)))
        if not include_self:
            stmt = stmt.where(self.exclude(target, key))
        return stmt

    def ancestors_query(
        self,
        entity: Any,
        *,
        alias: str | AliasedClass[Any] | None = None,
        closure_alias: str | None = None,
        include_self: bool = False,
    ) -> Select[Any]:
        """Rows whose path is a prefix of the path of ``entity``."""
        key = self.require_key(entity, "find_ancestors")
        target = self.target(alias)
        stmt = select(target).where(starts_with(self._path_of(key, closure_alias), getattr(target, self.path_attr)))
        if not include_self:
            stmt = stmt.where(self.exclude(target, key))
        return stmt

    async def _stored_path(self, session: AsyncSession, key: Key) -> MaterializedPath:
        value = (await session.execute(select(self.path).where(*self.table_pk_clause(key)))).scalar_one()
        return self.make_path(value)

    async def plan_move(self, session: AsyncSession, entity: Any, to: Any | None) -> MovePlan:
        """Rewrite the path prefix of the whole subtree in one UPDATE."""
        key, to_key = self.move_keys(entity, to)
        old_path = await self._stored_path(session, key)

        if to_key is not None:
            to_path = await self._stored_path(session, to_key)
            if to_path == old_path or old_path.is_ancestor_of(to_path):
                raise InvalidMoveError(
                    self.descriptor.name, "destination lies inside the moved subtree", id=key, to=to_key
                )
            new_path = to_path.child(key)
        else:
            new_path = self.make_path().child(key)

        path = self.path
        old_value = str(old_path)
        statement = (
            update(self.descriptor.table)
            .where(starts_with(path, old_value))
            .values({path: concat(str(new_path), func.substr(path, len(old_value) + 1))})
        )
        self._lazy.debug(lambda: f"db.tree.plan_move: {old_value!r} -> {str(new_path)!r}")
        return MovePlan(encoding=self.encoding, statements=(statement,))

    def stale_attributes(self) -> tuple[str, ...]:
        return (self.path_attr,)

    def on_after_insert(self, connection: Connection, entity: Any) -> None:
        """Write ``parent path + own key`` once the row has its key."""
        key = self.descriptor.identity(entity)
        parent = self.descriptor.parent_identity(entity)
        if parent is None:
            prefix = self.make_path()
        else:
            prefix = self.make_path(
                connection.execute(select(self.path).where(*self.table_pk_clause(parent))).scalar_one()
            )
        value = str(prefix.child(key))
        connection.execute(
            update(self.descriptor.table).where(*self.table_pk_clause(key)).values({self.path: value})
        )
        set_committed_value(entity, self.path_attr, value)


__all__ = ["MaterializedPathStrategy"]
