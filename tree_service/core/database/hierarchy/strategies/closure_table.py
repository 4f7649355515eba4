"""Closure-table encoding.

The junction table holds one (ancestor, descendant) row per pair of nodes
on a common root path, the reflexive (node, node) pair included. Ancestor
and descendant queries are a single join against it; a move deletes the
rows of the moving subtree and re-inserts them under the new ancestor chain.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, bindparam, delete, insert, literal, or_, select

from tree_service.core.database.exceptions import InvalidMoveError
from tree_service.core.database.hierarchy.assembler import build_ancestors_tree, build_descendants_tree
from tree_service.core.database.hierarchy.descriptor import ClosureJunction, TreeEncoding
from tree_service.core.database.hierarchy.planning import MovePlan
from tree_service.core.database.hierarchy.strategies.base import TreeStrategy, param_salt

if TYPE_CHECKING:
    from sqlalchemy import Connection, Select
    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.orm.util import AliasedClass

    from tree_service.core.database.hierarchy.assembler import Key, TreeNode

# Nodes (DELETE) or rows (INSERT) per statement; SQLite caps expression depth at 1000
MOVE_BATCH_SIZE = 500


class ClosureTableStrategy(TreeStrategy):
    encoding = TreeEncoding.CLOSURE_TABLE

    @property
    def closure(self) -> ClosureJunction:
        closure = self.descriptor.closure
        if closure is None:  # describe_tree guarantees it for this encoding
            raise TypeError(f"{self.descriptor.name} has no closure junction")
        return closure

    def _query(
        self,
        entity: Any,
        *,
        join_on: str,
        filter_on: str,
        operation: str,
        alias: str | AliasedClass[Any] | None,
        closure_alias: str | None,
        include_self: bool,
    ) -> Select[Any]:
        key = self.require_key(entity, operation)
        target = self.target(alias)
        closure = self.closure
        junction = closure.table.alias(closure_alias or self.settings.closure_alias)

        join_columns = getattr(closure, join_on)
        onclause = and_(
            *(
                junction.c[jc.column.key] == getattr(target, self.descriptor.attribute_for(jc.referenced))
                for jc in join_columns
            )
        )
        stmt = (
            select(target)
            .join(junction, onclause)
            .where(*(junction.c[column.key] == value for column, value in self.values_for(getattr(closure, filter_on), key)))
        )
        if not include_self:
            stmt = stmt.where(self.exclude(target, key))
        return stmt

    def descendants_query(
        self,
        entity: Any,
        *,
        alias: str | AliasedClass[Any] | None = None,
        closure_alias: str | None = None,
        include_self: bool = False,
    ) -> Select[Any]:
        """Join on the descendant columns, filter the ancestor columns by ``entity``."""
        return self._query(
            entity,
            join_on="descendants",
            filter_on="ancestors",
            operation="find_descendants",
            alias=alias,
            closure_alias=closure_alias,
            include_self=include_self,
        )

    def ancestors_query(
        self,
        entity: Any,
        *,
        alias: str | AliasedClass[Any] | None = None,
        closure_alias: str | None = None,
        include_self: bool = False,
    ) -> Select[Any]:
        """Join on the ancestor columns, filter the descendant columns by ``entity``."""
        return self._query(
            entity,
            join_on="ancestors",
            filter_on="descendants",
            operation="find_ancestors",
            alias=alias,
            closure_alias=closure_alias,
            include_self=include_self,
        )

    def closure_row(self, ancestor: Key, descendant: Key) -> dict[str, Any]:
        """Junction row (column name -> value) for one pair."""
        closure = self.closure
        row = {column.key: value for column, value in self.values_for(closure.ancestors, ancestor)}
        row.update({column.key: value for column, value in self.values_for(closure.descendants, descendant)})
        return row

    async def plan_move(self, session: AsyncSession, entity: Any, to: Any | None) -> MovePlan:
        """Re-root the closure rows of ``entity``'s subtree under ``to``.

        1. Load the subtree of ``entity`` with its parent links.
        2. Load the ancestor-or-self chain of ``to``, root first.
        3. DELETE every junction row whose descendant is in the subtree
           (``entity`` included), one OR-ed group per node.
        4. INSERT, for each subtree node d, a row (a, d) for every a in the
           new chain followed by the path from ``entity`` down to d.

        Large subtrees are split into several DELETE and INSERT statements of
        at most ``MOVE_BATCH_SIZE`` nodes or rows each; all DELETEs run first.

        For a leaf moved under C (whose chain is A, C) this yields exactly
        (A, B), (C, B), (B, B).
        """
        key, to_key = self.move_keys(entity, to)
        identity = self.descriptor.identity

        target = self.target()
        subtree_entities, subtree_maps = await self.fetch_related(
            session, self.descendants_query(entity, alias=target), target
        )
        if to_key is not None and to_key in {identity(e) for e in subtree_entities}:
            raise InvalidMoveError(
                self.descriptor.name, "destination lies inside the moved subtree", id=key, to=to_key
            )
        subtree = build_descendants_tree(entity, subtree_entities, subtree_maps, identity)

        chain: list[Key] = []
        if to is not None:
            ancestors, ancestor_maps = await self.fetch_related(
                session, self.ancestors_query(to, alias=target, include_self=True), target
            )
            to_node = build_ancestors_tree(to, ancestors, ancestor_maps, identity)
            chain = [identity(node.entity) for node in reversed([to_node, *to_node.ancestors()])]

        nodes: list[TreeNode[Any]] = [subtree, *subtree.walk()]

        junction = self.closure.table
        used: set[str] = set()
        groups = []
        for node in nodes:
            node_key = identity(node.entity)
            salt = param_salt(node_key, used)
            groups.append(
                and_(
                    *(
                        junction.c[column.key] == bindparam(f"{column.key}_{salt}", value, type_=column.type)
                        for column, value in self.values_for(self.closure.descendants, node_key)
                    )
                )
            )
        deletes = [
            delete(junction).where(or_(*groups[start : start + MOVE_BATCH_SIZE]))
            for start in range(0, len(groups), MOVE_BATCH_SIZE)
        ]

        rows: list[dict[str, Any]] = []
        for node in nodes:
            node_key = identity(node.entity)
            inner_path = [identity(n.entity) for n in reversed([node, *node.ancestors()])]
            rows.extend(self.closure_row(ancestor, node_key) for ancestor in [*chain, *inner_path])
        inserts = [
            insert(junction).values(rows[start : start + MOVE_BATCH_SIZE])
            for start in range(0, len(rows), MOVE_BATCH_SIZE)
        ]

        return MovePlan(encoding=self.encoding, statements=(*deletes, *inserts), rows=tuple(rows))

    def on_after_insert(self, connection: Connection, entity: Any) -> None:
        """Insert (entity, entity) plus (a, entity) for every ancestor-or-self a of the parent."""
        closure = self.closure
        junction = closure.table
        key = self.descriptor.identity(entity)
        connection.execute(insert(junction).values(self.closure_row(key, key)))

        parent = self.descriptor.parent_identity(entity)
        if parent is None:
            return
        ancestor_columns = [junction.c[jc.column.key] for jc in closure.ancestors]
        descendant_values = self.values_for(closure.descendants, key)
        inherited = select(
            *ancestor_columns,
            *(literal(value, column.type).label(column.key) for column, value in descendant_values),
        ).where(*(junction.c[column.key] == value for column, value in self.values_for(closure.descendants, parent)))
        connection.execute(
            insert(junction).from_select(
                [*(c.key for c in ancestor_columns), *(column.key for column, _ in descendant_values)],
                inherited,
            )
        )


__all__ = ["ClosureTableStrategy"]
