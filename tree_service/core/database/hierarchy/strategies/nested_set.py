"""Nested-set encoding.

Every node stores an interval [nsleft, nsright]; a node's subtree is the
set of nodes whose left bound lies inside its interval. Roots sit side by
side, each one after the right-most bound of the previous root.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import func, not_, select, update
from sqlalchemy.orm import aliased
from sqlalchemy.orm.attributes import set_committed_value

from tree_service.core.database.exceptions import InvalidMoveError
from tree_service.core.database.hierarchy.descriptor import TreeEncoding
from tree_service.core.database.hierarchy.planning import MovePlan
from tree_service.core.database.hierarchy.strategies.base import TreeStrategy

if TYPE_CHECKING:
    from sqlalchemy import Column, Connection, Select
    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.orm.util import AliasedClass

    from tree_service.core.database.hierarchy.assembler import Key


class NestedSetStrategy(TreeStrategy):
    encoding = TreeEncoding.NESTED_SET

    @property
    def left(self) -> Column[Any]:
        column = self.descriptor.nested_set_left
        if column is None:
            raise TypeError(f"{self.descriptor.name} has no nested-set bounds")
        return column

    @property
    def right(self) -> Column[Any]:
        column = self.descriptor.nested_set_right
        if column is None:
            raise TypeError(f"{self.descriptor.name} has no nested-set bounds")
        return column

    @property
    def left_attr(self) -> str:
        return self.descriptor.attribute_for(self.left)

    @property
    def right_attr(self) -> str:
        return self.descriptor.attribute_for(self.right)

    def _joined(self, closure_alias: str | None) -> AliasedClass[Any]:
        return aliased(self.descriptor.model, name=closure_alias or self.settings.closure_alias)

    def descendants_query(
        self,
        entity: Any,
        *,
        alias: str | AliasedClass[Any] | None = None,
        closure_alias: str | None = None,
        include_self: bool = False,
    ) -> Select[Any]:
        """Rows whose left bound lies between the joined row's bounds, joined row = ``entity``."""
        key = self.require_key(entity, "find_descendants")
        target = self.target(alias)
        joined = self._joined(closure_alias)
        left, right = self.left_attr, self.right_attr

        stmt = (
            select(target)
            .join(joined, getattr(target, left).between(getattr(joined, left), getattr(joined, right)))
            .where(*self.descriptor.pk_clause(joined, key))
        )
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
        """Rows whose interval contains the joined row's left bound, joined row = ``entity``."""
        key = self.require_key(entity, "find_ancestors")
        target = self.target(alias)
        joined = self._joined(closure_alias)
        left, right = self.left_attr, self.right_attr

        stmt = (
            select(target)
            .join(joined, getattr(joined, left).between(getattr(target, left), getattr(target, right)))
            .where(*self.descriptor.pk_clause(joined, key))
        )
        if not include_self:
            stmt = stmt.where(self.exclude(target, key))
        return stmt

    async def _bounds(self, session: AsyncSession, key: Key) -> tuple[int, int]:
        row = (await session.execute(select(self.left, self.right).where(*self.table_pk_clause(key)))).one()
        return int(row[0]), int(row[1])

    async def plan_move(self, session: AsyncSession, entity: Any, to: Any | None) -> MovePlan:
        """Relocate the interval of ``entity`` as the right-most child of ``to``.

        Bounds are read from the database (session objects may be stale).
        The plan negates the subtree's bounds to park it, closes the gap it
        leaves, opens a gap of the same width at the destination and finally
        flips the parked bounds back, shifted into the gap.
        """
        key, to_key = self.move_keys(entity, to)
        left_bound, right_bound = await self._bounds(session, key)
        width = right_bound - left_bound + 1
        table = self.descriptor.table
        left, right = self.left, self.right

        if to_key is not None:
            to_left, to_right = await self._bounds(session, to_key)
            if left_bound <= to_left <= right_bound:
                raise InvalidMoveError(
                    self.descriptor.name, "destination lies inside the moved subtree", id=key, to=to_key
                )
            # new left bound: the destination's right bound once the gap is closed
            position = to_right - width if to_right > right_bound else to_right
        else:
            last_right = (
                await session.execute(
                    select(func.max(right)).where(not_(left.between(left_bound, right_bound)))
                )
            ).scalar()
            if last_right is None:
                position = 1
            else:
                position = (last_right - width if last_right > right_bound else last_right) + 1

        offset = position - left_bound
        statements = (
            update(table).where(left.between(left_bound, right_bound)).values({left: -left, right: -right}),
            update(table).where(left > right_bound).values({left: left - width}),
            update(table).where(right > right_bound).values({right: right - width}),
            update(table).where(left >= position).values({left: left + width}),
            update(table).where(right >= position).values({right: right + width}),
            update(table).where(left < 0).values({left: offset - left, right: offset - right}),
        )
        self._lazy.debug(lambda: f"db.tree.plan_move: {key} -> {to_key} at {position} (width {width})")
        return MovePlan(encoding=self.encoding, statements=statements)

    def stale_attributes(self) -> tuple[str, ...]:
        return (self.left_attr, self.right_attr)

    def on_before_insert(self, connection: Connection, entity: Any) -> None:
        """Park the new row at (0, 0); real bounds are assigned after insert.

        Rows inserted in the same flush reach the database one batch at a
        time, so bounds computed before any of them exists would collide.
        """
        _ = connection
        setattr(entity, self.left_attr, 0)
        setattr(entity, self.right_attr, 0)

    def on_after_insert(self, connection: Connection, entity: Any) -> None:
        """Assign bounds: right-most child of the parent, or a new root after the last one."""
        left, right = self.left, self.right
        table = self.descriptor.table
        parent = self.descriptor.parent_identity(entity)

        if parent is None:
            last_right = connection.execute(select(func.max(right))).scalar()
            position = (last_right or 0) + 1
        else:
            position = connection.execute(select(right).where(*self.table_pk_clause(parent))).scalar_one()
            connection.execute(update(table).where(right >= position).values({right: right + 2}))
            connection.execute(update(table).where(left > position).values({left: left + 2}))

        key = self.descriptor.identity(entity)
        connection.execute(
            update(table).where(*self.table_pk_clause(key)).values({left: position, right: position + 1})
        )
        set_committed_value(entity, self.left_attr, position)
        set_committed_value(entity, self.right_attr, position + 1)


__all__ = ["NestedSetStrategy"]
