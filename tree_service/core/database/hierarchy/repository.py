"""Repository for tree-structured models.

``TreeRepository`` adds ancestor/descendant queries, in-memory trees and
subtree moves to ``BaseRepository``. Every operation dispatches on the
model's declared encoding (closure table, nested set or materialized
path), so callers use the same surface regardless of how the tree is
stored.

Example:
    repo = TreeRepository(Category)

    roots = await repo.find_roots(session)
    tree = await repo.find_descendants_tree(session, roots[0])
    for node in tree.walk():
        print("  " * node.depth, node.entity.name)

    await repo.move(session, laptops, to=computers)
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy import func, select, tuple_

from tree_service.core.database.hierarchy.assembler import build_ancestors_tree, build_descendants_tree
from tree_service.core.database.hierarchy.descriptor import describe_tree
from tree_service.core.database.hierarchy.listeners import reparenting
from tree_service.core.database.hierarchy.strategies import strategy_for
from tree_service.core.database.repository import BaseRepository
from tree_service.core.settings import get_tree_settings

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy import Select
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
    from sqlalchemy.orm.util import AliasedClass

    from tree_service.core.database.hierarchy.assembler import Key, TreeNode
    from tree_service.core.database.hierarchy.planning import MovePlan
    from tree_service.core.database.hierarchy.strategies import TreeStrategy
    from tree_service.core.settings import TreeSettings


T = TypeVar("T")


class TreeRepository(BaseRepository[T]):
    """Repository with tree operations for closure-table, nested-set and materialized-path models.

    Provides (on top of BaseRepository):
        - find_roots(session) -> list[T]
        - find_trees(session) -> list[TreeNode[T]]
        - find_descendants(session, entity) -> list[T]
        - find_descendants_tree(session, entity) -> TreeNode[T]
        - count_descendants(session, entity) -> int
        - find_ancestors(session, entity) -> list[T]
        - find_ancestors_tree(session, entity) -> TreeNode[T]
        - count_ancestors(session, entity) -> int
        - create_descendants_query / create_ancestors_query -> Select
        - plan_move(session, entity, to) -> MovePlan
        - move(session, entity, to) -> None

    Descendant and ancestor results exclude the entity itself unless
    ``include_self=True`` is passed. Tree operations on a model without a
    tree encoding raise ``UnsupportedTreeOperationError``.

    Entities returned by tree queries are re-populated from their rows, so
    bookkeeping columns rewritten by earlier moves are never stale.
    """

    __slots__ = ("_session_factory", "_settings", "_strategy")

    def __init__(
        self,
        model: type[T],
        *,
        settings: TreeSettings | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        """Initialize repository with model class.

        Args:
            model: SQLAlchemy model class
            settings: Tree settings (aliases, fan-out limit); defaults to
                ``get_tree_settings()``
            session_factory: Lets ``find_trees`` load each root's tree in
                its own session, concurrently. Without it the loads share
                the caller's session one at a time.
        """
        super().__init__(model)
        self._settings = settings or get_tree_settings()
        self._session_factory = session_factory
        self._strategy: TreeStrategy | None = None

    @property
    def settings(self) -> TreeSettings:
        return self._settings

    def _tree(self, operation: str) -> TreeStrategy:
        if self._strategy is None:
            self._strategy = strategy_for(describe_tree(self.model), self._settings, operation=operation)
        return self._strategy

    def _ordered(self, strategy: TreeStrategy, statement: Select[Any], target: AliasedClass[Any]) -> Select[Any]:
        return statement.order_by(*(getattr(target, attr) for attr in strategy.descriptor.pk_attributes))

    async def _scalars(self, session: AsyncSession, statement: Select[Any]) -> list[T]:
        result = await session.execute(statement.execution_options(populate_existing=True))
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Roots
    # ------------------------------------------------------------------

    async def find_roots(self, session: AsyncSession) -> list[T]:
        """Entities without a parent, ordered by primary key."""
        strategy = self._tree("find_roots")
        target = strategy.target()
        roots = await self._scalars(session, self._ordered(strategy, strategy.roots_query(alias=target), target))

        self._lazy.debug(lambda: f"db.tree.find_roots: {self.model.__name__} -> {len(roots)} roots")
        return roots

    async def find_trees(self, session: AsyncSession) -> list[TreeNode[T]]:
        """Every root with its full descendant tree.

        One descendant-tree load per root runs concurrently (at most
        ``TreeSettings.max_concurrent_trees`` at a time). Result order
        follows ``find_roots``.

        With a ``session_factory`` each load uses its own session; the
        returned nodes then hold objects from those sessions, detached once
        the load completes. Without one, loads take turns on ``session``
        (an ``AsyncSession`` cannot run statements concurrently).
        """
        strategy = self._tree("find_trees")
        roots = await self.find_roots(session)
        semaphore = asyncio.Semaphore(self._settings.max_concurrent_trees)
        session_lock = asyncio.Lock()
        factory = self._session_factory

        async def load(root: T) -> TreeNode[T]:
            async with semaphore:
                if factory is not None:
                    key = strategy.descriptor.identity(root)
                    async with factory() as own_session:
                        own_root = await own_session.get(self.model, key)
                        if own_root is None:
                            # Deleted by a concurrent transaction after find_roots
                            return await self._locked_tree(session, session_lock, root)
                        return await self.find_descendants_tree(own_session, own_root)
                return await self._locked_tree(session, session_lock, root)

        trees = list(await asyncio.gather(*(load(root) for root in roots)))

        self._lazy.debug(
            lambda: f"db.tree.find_trees: {self.model.__name__} -> {len(trees)} trees, "
            f"{sum(1 + len(t.entities()) for t in trees)} nodes"
        )
        return trees

    async def _locked_tree(self, session: AsyncSession, lock: asyncio.Lock, root: T) -> TreeNode[T]:
        async with lock:
            return await self.find_descendants_tree(session, root)

    # ------------------------------------------------------------------
    # Descendants
    # ------------------------------------------------------------------

    def create_descendants_query(
        self,
        entity: T,
        *,
        alias: str | AliasedClass[Any] | None = None,
        closure_alias: str | None = None,
        include_self: bool = False,
    ) -> Select[Any]:
        """Composable ``select(<aliased entity>)`` of the descendants of ``entity``.

        Example:
            stmt = repo.create_descendants_query(node, alias="d").where(...)
        """
        return self._tree("create_descendants_query").descendants_query(
            entity, alias=alias, closure_alias=closure_alias, include_self=include_self
        )

    async def find_descendants(self, session: AsyncSession, entity: T, *, include_self: bool = False) -> list[T]:
        """All entities below ``entity`` (ordered by primary key)."""
        strategy = self._tree("find_descendants")
        target = strategy.target()
        statement = strategy.descendants_query(entity, alias=target, include_self=include_self)
        descendants = await self._scalars(session, self._ordered(strategy, statement, target))

        self._lazy.debug(
            lambda: f"db.tree.find_descendants: {self.model.__name__}{strategy.descriptor.identity(entity)} "
            f"-> {len(descendants)} rows"
        )
        return descendants

    async def find_descendants_tree(self, session: AsyncSession, entity: T) -> TreeNode[T]:
        """``entity`` with its whole subtree linked as ``TreeNode`` children."""
        strategy = self._tree("find_descendants_tree")
        target = strategy.target()
        statement = self._ordered(strategy, strategy.descendants_query(entity, alias=target), target)
        entities, relation_maps = await strategy.fetch_related(session, statement, target)
        return build_descendants_tree(entity, entities, relation_maps, strategy.descriptor.identity)

    async def count_descendants(self, session: AsyncSession, entity: T) -> int:
        strategy = self._tree("count_descendants")
        statement = select(func.count()).select_from(strategy.descendants_query(entity).subquery())
        count = (await session.execute(statement)).scalar_one()

        self._lazy.debug(lambda: f"db.tree.count_descendants: {self.model.__name__} -> {count}")
        return int(count)

    # ------------------------------------------------------------------
    # Ancestors
    # ------------------------------------------------------------------

    def create_ancestors_query(
        self,
        entity: T,
        *,
        alias: str | AliasedClass[Any] | None = None,
        closure_alias: str | None = None,
        include_self: bool = False,
    ) -> Select[Any]:
        """Composable ``select(<aliased entity>)`` of the ancestors of ``entity``."""
        return self._tree("create_ancestors_query").ancestors_query(
            entity, alias=alias, closure_alias=closure_alias, include_self=include_self
        )

    async def find_ancestors(self, session: AsyncSession, entity: T, *, include_self: bool = False) -> list[T]:
        """All entities above ``entity`` (ordered by primary key)."""
        strategy = self._tree("find_ancestors")
        target = strategy.target()
        statement = strategy.ancestors_query(entity, alias=target, include_self=include_self)
        ancestors = await self._scalars(session, self._ordered(strategy, statement, target))

        self._lazy.debug(
            lambda: f"db.tree.find_ancestors: {self.model.__name__}{strategy.descriptor.identity(entity)} "
            f"-> {len(ancestors)} rows"
        )
        return ancestors

    async def find_ancestors_tree(self, session: AsyncSession, entity: T) -> TreeNode[T]:
        """``entity`` with its parent chain linked through ``TreeNode.parent``."""
        strategy = self._tree("find_ancestors_tree")
        target = strategy.target()
        # The entity's own row carries the link to its parent
        statement = strategy.ancestors_query(entity, alias=target, include_self=True)
        entities, relation_maps = await strategy.fetch_related(session, statement, target)
        return build_ancestors_tree(entity, entities, relation_maps, strategy.descriptor.identity)

    async def count_ancestors(self, session: AsyncSession, entity: T) -> int:
        strategy = self._tree("count_ancestors")
        statement = select(func.count()).select_from(strategy.ancestors_query(entity).subquery())
        count = (await session.execute(statement)).scalar_one()

        self._lazy.debug(lambda: f"db.tree.count_ancestors: {self.model.__name__} -> {count}")
        return int(count)

    # ------------------------------------------------------------------
    # Moves
    # ------------------------------------------------------------------

    async def plan_move(self, session: AsyncSession, entity: T, to: T | None) -> MovePlan:
        """Build, without executing, the writes that would move ``entity`` under ``to``."""
        return await self._tree("plan_move").plan_move(session, entity, to)

    async def move(self, session: AsyncSession, entity: T, to: T | None) -> None:
        """Make ``entity`` (and its subtree) a child of ``to``, or a root when ``to`` is None.

        Planning reads, plan statements and the parent update run in one
        transaction: ``session.begin()``, or a SAVEPOINT when the session
        already has a transaction open (the caller then commits). Any
        database error rolls the move back and propagates unchanged.

        Raises:
            InvalidMoveError: If ``to`` is ``entity`` or lies in its subtree.
            UnsupportedTreeOperationError: If the model is not a tree.
        """
        strategy = self._tree("move")
        descriptor = strategy.descriptor
        old_parent = descriptor.parent_identity(entity)
        new_parent = descriptor.identity(to) if to is not None else None

        transaction = session.begin_nested() if session.in_transaction() else session.begin()
        async with transaction:
            plan = await strategy.plan_move(session, entity, to)
            for statement in plan.statements:
                await session.execute(statement)
            with reparenting(session.sync_session, entity):
                descriptor.set_parent_identity(entity, new_parent)
                await session.flush()

        await self._reload_after_move(session, strategy, entity, {old_parent, new_parent} - {None})

        self._logger.info(
            "Tree entity moved",
            extra={
                "entity": self.model.__name__,
                "id": str(descriptor.identity(entity)),
                "to": str(new_parent) if new_parent is not None else None,
                "encoding": str(strategy.encoding),
                "statements": len(plan),
                "operation": "db.tree.move",
            },
        )

    async def _reload_after_move(
        self,
        session: AsyncSession,
        strategy: TreeStrategy,
        entity: T,
        parents: set[Key],
    ) -> None:
        """Re-populate session objects the move made stale.

        Bulk statements bypass the identity map, so every loaded instance of
        the model is refreshed when the encoding stores bookkeeping on the
        entity row; otherwise only the moved entity and both parents (whose
        relationships changed) are.
        """
        descriptor = strategy.descriptor
        keys: set[Key] = {descriptor.identity(entity), *parents}
        if strategy.stale_attributes():
            keys.update(
                descriptor.identity(obj) for obj in list(session.identity_map.values()) if isinstance(obj, self.model)
            )

        pk_columns = [getattr(self.model, attr) for attr in descriptor.pk_attributes]
        if len(pk_columns) == 1:
            criterion = pk_columns[0].in_([key[0] for key in keys])
        else:
            criterion = tuple_(*pk_columns).in_(list(keys))
        await self._scalars(session, select(self.model).where(criterion))


__all__ = ["TreeRepository"]
