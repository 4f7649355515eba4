"""Tree-structured entities on plain SQLAlchemy models.

This package lets a model declare one of three tree encodings and gives
every encoding the same repository surface:

    - Closure table: a junction table of (ancestor, descendant) pairs
    - Nested set: an interval [nsleft, nsright] stored on each row
    - Materialized path: the root-to-node key path stored on each row

Components:
    - ClosureTableMixin, NestedSetMixin, MaterializedPathMixin: declare the encoding
    - register_tree_events: closure tables plus insert-time maintenance
    - TreeRepository: roots, ancestors, descendants, in-memory trees, moves
    - TreeNode: immutable node returned by the tree builders
    - MovePlan: the writes a move would execute
    - MaterializedPath: Python-side path arithmetic

Example:
    >>> from tree_service.core.database import Base, IntegerPKMixin
    >>> from tree_service.core.database.hierarchy import (
    ...     ClosureTableMixin,
    ...     TreeRepository,
    ...     register_tree_events,
    ... )
    >>>
    >>> class Category(Base, IntegerPKMixin, ClosureTableMixin):
    ...     __tablename__ = "categories"
    ...     name: Mapped[str] = mapped_column(String(255))
    ...     parent_id: Mapped[int | None] = mapped_column(ForeignKey("categories.id"))
    ...     parent: Mapped[Category | None] = relationship(
    ...         back_populates="children", remote_side="Category.id"
    ...     )
    ...     children: Mapped[list[Category]] = relationship(back_populates="parent")
    >>>
    >>> register_tree_events(Base)
    >>> repo = TreeRepository(Category)
    >>> tree = await repo.find_descendants_tree(session, electronics)
    >>> await repo.move(session, laptops, to=computers)

Note:
    - Call register_tree_events(Base) after all models are defined and
      before create_all (closure tables are added to Base.metadata)
    - Deleting an entity removes its closure rows through ON DELETE
      CASCADE; deletes do not renumber nested-set bounds
    - Parent changes outside TreeRepository.move are rejected at flush,
      including the orphaning UPDATE of deleting a node that has children
"""

from tree_service.core.database.hierarchy.assembler import (
    RelationMapEntry,
    TreeNode,
    build_ancestors_tree,
    build_descendants_tree,
)
from tree_service.core.database.hierarchy.descriptor import (
    TreeDescriptor,
    TreeEncoding,
    describe_tree,
)
from tree_service.core.database.hierarchy.listeners import register_tree_events
from tree_service.core.database.hierarchy.mixins import (
    ClosureTableMixin,
    MaterializedPathMixin,
    NestedSetMixin,
    TreeMixin,
)
from tree_service.core.database.hierarchy.paths import MaterializedPath
from tree_service.core.database.hierarchy.planning import MovePlan
from tree_service.core.database.hierarchy.repository import TreeRepository
from tree_service.core.database.hierarchy.strategies import (
    STRATEGIES,
    TreeStrategy,
    strategy_for,
)

__all__ = [
    "STRATEGIES",
    "ClosureTableMixin",
    "MaterializedPath",
    "MaterializedPathMixin",
    "MovePlan",
    "NestedSetMixin",
    "RelationMapEntry",
    "TreeDescriptor",
    "TreeEncoding",
    "TreeMixin",
    "TreeNode",
    "TreeRepository",
    "TreeStrategy",
    "build_ancestors_tree",
    "build_descendants_tree",
    "describe_tree",
    "register_tree_events",
    "strategy_for",
]
