"""Mixins declaring the tree encoding of a model.

A tree model mixes in exactly one of the encoding mixins and declares its
own parent foreign key plus the parent/children relationships. The mixin
contributes the encoding marker and whatever columns the encoding stores
on the entity row.

Example:
    >>> class Category(Base, IntegerPKMixin, ClosureTableMixin):
    ...     __tablename__ = "category"
    ...     name: Mapped[str] = mapped_column(String(255))
    ...     parent_id: Mapped[int | None] = mapped_column(ForeignKey("category.id"))
    ...     parent: Mapped[Category | None] = relationship(
    ...         back_populates="children", remote_side="Category.id"
    ...     )
    ...     children: Mapped[list[Category]] = relationship(back_populates="parent")
    >>>
    >>> register_tree_events(Base)   # closure table + insert listeners

Note:
    - Relationship names default to ``parent``/``children``; override with
      ``__tree_parent__`` and ``__tree_children__``
    - The encoding is fixed once the model is declared; switching encodings
      needs a data migration
    - Reparent persisted entities with ``TreeRepository.move``. Assigning
      ``parent`` or the parent foreign key directly and flushing raises
      ``InvalidMoveError``
"""

from __future__ import annotations

from typing import TYPE_CHECKING, ClassVar

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from tree_service.core.database.hierarchy.descriptor import TreeEncoding, describe_tree
from tree_service.core.database.hierarchy.paths import MaterializedPath

if TYPE_CHECKING:
    from sqlalchemy import Table


class TreeMixin:
    """Common tree declaration attributes."""

    __allow_unmapped__ = True

    __tree_encoding__: ClassVar[TreeEncoding]
    __tree_parent__: ClassVar[str] = "parent"
    __tree_children__: ClassVar[str] = "children"


class ClosureTableMixin(TreeMixin):
    """Closure-table encoding.

    Stores nothing on the entity row. ``register_tree_events`` creates the
    junction table ``<table>_closure`` with one ancestor and one descendant
    column per primary key column and keeps it in sync on insert.
    """

    __tree_encoding__ = TreeEncoding.CLOSURE_TABLE

    # Set by register_tree_events
    __closure_table__: ClassVar[Table | None] = None


class NestedSetMixin(TreeMixin):
    """Nested-set encoding.

    Provides:
        nsleft: Left bound of the node's interval
        nsright: Right bound of the node's interval

    Bounds are assigned on insert (right-most child of the parent, or after
    the last root) and rewritten by ``TreeRepository.move``.
    """

    __tree_encoding__ = TreeEncoding.NESTED_SET
    __tree_left__: ClassVar[str] = "nsleft"
    __tree_right__: ClassVar[str] = "nsright"

    nsleft: Mapped[int] = mapped_column(Integer, default=1, nullable=False, index=True)
    nsright: Mapped[int] = mapped_column(Integer, default=2, nullable=False, index=True)

    @property
    def subtree_size(self) -> int:
        """Number of nodes in this subtree, self included.

        Computed from the loaded bounds; does NOT query the database.
        """
        return (self.nsright - self.nsleft + 1) // 2


class MaterializedPathMixin(TreeMixin):
    """Materialized-path encoding.

    Provides:
        mpath: ``"<root key>.<...>.<own key>."``

    The path is written after insert, once the primary key is known.
    """

    __tree_encoding__ = TreeEncoding.MATERIALIZED_PATH
    __tree_path__: ClassVar[str] = "mpath"
    # None falls back to TreeSettings.path_separator / path_key_separator
    __tree_path_separator__: ClassVar[str | None] = None
    __tree_path_key_separator__: ClassVar[str | None] = None

    mpath: Mapped[str] = mapped_column(String(2048), default="", nullable=False, index=True)

    @property
    def tree_depth(self) -> int:
        """Number of segments in the loaded path (1 for a root).

        This property does NOT query the database.
        """
        descriptor = describe_tree(type(self))
        return MaterializedPath(
            self.mpath or "",
            separator=descriptor.path_separator,
            key_separator=descriptor.path_key_separator,
        ).depth


__all__ = [
    "ClosureTableMixin",
    "MaterializedPathMixin",
    "NestedSetMixin",
    "TreeMixin",
]
