"""In-memory tree assembly from flat query results.

Tree queries return a flat list of hydrated entities plus, per row, the
labelled primary key and parent foreign key. ``build_relation_maps`` turns
the labelled values into ``RelationMapEntry`` pairs; the two builders then
link entities into ``TreeNode`` structures.

The builders never touch the ORM ``parent``/``children`` attributes of the
entities: assigning to them would mark the objects dirty and cascade on the
next flush. Callers get a separate, immutable node tree instead.
"""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeAlias, TypeVar

from tree_service.core.database.hierarchy.dialect import coerce_value

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator, Sequence

    from sqlalchemy import Column, Row

    from tree_service.core.database.hierarchy.descriptor import TreeDescriptor

Key: TypeAlias = tuple[Any, ...]

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RelationMapEntry:
    """(entity key, parent key) pair read from one result row."""

    id: Key
    parent_id: Key | None


@dataclass(frozen=True, slots=True, eq=False)
class TreeNode(Generic[T]):
    """Immutable tree node wrapping one entity.

    ``children`` and ``parent`` are filled in by the builders in this module
    and never change afterwards. Nodes compare by identity.
    """

    entity: T
    children: tuple[TreeNode[T], ...] = ()
    parent: TreeNode[T] | None = field(default=None, repr=False)

    @property
    def depth(self) -> int:
        """Number of parent links above this node."""
        depth, node = 0, self.parent
        while node is not None:
            depth += 1
            node = node.parent
        return depth

    @property
    def is_leaf(self) -> bool:
        return not self.children

    def walk(self) -> Iterator[TreeNode[T]]:
        """Yield every descendant node depth-first (pre-order), self excluded."""
        stack = list(reversed(self.children))
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def entities(self) -> list[T]:
        """Descendant entities, flattened in ``walk()`` order."""
        return [node.entity for node in self.walk()]

    def ancestors(self) -> Iterator[TreeNode[T]]:
        """Yield the parent chain, nearest parent first."""
        node = self.parent
        while node is not None:
            yield node
            node = node.parent


def _attach_children(node: TreeNode[Any], children: Sequence[TreeNode[Any]]) -> None:
    object.__setattr__(node, "children", tuple(children))


def _attach_parent(node: TreeNode[Any], parent: TreeNode[Any]) -> None:
    object.__setattr__(node, "parent", parent)


def label_for(alias: str, key: str) -> str:
    """Result label of an entity column selected next to the entity."""
    return f"{alias}_{key}"


def build_relation_maps(
    rows: Iterable[Row[Any]],
    descriptor: TreeDescriptor,
    alias: str,
) -> list[RelationMapEntry]:
    """Read (id, parent id) pairs from labelled result rows.

    Rows carry ``<alias>_<pk>`` and ``<alias>_<parent fk>`` labels (attribute
    key, or the database column name when no attribute key exists). Values
    are coerced to the column type before they become keys.
    """
    id_columns: list[tuple[str, Column[Any]]] = [
        (label_for(alias, attr), column)
        for attr, column in zip(descriptor.pk_attributes, descriptor.primary_key, strict=True)
    ]
    # parent FK values ordered like the referenced primary key
    by_ref = {jc.referenced.key: jc for jc in descriptor.parent_columns}
    parent_columns = [
        (label_for(alias, by_ref[pk.key].label_key), by_ref[pk.key].column) for pk in descriptor.primary_key
    ]

    entries: list[RelationMapEntry] = []
    for row in rows:
        mapping = row._mapping
        key = tuple(coerce_value(column, mapping[label]) for label, column in id_columns)
        parent = tuple(coerce_value(column, mapping[label]) for label, column in parent_columns)
        entries.append(RelationMapEntry(id=key, parent_id=None if None in parent else parent))
    return entries


def build_descendants_tree(
    root: T,
    entities: Sequence[T],
    relation_maps: Sequence[RelationMapEntry],
    key: Callable[[T], Key],
) -> TreeNode[T]:
    """Link ``entities`` below ``root`` following the relation map.

    Breadth-first over an explicit queue; a visited set guards against
    entities appearing twice in the input. Children keep the relation-map
    order.
    """
    by_id = {key(entity): entity for entity in entities}
    children_of: defaultdict[Key, list[Key]] = defaultdict(list)
    for entry in relation_maps:
        if entry.parent_id is not None and entry.id in by_id:
            children_of[entry.parent_id].append(entry.id)

    root_id = key(root)
    root_node = TreeNode(root)
    visited = {root_id}
    queue: deque[tuple[Key, TreeNode[T]]] = deque([(root_id, root_node)])
    while queue:
        node_id, node = queue.popleft()
        children: list[TreeNode[T]] = []
        for child_id in children_of.get(node_id, ()):
            if child_id in visited:
                continue
            visited.add(child_id)
            child = TreeNode(by_id[child_id], parent=node)
            children.append(child)
            queue.append((child_id, child))
        _attach_children(node, children)
    return root_node


def build_ancestors_tree(
    node: T,
    entities: Sequence[T],
    relation_maps: Sequence[RelationMapEntry],
    key: Callable[[T], Key],
) -> TreeNode[T]:
    """Link ``node`` to its parent chain found in ``entities``.

    Stops at the first node whose parent is missing from the fetched set
    (the root, normally). Each ancestor node lists the node below it as its
    only child.
    """
    by_id = {key(entity): entity for entity in entities}
    parent_of = {entry.id: entry.parent_id for entry in relation_maps}

    current_id = key(node)
    start = current = TreeNode(node)
    visited = {current_id}
    while True:
        parent_id = parent_of.get(current_id)
        if parent_id is None or parent_id in visited or parent_id not in by_id:
            break
        visited.add(parent_id)
        parent = TreeNode(by_id[parent_id], children=(current,))
        _attach_parent(current, parent)
        current, current_id = parent, parent_id
    return start


__all__ = [
    "Key",
    "RelationMapEntry",
    "TreeNode",
    "build_ancestors_tree",
    "build_descendants_tree",
    "build_relation_maps",
    "label_for",
]
