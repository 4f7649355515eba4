"""Test utilities and helper functions.

Usage:
    from tests.utils import SAMPLE_EDGES, seed_tree, names

    nodes = await seed_tree(session, Category, SAMPLE_EDGES)
    assert names(await repo.find_roots(session)) == ["A", "E"]
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from tree_service.core.database.hierarchy import TreeEncoding, TreeNode, describe_tree

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

# A
# ├── B
# │   └── D
# └── C
# E
SAMPLE_EDGES: list[tuple[str, str | None]] = [
    ("A", None),
    ("B", "A"),
    ("C", "A"),
    ("D", "B"),
    ("E", None),
]


async def seed_tree(
    session: AsyncSession,
    model: type[Any],
    edges: Iterable[tuple[str, str | None]],
) -> dict[str, Any]:
    """Insert one entity per (name, parent name) edge, flushing each one.

    Parents must come before their children.
    """
    nodes: dict[str, Any] = {}
    for name, parent_name in edges:
        entity = model(name=name)
        if parent_name is not None:
            entity.parent_id = nodes[parent_name].id
        session.add(entity)
        await session.flush()
        nodes[name] = entity
    return nodes


def names(entities: Iterable[Any]) -> list[str]:
    return [entity.name for entity in entities]


def tree_shape(node: TreeNode[Any]) -> dict[str, Any]:
    """Nested ``{name: {child name: ...}}`` view of a descendants tree."""
    return {node.entity.name: _children_shape(node)}


def _children_shape(node: TreeNode[Any]) -> dict[str, Any]:
    shape: dict[str, Any] = {}
    for child in node.children:
        shape.update(tree_shape(child))
    return shape


async def parent_links(session: AsyncSession, model: type[Any]) -> dict[int, int | None]:
    """id -> parent id, read from the database."""
    rows = (await session.execute(select(model.id, model.parent_id))).all()
    return {row[0]: row[1] for row in rows}


def expected_closure(links: dict[int, int | None]) -> set[tuple[int, int]]:
    """Every (ancestor, descendant) pair implied by the parent links, reflexive pairs included."""
    pairs: set[tuple[int, int]] = set()
    for node in links:
        current: int | None = node
        while current is not None:
            pairs.add((current, node))
            current = links[current]
    return pairs


async def assert_tree_consistent(session: AsyncSession, model: type[Any]) -> None:
    """Check the model's auxiliary structure against its parent links."""
    links = await parent_links(session, model)
    descriptor = describe_tree(model)

    if descriptor.encoding is TreeEncoding.CLOSURE_TABLE:
        junction = descriptor.closure.table
        rows = (await session.execute(select(junction.c.id_ancestor, junction.c.id_descendant))).all()
        assert {(row[0], row[1]) for row in rows} == expected_closure(links)

    elif descriptor.encoding is TreeEncoding.NESTED_SET:
        rows = (await session.execute(select(model.id, model.nsleft, model.nsright))).all()
        bounds = {row[0]: (row[1], row[2]) for row in rows}
        all_bounds = sorted(b for pair in bounds.values() for b in pair)
        assert all_bounds == list(range(1, 2 * len(bounds) + 1))
        children: defaultdict[int, list[int]] = defaultdict(list)
        for node, parent in links.items():
            if parent is not None:
                children[parent].append(node)
                assert bounds[parent][0] < bounds[node][0] < bounds[node][1] < bounds[parent][1]
        for node, (left, right) in bounds.items():
            assert (right - left + 1) // 2 == 1 + _subtree_size(node, children)

    elif descriptor.encoding is TreeEncoding.MATERIALIZED_PATH:
        rows = (await session.execute(select(model.id, model.mpath))).all()
        paths = {row[0]: row[1] for row in rows}
        for node, parent in links.items():
            prefix = paths[parent] if parent is not None else ""
            assert paths[node] == f"{prefix}{node}."


def _subtree_size(node: int, children: dict[int, Sequence[int]]) -> int:
    return sum(1 + _subtree_size(child, children) for child in children.get(node, ()))
