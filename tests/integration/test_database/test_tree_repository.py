"""Integration tests for TreeRepository across all tree encodings.

Every test runs once per encoding (closure table, nested set, materialized
path) against the same sample tree:

    A
    ├── B
    │   └── D
    └── C
    E

Covered:
- Roots, descendants and ancestors (flat lists, counts, in-memory trees)
- find_trees, shared session and per-root sessions
- Moves, including to root, and the auxiliary structure after each move
- Rejected moves leave the tree untouched
- Tree operations on a model without an encoding
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest
from sqlalchemy.orm import aliased

from tests.fixtures import Category, Folder, Tag, Topic
from tests.utils import SAMPLE_EDGES, assert_tree_consistent, names, seed_tree, tree_shape
from tree_service.core.database.exceptions import InvalidMoveError, NotFoundError, UnsupportedTreeOperationError
from tree_service.core.database.hierarchy import TreeRepository
from tree_service.core.settings import TreeSettings

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


pytestmark = pytest.mark.integration


# ============================================================================
# Insert bookkeeping
# ============================================================================


async def test_seeded_tree_is_consistent(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    """Insert listeners write a complete auxiliary structure."""
    await assert_tree_consistent(db_session, tree_model)


async def test_create_many_in_one_flush(db_session: AsyncSession, tree_model: type[Any]):
    """Parents and children added together are bookkept in dependency order."""
    repo = TreeRepository(tree_model)
    root_a = tree_model(name="A")
    root_b = tree_model(name="B")
    child = tree_model(name="A1", parent=root_a)
    grandchild = tree_model(name="A1x", parent=child)
    sibling = tree_model(name="A2", parent=root_a)

    await repo.create_many(db_session, [root_a, root_b, child, grandchild, sibling])

    await assert_tree_consistent(db_session, tree_model)
    assert names(await repo.find_roots(db_session)) == ["A", "B"]
    assert sorted(names(await repo.find_descendants(db_session, root_a))) == ["A1", "A1x", "A2"]
    assert names(await repo.find_ancestors(db_session, grandchild)) == ["A", "A1"]


# ============================================================================
# Reads
# ============================================================================


async def test_find_roots(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    repo = TreeRepository(tree_model)

    assert names(await repo.find_roots(db_session)) == ["A", "E"]


async def test_find_descendants(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    repo = TreeRepository(tree_model)
    nodes = sample_tree

    assert names(await repo.find_descendants(db_session, nodes["A"])) == ["B", "C", "D"]
    assert names(await repo.find_descendants(db_session, nodes["B"])) == ["D"]
    assert await repo.find_descendants(db_session, nodes["D"]) == []
    assert await repo.find_descendants(db_session, nodes["E"]) == []


async def test_find_descendants_include_self(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    repo = TreeRepository(tree_model)

    result = await repo.find_descendants(db_session, sample_tree["B"], include_self=True)

    assert names(result) == ["B", "D"]


async def test_find_ancestors(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    repo = TreeRepository(tree_model)
    nodes = sample_tree

    assert names(await repo.find_ancestors(db_session, nodes["D"])) == ["A", "B"]
    assert names(await repo.find_ancestors(db_session, nodes["C"])) == ["A"]
    assert await repo.find_ancestors(db_session, nodes["A"]) == []
    assert names(await repo.find_ancestors(db_session, nodes["D"], include_self=True)) == ["A", "B", "D"]


async def test_counts(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    repo = TreeRepository(tree_model)
    nodes = sample_tree

    assert await repo.count_descendants(db_session, nodes["A"]) == 3
    assert await repo.count_descendants(db_session, nodes["B"]) == 1
    assert await repo.count_descendants(db_session, nodes["E"]) == 0
    assert await repo.count_ancestors(db_session, nodes["D"]) == 2
    assert await repo.count_ancestors(db_session, nodes["A"]) == 0


async def test_counts_match_lists(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    repo = TreeRepository(tree_model)

    for entity in sample_tree.values():
        descendants = await repo.find_descendants(db_session, entity)
        ancestors = await repo.find_ancestors(db_session, entity)
        assert await repo.count_descendants(db_session, entity) == len(descendants)
        assert await repo.count_ancestors(db_session, entity) == len(ancestors)


async def test_find_descendants_tree(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    repo = TreeRepository(tree_model)

    tree = await repo.find_descendants_tree(db_session, sample_tree["A"])

    assert tree.entity is sample_tree["A"]
    assert tree_shape(tree) == {"A": {"B": {"D": {}}, "C": {}}}
    assert [node.depth for node in tree.walk()] == [1, 2, 1]
    assert names(tree.entities()) == ["B", "D", "C"]


async def test_find_descendants_tree_of_leaf(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    repo = TreeRepository(tree_model)

    tree = await repo.find_descendants_tree(db_session, sample_tree["D"])

    assert tree.entity is sample_tree["D"]
    assert tree.is_leaf


async def test_find_ancestors_tree(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    repo = TreeRepository(tree_model)

    node = await repo.find_ancestors_tree(db_session, sample_tree["D"])

    assert node.entity is sample_tree["D"]
    assert names(n.entity for n in node.ancestors()) == ["B", "A"]
    root = node.parent.parent
    assert root.parent is None
    assert root.children == (node.parent,)
    assert node.parent.children == (node,)


async def test_find_ancestors_tree_of_root(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    repo = TreeRepository(tree_model)

    node = await repo.find_ancestors_tree(db_session, sample_tree["E"])

    assert node.entity is sample_tree["E"]
    assert node.parent is None


async def test_find_trees(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    repo = TreeRepository(tree_model)

    trees = await repo.find_trees(db_session)

    assert [tree_shape(t) for t in trees] == [{"A": {"B": {"D": {}}, "C": {}}}, {"E": {}}]


async def test_find_trees_empty(db_session: AsyncSession, tree_model: type[Any]):
    assert await TreeRepository(tree_model).find_trees(db_session) == []


async def test_reads_are_repeatable(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    """Reading twice without a write in between gives the same results."""
    repo = TreeRepository(tree_model)
    a, d, e = sample_tree["A"], sample_tree["D"], sample_tree["E"]

    async def snapshot() -> dict[str, Any]:
        return {
            "roots": names(await repo.find_roots(db_session)),
            "descendants_a": names(await repo.find_descendants(db_session, a)),
            "descendants_e": names(await repo.find_descendants(db_session, e)),
            "ancestors_d": names(await repo.find_ancestors(db_session, d)),
            "tree_a": tree_shape(await repo.find_descendants_tree(db_session, a)),
            "trees": [tree_shape(t) for t in await repo.find_trees(db_session)],
        }

    first = await snapshot()
    second = await snapshot()

    assert first == second
    assert first["roots"] == ["A", "E"]
    assert first["descendants_e"] == []


async def test_find_trees_with_session_factory(
    session_factory: async_sessionmaker[AsyncSession], tree_model: type[Any]
):
    """Each root's tree is loaded in its own session, concurrently."""
    async with session_factory() as session:
        await seed_tree(session, tree_model, [*SAMPLE_EDGES, ("F", None), ("G", "F")])
        await session.commit()

    repo = TreeRepository(
        tree_model,
        settings=TreeSettings(max_concurrent_trees=2),
        session_factory=session_factory,
    )
    async with session_factory() as session:
        trees = await repo.find_trees(session)

    assert [tree_shape(t) for t in trees] == [
        {"A": {"B": {"D": {}}, "C": {}}},
        {"E": {}},
        {"F": {"G": {}}},
    ]


async def test_custom_aliases(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    """Aliases are configurable without changing results."""
    repo = TreeRepository(tree_model, settings=TreeSettings(entity_alias="node", closure_alias="link"))

    assert names(await repo.find_descendants(db_session, sample_tree["A"])) == ["B", "C", "D"]
    assert names(await repo.find_ancestors(db_session, sample_tree["D"])) == ["A", "B"]
    assert tree_shape(await repo.find_descendants_tree(db_session, sample_tree["B"])) == {"B": {"D": {}}}


async def test_descendants_query_composes(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    """The query builder returns a select that callers can narrow further."""
    repo = TreeRepository(tree_model)
    d = aliased(tree_model, name="d")
    stmt = repo.create_descendants_query(sample_tree["A"], alias=d).where(d.name != "C")

    result = await db_session.execute(stmt)

    assert sorted(names(result.scalars().all())) == ["B", "D"]


# ============================================================================
# Moves
# ============================================================================


async def test_move_leaf(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    repo = TreeRepository(tree_model)
    nodes = sample_tree

    await repo.move(db_session, nodes["D"], nodes["C"])

    assert nodes["D"].parent_id == nodes["C"].id
    assert names(await repo.find_descendants(db_session, nodes["C"])) == ["D"]
    assert await repo.find_descendants(db_session, nodes["B"]) == []
    assert names(await repo.find_ancestors(db_session, nodes["D"])) == ["A", "C"]
    await assert_tree_consistent(db_session, tree_model)


async def test_move_subtree_across_roots(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    repo = TreeRepository(tree_model)
    nodes = sample_tree

    await repo.move(db_session, nodes["B"], nodes["E"])

    assert names(await repo.find_descendants(db_session, nodes["E"])) == ["B", "D"]
    assert names(await repo.find_descendants(db_session, nodes["A"])) == ["C"]
    assert names(await repo.find_ancestors(db_session, nodes["D"])) == ["B", "E"]
    assert tree_shape(await repo.find_descendants_tree(db_session, nodes["E"])) == {"E": {"B": {"D": {}}}}
    await assert_tree_consistent(db_session, tree_model)


async def test_move_to_root(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    repo = TreeRepository(tree_model)
    nodes = sample_tree

    await repo.move(db_session, nodes["B"], None)

    assert nodes["B"].parent_id is None
    assert names(await repo.find_roots(db_session)) == ["A", "B", "E"]
    assert await repo.find_ancestors(db_session, nodes["B"]) == []
    assert names(await repo.find_ancestors(db_session, nodes["D"])) == ["B"]
    assert names(await repo.find_descendants(db_session, nodes["A"])) == ["C"]
    await assert_tree_consistent(db_session, tree_model)


async def test_move_root_under_node(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    repo = TreeRepository(tree_model)
    nodes = sample_tree

    await repo.move(db_session, nodes["E"], nodes["D"])

    assert names(await repo.find_roots(db_session)) == ["A"]
    assert names(await repo.find_ancestors(db_session, nodes["E"])) == ["A", "B", "D"]
    assert await repo.count_descendants(db_session, nodes["A"]) == 4
    await assert_tree_consistent(db_session, tree_model)


async def test_move_to_current_parent_is_idempotent(
    db_session: AsyncSession, tree_model: type[Any], sample_tree
):
    repo = TreeRepository(tree_model)
    nodes = sample_tree

    await repo.move(db_session, nodes["D"], nodes["B"])
    await repo.move(db_session, nodes["D"], nodes["B"])

    assert tree_shape(await repo.find_descendants_tree(db_session, nodes["A"])) == {
        "A": {"B": {"D": {}}, "C": {}}
    }
    await assert_tree_consistent(db_session, tree_model)


async def test_sequence_of_moves(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    repo = TreeRepository(tree_model)
    nodes = sample_tree

    await repo.move(db_session, nodes["C"], nodes["B"])
    await repo.move(db_session, nodes["B"], nodes["E"])
    await repo.move(db_session, nodes["D"], None)
    await repo.move(db_session, nodes["A"], nodes["C"])

    await assert_tree_consistent(db_session, tree_model)
    trees = await repo.find_trees(db_session)
    assert [tree_shape(t) for t in trees] == [{"D": {}}, {"E": {"B": {"C": {"A": {}}}}}]


async def test_moves_after_commit(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    """A move outside an open transaction runs in its own."""
    repo = TreeRepository(tree_model)
    nodes = sample_tree
    await db_session.commit()

    await repo.move(db_session, nodes["C"], nodes["D"])
    await db_session.commit()

    assert names(await repo.find_ancestors(db_session, nodes["C"])) == ["A", "B", "D"]
    await assert_tree_consistent(db_session, tree_model)


async def test_insert_after_move(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    """New children land in the moved subtree's new position."""
    repo = TreeRepository(tree_model)
    nodes = sample_tree
    await repo.move(db_session, nodes["B"], nodes["E"])

    leaf = await repo.create(db_session, tree_model(name="X", parent_id=nodes["D"].id))

    assert names(await repo.find_ancestors(db_session, leaf)) == ["B", "D", "E"]
    await assert_tree_consistent(db_session, tree_model)


@pytest.mark.parametrize(
    ("entity", "destination"),
    [("A", "A"), ("A", "B"), ("A", "D"), ("B", "D")],
    ids=["self", "child", "grandchild", "own-child"],
)
async def test_move_into_own_subtree_rejected(
    db_session: AsyncSession, tree_model: type[Any], sample_tree, entity: str, destination: str
):
    repo = TreeRepository(tree_model)
    nodes = sample_tree

    with pytest.raises(InvalidMoveError):
        await repo.move(db_session, nodes[entity], nodes[destination])

    assert tree_shape(await repo.find_descendants_tree(db_session, nodes["A"])) == {
        "A": {"B": {"D": {}}, "C": {}}
    }
    assert nodes[entity].parent_id == (None if entity == "A" else nodes["A"].id)
    await assert_tree_consistent(db_session, tree_model)


async def test_move_unsaved_entity_rejected(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    repo = TreeRepository(tree_model)

    with pytest.raises(InvalidMoveError, match="not persisted"):
        await repo.move(db_session, tree_model(name="new"), sample_tree["A"])


async def test_direct_parent_change_rejected(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    """Reparenting by plain assignment fails at flush."""
    sample_tree["D"].parent_id = sample_tree["C"].id

    with pytest.raises(InvalidMoveError, match="outside TreeRepository.move") as exc_info:
        await db_session.flush()

    assert exc_info.value.details["attributes"] == ["parent_id"]
    await db_session.rollback()


async def test_other_updates_still_flush(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    repo = TreeRepository(tree_model)
    sample_tree["D"].name = "D2"
    await db_session.flush()

    assert names(await repo.find_descendants(db_session, sample_tree["B"])) == ["D2"]
    await assert_tree_consistent(db_session, tree_model)


async def test_plan_move_does_not_write(db_session: AsyncSession, tree_model: type[Any], sample_tree):
    repo = TreeRepository(tree_model)
    nodes = sample_tree

    plan = await repo.plan_move(db_session, nodes["D"], nodes["C"])

    assert len(plan) >= 1
    assert plan.encoding == tree_model.__tree_encoding__
    assert names(await repo.find_descendants(db_session, nodes["B"])) == ["D"]
    await assert_tree_consistent(db_session, tree_model)


# ============================================================================
# Non-tree models
# ============================================================================


@pytest.mark.parametrize(
    "call",
    [
        lambda repo, session, tag: repo.find_roots(session),
        lambda repo, session, tag: repo.find_trees(session),
        lambda repo, session, tag: repo.find_descendants(session, tag),
        lambda repo, session, tag: repo.find_descendants_tree(session, tag),
        lambda repo, session, tag: repo.count_descendants(session, tag),
        lambda repo, session, tag: repo.find_ancestors(session, tag),
        lambda repo, session, tag: repo.find_ancestors_tree(session, tag),
        lambda repo, session, tag: repo.count_ancestors(session, tag),
        lambda repo, session, tag: repo.move(session, tag, None),
    ],
    ids=[
        "find_roots",
        "find_trees",
        "find_descendants",
        "find_descendants_tree",
        "count_descendants",
        "find_ancestors",
        "find_ancestors_tree",
        "count_ancestors",
        "move",
    ],
)
async def test_non_tree_model_rejected(db_session: AsyncSession, call):
    repo = TreeRepository(Tag)
    tag = await repo.create(db_session, Tag(name="plain"))

    with pytest.raises(UnsupportedTreeOperationError) as exc_info:
        await call(repo, db_session, tag)

    assert exc_info.value.model_name == "Tag"


async def test_non_tree_query_builder_rejected(db_session: AsyncSession):
    repo = TreeRepository(Tag)
    tag = await repo.create(db_session, Tag(name="plain"))

    with pytest.raises(UnsupportedTreeOperationError, match="create_descendants_query"):
        repo.create_descendants_query(tag)
    with pytest.raises(UnsupportedTreeOperationError, match="create_ancestors_query"):
        repo.create_ancestors_query(tag)


async def test_crud_still_works_on_tree_repository(db_session: AsyncSession):
    """TreeRepository keeps the BaseRepository surface."""
    repo = TreeRepository(Category)
    created = await repo.create(db_session, Category(name="solo"))

    assert await repo.get(db_session, created.id) is created
    assert await repo.get_by(db_session, Category.name, "solo") is created
    assert await repo.get_or_raise(db_session, created.id) is created
    assert list(await repo.list(db_session)) == [created]

    await repo.delete(db_session, created)
    assert await repo.get(db_session, created.id) is None
    with pytest.raises(NotFoundError):
        await repo.get_or_raise(db_session, created.id)


async def test_encodings_are_independent(db_session: AsyncSession):
    """Each model keeps its own strategy even in one session."""
    for model in (Category, Folder, Topic):
        await seed_tree(db_session, model, SAMPLE_EDGES)

    for model in (Category, Folder, Topic):
        repo = TreeRepository(model)
        d = await repo.get_by(db_session, model.name, "D")
        assert names(await repo.find_ancestors(db_session, d)) == ["A", "B"]
        await assert_tree_consistent(db_session, model)
