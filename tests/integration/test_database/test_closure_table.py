"""Integration tests specific to the closure-table encoding.

Covers:
- The closure rows written on insert (reflexive row plus inherited ancestors)
- The exact DELETE/INSERT plan of a move
- Composite primary keys
- Cascading deletes of closure rows
- Moves of subtrees wider than one statement batch
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy import select
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import selectinload

from tests.fixtures import Category, Region
from tests.utils import assert_tree_consistent, names, seed_tree
from tree_service.core.database.hierarchy import TreeEncoding, TreeRepository, describe_tree
from tree_service.core.database.hierarchy.strategies.closure_table import MOVE_BATCH_SIZE

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


pytestmark = pytest.mark.integration


async def _closure_pairs(session: AsyncSession) -> set[tuple[int, int]]:
    junction = describe_tree(Category).closure.table
    rows = (await session.execute(select(junction.c.id_ancestor, junction.c.id_descendant))).all()
    return {(row[0], row[1]) for row in rows}


async def test_insert_writes_closure_rows(db_session: AsyncSession):
    nodes = await seed_tree(db_session, Category, [("A", None), ("B", "A"), ("C", "B")])
    a, b, c = nodes["A"].id, nodes["B"].id, nodes["C"].id

    assert await _closure_pairs(db_session) == {
        (a, a),
        (b, b),
        (c, c),
        (a, b),
        (a, c),
        (b, c),
    }


async def test_move_plan_for_leaf(db_session: AsyncSession):
    """Moving leaf B from A to C deletes B's rows and inserts (A, B), (C, B), (B, B)."""
    nodes = await seed_tree(db_session, Category, [("A", None), ("B", "A"), ("C", "A")])
    a, b, c = nodes["A"].id, nodes["B"].id, nodes["C"].id
    repo = TreeRepository(Category)

    plan = await repo.plan_move(db_session, nodes["B"], nodes["C"])

    assert plan.encoding is TreeEncoding.CLOSURE_TABLE
    assert len(plan) == 2
    assert list(plan.rows) == [
        {"id_ancestor": a, "id_descendant": b},
        {"id_ancestor": c, "id_descendant": b},
        {"id_ancestor": b, "id_descendant": b},
    ]

    (delete_sql, delete_params), (insert_sql, _) = plan.compile(postgresql.dialect())
    assert delete_sql.startswith("DELETE FROM test_categories_closure WHERE")
    assert f"test_categories_closure.id_descendant = %(id_descendant_{b})s" in delete_sql
    assert delete_params == {f"id_descendant_{b}": b}
    assert insert_sql.startswith("INSERT INTO test_categories_closure (id_ancestor, id_descendant) VALUES")

    await repo.move(db_session, nodes["B"], nodes["C"])

    assert await _closure_pairs(db_session) == {(a, a), (b, b), (c, c), (a, c), (a, b), (c, b)}


async def test_move_plan_covers_whole_subtree(db_session: AsyncSession):
    nodes = await seed_tree(
        db_session, Category, [("A", None), ("B", "A"), ("D", "B"), ("F", "D"), ("E", None)]
    )
    repo = TreeRepository(Category)

    plan = await repo.plan_move(db_session, nodes["B"], nodes["E"])

    (delete_sql, delete_params), _ = plan.compile(postgresql.dialect())
    assert delete_sql.count(" OR ") == 2
    assert sorted(delete_params.values()) == sorted(nodes[n].id for n in ("B", "D", "F"))
    # (E, B), (B, B), (E, D), (B, D), (D, D), (E, F), (B, F), (D, F), (F, F)
    assert len(plan.rows) == 9

    await repo.move(db_session, nodes["B"], nodes["E"])

    await assert_tree_consistent(db_session, Category)
    assert names(await repo.find_ancestors(db_session, nodes["F"])) == ["B", "D", "E"]


async def test_delete_leaf_cascades_closure_rows(db_session: AsyncSession):
    nodes = await seed_tree(db_session, Category, [("A", None), ("B", "A")])
    repo = TreeRepository(Category)
    b = nodes["B"].id

    await repo.delete(db_session, nodes["B"])

    assert not {pair for pair in await _closure_pairs(db_session) if b in pair}
    assert await repo.find_descendants(db_session, nodes["A"]) == []


# ============================================================================
# Composite primary keys
# ============================================================================


async def _seed_regions(session: AsyncSession) -> dict[str, Region]:
    # (1, 1) north > (1, 2) coast > (1, 3) bay ; (2, 1) south
    regions = {
        "north": Region(tenant_id=1, num=1, name="north"),
        "coast": Region(tenant_id=1, num=2, name="coast", parent_tenant_id=1, parent_num=1),
        "bay": Region(tenant_id=1, num=3, name="bay", parent_tenant_id=1, parent_num=2),
        "south": Region(tenant_id=2, num=1, name="south"),
    }
    for region in regions.values():
        session.add(region)
        await session.flush()
    return regions


async def test_composite_key_closure_table(db_session: AsyncSession):
    descriptor = describe_tree(Region)

    junction = descriptor.closure.table
    assert junction.name == "test_regions_closure"
    assert {c.name for c in junction.columns} == {
        "tenant_id_ancestor",
        "num_ancestor",
        "tenant_id_descendant",
        "num_descendant",
    }
    assert len(junction.foreign_key_constraints) == 2


async def test_composite_key_queries(db_session: AsyncSession):
    regions = await _seed_regions(db_session)
    repo = TreeRepository(Region)

    assert names(await repo.find_roots(db_session)) == ["north", "south"]
    assert names(await repo.find_descendants(db_session, regions["north"])) == ["coast", "bay"]
    assert names(await repo.find_ancestors(db_session, regions["bay"])) == ["north", "coast"]
    assert await repo.count_descendants(db_session, regions["south"]) == 0

    tree = await repo.find_descendants_tree(db_session, regions["north"])
    assert [node.entity.name for node in tree.walk()] == ["coast", "bay"]


async def test_composite_key_move(db_session: AsyncSession):
    regions = await _seed_regions(db_session)
    repo = TreeRepository(Region)

    plan = await repo.plan_move(db_session, regions["coast"], regions["south"])
    _, params = plan.compile(postgresql.dialect())[0]
    assert params == {
        "tenant_id_descendant_1_2": 1,
        "num_descendant_1_2": 2,
        "tenant_id_descendant_1_3": 1,
        "num_descendant_1_3": 3,
    }

    await repo.move(db_session, regions["coast"], regions["south"])

    assert (regions["coast"].parent_tenant_id, regions["coast"].parent_num) == (2, 1)
    assert names(await repo.find_descendants(db_session, regions["south"])) == ["coast", "bay"]
    assert names(await repo.find_ancestors(db_session, regions["bay"])) == ["coast", "south"]
    assert await repo.find_descendants(db_session, regions["north"]) == []


async def test_composite_key_get_with_options(db_session: AsyncSession):
    regions = await _seed_regions(db_session)
    repo = TreeRepository(Region)

    coast = await repo.get(db_session, (1, 2), options=[selectinload(Region.children)])

    assert coast is regions["coast"]
    assert await repo.get(db_session, (2, 2), options=[selectinload(Region.children)]) is None
    assert await repo.get_or_raise(db_session, (2, 1)) is regions["south"]


async def test_move_wide_subtree_in_batches(db_session: AsyncSession):
    """A subtree with more nodes than one batch is moved through several statements."""
    repo = TreeRepository(Category)
    root = Category(name="root")
    hub = Category(name="hub", parent=root)
    target = Category(name="target")
    leaves = [Category(name=f"leaf-{i}", parent=hub) for i in range(MOVE_BATCH_SIZE + 100)]
    db_session.add_all([root, hub, target, *leaves])
    await db_session.flush()

    plan = await repo.plan_move(db_session, hub, target)

    # 601 DELETE groups, 2 + 3 * 600 INSERT rows
    assert len(plan.rows) == 2 + 3 * len(leaves)
    assert len(plan) == 2 + 4
    assert all(len(stmt.compile().params) <= 2 * MOVE_BATCH_SIZE for stmt in plan.statements)

    await repo.move(db_session, hub, target)

    await assert_tree_consistent(db_session, Category)
    assert await repo.count_descendants(db_session, target) == len(leaves) + 1
    assert await repo.count_descendants(db_session, root) == 0
