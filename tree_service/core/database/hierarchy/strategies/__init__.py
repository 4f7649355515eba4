"""Tree strategies, one per encoding.

``strategy_for`` resolves the handler for a descriptor from ``STRATEGIES``;
supporting a new encoding means adding a ``TreeStrategy`` subclass and an
entry in that mapping.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from tree_service.core.database.exceptions import UnsupportedTreeOperationError
from tree_service.core.database.hierarchy.descriptor import TreeEncoding
from tree_service.core.database.hierarchy.strategies.base import TreeStrategy, alias_name, param_salt
from tree_service.core.database.hierarchy.strategies.closure_table import ClosureTableStrategy
from tree_service.core.database.hierarchy.strategies.materialized_path import MaterializedPathStrategy
from tree_service.core.database.hierarchy.strategies.nested_set import NestedSetStrategy

if TYPE_CHECKING:
    from tree_service.core.database.hierarchy.descriptor import TreeDescriptor
    from tree_service.core.settings import TreeSettings

STRATEGIES: dict[TreeEncoding, type[TreeStrategy]] = {
    TreeEncoding.CLOSURE_TABLE: ClosureTableStrategy,
    TreeEncoding.NESTED_SET: NestedSetStrategy,
    TreeEncoding.MATERIALIZED_PATH: MaterializedPathStrategy,
}


def strategy_for(
    descriptor: TreeDescriptor,
    settings: TreeSettings | None = None,
    *,
    operation: str = "tree",
) -> TreeStrategy:
    """Instantiate the strategy for ``descriptor``'s encoding.

    Raises:
        UnsupportedTreeOperationError: If the model is not a tree or no
            strategy handles its encoding.
    """
    encoding = descriptor.require(operation)
    strategy_cls = STRATEGIES.get(encoding)
    if strategy_cls is None:
        raise UnsupportedTreeOperationError(descriptor.name, operation, encoding=str(encoding))
    return strategy_cls(descriptor, settings)


__all__ = [
    "STRATEGIES",
    "ClosureTableStrategy",
    "MaterializedPathStrategy",
    "NestedSetStrategy",
    "TreeStrategy",
    "alias_name",
    "param_salt",
    "strategy_for",
]
