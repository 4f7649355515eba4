"""Core database package with composable base classes, mixins, and repositories.

Base Classes and Mixins:
    - Base: Declarative base with auto table naming and constraint naming
    - IntegerPKMixin, UUIDPKMixin: Primary key strategies
    - TimestampMixin: created_at, updated_at tracking

Repositories:
    - BaseRepository[T]: Generic CRUD with explicit session passing
    - TreeRepository[T]: BaseRepository plus ancestor/descendant queries,
      in-memory trees and subtree moves (see ``hierarchy``)

Tree Encodings:
    - ClosureTableMixin, NestedSetMixin, MaterializedPathMixin
    - register_tree_events: Call once after defining models

Validation:
    - validate_identifier: Validate SQL identifiers (derived closure names)

Exceptions:
    - RepositoryError: Base exception for repository operations
    - NotFoundError: Entity not found
    - UnsupportedTreeOperationError: Tree operation on a non-tree model
    - TreeConfigurationError: Tree model declared inconsistently
    - InvalidMoveError: Move that would create a cycle
    - IdentifierValidationError: Invalid SQL identifier

Example:
    from tree_service.core.database import Base, IntegerPKMixin, TreeRepository
    from tree_service.core.database import ClosureTableMixin, register_tree_events

    class Category(Base, IntegerPKMixin, ClosureTableMixin):
        ...

    register_tree_events(Base)
    repo = TreeRepository(Category)

    async with get_async_session() as session:
        roots = await repo.find_roots(session)
"""

from tree_service.core.database.base import (
    NAMING_CONVENTION,
    Base,
    IntegerPKMixin,
    TimestampMixin,
    UUIDPKMixin,
)
from tree_service.core.database.exceptions import (
    InvalidMoveError,
    NotFoundError,
    RepositoryError,
    TreeConfigurationError,
    UnsupportedTreeOperationError,
)
from tree_service.core.database.hierarchy import (
    ClosureTableMixin,
    MaterializedPath,
    MaterializedPathMixin,
    MovePlan,
    NestedSetMixin,
    TreeEncoding,
    TreeNode,
    TreeRepository,
    describe_tree,
    register_tree_events,
)
from tree_service.core.database.repository import BaseRepository
from tree_service.core.database.validation import IdentifierValidationError, validate_identifier

__all__ = [
    "NAMING_CONVENTION",
    "Base",
    "BaseRepository",
    "ClosureTableMixin",
    "IdentifierValidationError",
    "IntegerPKMixin",
    "InvalidMoveError",
    "MaterializedPath",
    "MaterializedPathMixin",
    "MovePlan",
    "NestedSetMixin",
    "NotFoundError",
    "RepositoryError",
    "TimestampMixin",
    "TreeConfigurationError",
    "TreeEncoding",
    "TreeNode",
    "TreeRepository",
    "UUIDPKMixin",
    "UnsupportedTreeOperationError",
    "describe_tree",
    "register_tree_events",
    "validate_identifier",
]
