"""Database repository exceptions.

Custom exceptions for repository and tree operations that provide better
error messages and typing than raw SQLAlchemy exceptions. Errors raised by
SQLAlchemy itself (connectivity, constraint violations, serialization
failures) are never wrapped; they propagate to the caller unchanged.
"""
from __future__ import annotations

from typing import Any


class RepositoryError(Exception):
    """Base exception for repository operations.

    Raised when a repository operation fails due to programming
    errors, configuration issues, or unexpected states.

    This is distinct from data-related errors (NotFoundError) and
    indicates a problem with the repository itself.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize repository error.

        Args:
            message: Error description
            details: Additional context about the error
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Format error message with details."""
        if self.details:
            details_str = ", ".join(f"{k}={v!r}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class NotFoundError(RepositoryError):
    """Entity not found in database.

    Attributes:
        model_name: Name of the model class that wasn't found
        identifier: The key/value that was searched for
    """

    def __init__(self, model_name: str, identifier: dict[str, Any]):
        """Initialize not found error.

        Args:
            model_name: Name of the model (e.g., "Category")
            identifier: Key-value pairs used in the search (e.g., {"id": 123})
        """
        self.model_name = model_name
        self.identifier = identifier

        id_str = ", ".join(f"{k}={v!r}" for k, v in identifier.items())
        message = f"{model_name} not found with {id_str}"

        super().__init__(message, details={"model": model_name, **identifier})

    def __repr__(self) -> str:
        """Repr for debugging."""
        return f"NotFoundError(model={self.model_name!r}, identifier={self.identifier!r})"


class UnsupportedTreeOperationError(RepositoryError):
    """Tree operation requested on an entity that cannot serve it.

    Raised when an ancestor/descendant/move operation targets a model that
    was not declared with a tree encoding, or an encoding that has no
    handler for the requested operation.

    Attributes:
        model_name: Name of the model class
        operation: Name of the requested operation
    """

    def __init__(
        self,
        model_name: str,
        operation: str,
        encoding: str | None = None,
    ):
        """Initialize unsupported operation error.

        Args:
            model_name: Name of the model
            operation: Operation that was requested (e.g., "find_descendants")
            encoding: Declared encoding, if any
        """
        self.model_name = model_name
        self.operation = operation
        self.encoding = encoding

        message = f"Tree operation '{operation}' is not supported for {model_name}"
        details: dict[str, Any] = {"model": model_name, "operation": operation}
        if encoding is not None:
            details["encoding"] = encoding
        super().__init__(message, details=details)


class TreeConfigurationError(RepositoryError):
    """Tree model declared inconsistently.

    Raised when a model carries an encoding mixin but lacks the parent
    relationship, the auxiliary columns, or the junction table that the
    encoding needs.
    """

    def __init__(self, model_name: str, reason: str):
        """Initialize configuration error.

        Args:
            model_name: Name of the misconfigured model
            reason: What is missing or inconsistent
        """
        self.model_name = model_name
        super().__init__(
            f"Invalid tree declaration on {model_name}: {reason}",
            details={"model": model_name},
        )


class InvalidMoveError(RepositoryError):
    """Move request that would break the tree.

    Raised when the destination lies inside the moving subtree (the
    entity would become its own ancestor), when either side of the move
    has not been persisted yet, or when a flush changes a parent foreign
    key outside ``TreeRepository.move``.
    """

    def __init__(self, model_name: str, reason: str, **identifier: Any):
        """Initialize invalid move error.

        Args:
            model_name: Name of the model
            reason: Why the move was rejected
            **identifier: Keys of the entities involved
        """
        self.model_name = model_name
        self.reason = reason
        super().__init__(
            f"Cannot move {model_name}: {reason}",
            details={"model": model_name, **identifier},
        )


__all__ = [
    "InvalidMoveError",
    "NotFoundError",
    "RepositoryError",
    "TreeConfigurationError",
    "UnsupportedTreeOperationError",
]
