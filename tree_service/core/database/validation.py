"""SQL identifier validation utilities.

Closure junction tables and their columns are named at runtime from the
entity table and the configured suffixes, so the derived names are
validated before they reach ``Table(...)`` and DDL.

Example:
    from tree_service.core.database.validation import validate_identifier

    name = validate_identifier(f"{table.name}{suffix}", identifier_type="table")
"""

from __future__ import annotations

import re

# Portable identifier rules (PostgreSQL is the strictest target):
# - Max 63 characters
# - Start with letter or underscore
# - Contain letters, digits, underscores, dollar signs
VALID_IDENTIFIER = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_$]*$")
MAX_IDENTIFIER_LENGTH = 63

# SQL reserved keywords that should not be used as unquoted identifiers
RESERVED_KEYWORDS = frozenset(
    {
        "select",
        "insert",
        "update",
        "delete",
        "drop",
        "truncate",
        "create",
        "alter",
        "grant",
        "revoke",
        "union",
        "join",
        "where",
        "from",
        "table",
        "index",
        "database",
        "schema",
        "execute",
        "exec",
    },
)


class IdentifierValidationError(ValueError):
    """Invalid SQL identifier."""


def validate_identifier(
    name: str,
    *,
    identifier_type: str = "identifier",
    allow_reserved: bool = False,
) -> str:
    """Validate a SQL identifier.

    Args:
        name: The identifier to validate
        identifier_type: Type description for error messages (e.g., "table", "column")
        allow_reserved: If True, allow SQL reserved keywords

    Returns:
        The validated identifier (unchanged if valid)

    Raises:
        IdentifierValidationError: If the identifier is invalid

    Example:
        >>> validate_identifier("category_closure")
        'category_closure'
        >>> validate_identifier("category;--")  # Raises
        IdentifierValidationError: Invalid table name ...
    """
    if not name:
        msg = f"Empty {identifier_type} name not allowed"
        raise IdentifierValidationError(msg)

    if len(name) > MAX_IDENTIFIER_LENGTH:
        msg = f"{identifier_type} name exceeds maximum length of {MAX_IDENTIFIER_LENGTH}: {name!r}"
        raise IdentifierValidationError(msg)

    if not VALID_IDENTIFIER.match(name):
        msg = (
            f"Invalid {identifier_type} name {name!r}: must start with letter or underscore, "
            "contain only letters, digits, underscores, or dollar signs"
        )
        raise IdentifierValidationError(msg)

    if not allow_reserved and name.lower() in RESERVED_KEYWORDS:
        msg = f"{identifier_type} name {name!r} is a reserved SQL keyword"
        raise IdentifierValidationError(msg)

    return name


__all__ = [
    "MAX_IDENTIFIER_LENGTH",
    "RESERVED_KEYWORDS",
    "VALID_IDENTIFIER",
    "IdentifierValidationError",
    "validate_identifier",
]
