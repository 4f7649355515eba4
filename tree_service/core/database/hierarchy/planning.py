"""Move plans: the writes that relocate a subtree."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sqlalchemy.engine import Dialect
    from sqlalchemy.sql import Executable

    from tree_service.core.database.hierarchy.descriptor import TreeEncoding


@dataclass(frozen=True, slots=True)
class MovePlan:
    """Ordered write statements for one move.

    Attributes:
        encoding: Encoding the plan was built for
        statements: SQLAlchemy executables, run in order in one transaction
        rows: Closure rows the plan inserts (closure-table plans only),
            keyed by junction column name
    """

    encoding: TreeEncoding
    statements: tuple[Executable, ...]
    rows: tuple[dict[str, Any], ...] = ()

    def __len__(self) -> int:
        return len(self.statements)

    def compile(self, dialect: Dialect) -> list[tuple[str, dict[str, Any]]]:
        """Render each statement to (SQL text, bound parameters) for ``dialect``."""
        rendered = []
        for statement in self.statements:
            compiled = statement.compile(dialect=dialect)
            rendered.append((str(compiled), dict(compiled.params)))
        return rendered


__all__ = ["MovePlan"]
