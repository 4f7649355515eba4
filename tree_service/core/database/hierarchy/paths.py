"""Python value object for materialized paths.

A materialized path is the concatenation of one segment per node from the
root down to the node itself. Each segment is the node's primary key
(composite keys joined by the key separator) followed by the path
separator:

- "1."          root with id 1
- "1.3.7."      node 7, child of 3, grandchild of 1
- "4_2.4_9."    composite keys (4, 2) -> (4, 9)

The trailing separator keeps prefix tests exact: "1." is never a prefix of
"12.". This wrapper provides the Python-side arithmetic the insert listener
and the move planner need, without database queries.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator


class MaterializedPath:
    """Immutable materialized path.

    Example:
        >>> path = MaterializedPath("1.3.7.")
        >>> path.depth
        3
        >>> path.parent
        MaterializedPath('1.3.')
        >>> path.is_ancestor_of("1.3.7.9.")
        True
        >>> path.rebase("1.3.", "5.")
        MaterializedPath('5.7.')
    """

    __slots__ = ("_path", "_segments", "key_separator", "separator")

    def __init__(
        self,
        path: str | MaterializedPath = "",
        *,
        separator: str = ".",
        key_separator: str = "_",
    ) -> None:
        """Initialize from a stored path string.

        Raises:
            ValueError: If a non-empty path lacks its trailing separator or
                contains an empty segment.
        """
        if isinstance(path, MaterializedPath):
            separator, key_separator = path.separator, path.key_separator
            path = path._path
        self.separator = separator
        self.key_separator = key_separator
        self._path = str(path)
        if not self._path:
            self._segments: tuple[str, ...] = ()
            return
        if not self._path.endswith(separator):
            msg = f"Materialized path must end with {separator!r}: {self._path!r}"
            raise ValueError(msg)
        segments = tuple(self._path[: -len(separator)].split(separator))
        if any(not s for s in segments):
            msg = f"Empty segment in materialized path {self._path!r}"
            raise ValueError(msg)
        self._segments = segments

    @classmethod
    def segment_for(
        cls,
        key: Iterable[Any],
        *,
        separator: str = ".",
        key_separator: str = "_",
    ) -> str:
        """Render one path segment for a primary key tuple.

        The key separator only joins composite keys, so a single-column key
        may contain it.
        """
        parts = [str(v) for v in key]
        for part in parts:
            if separator in part or (len(parts) > 1 and key_separator in part):
                msg = f"Key value {part!r} contains a path separator"
                raise ValueError(msg)
        return key_separator.join(parts) + separator

    def _new(self, path: str) -> MaterializedPath:
        return MaterializedPath(path, separator=self.separator, key_separator=self.key_separator)

    @property
    def depth(self) -> int:
        """Number of segments (1 for a root, 0 for the empty path)."""
        return len(self._segments)

    @property
    def segments(self) -> list[str]:
        return list(self._segments)

    @property
    def keys(self) -> list[tuple[str, ...]]:
        """Primary key values per segment, as strings."""
        return [tuple(s.split(self.key_separator)) for s in self._segments]

    @property
    def parent(self) -> MaterializedPath | None:
        if self.depth <= 1:
            return None
        return self._new(self.separator.join(self._segments[:-1]) + self.separator)

    def child(self, key: Iterable[Any]) -> MaterializedPath:
        """Path of a child with the given primary key."""
        segment = self.segment_for(key, separator=self.separator, key_separator=self.key_separator)
        return self._new(self._path + segment)

    def is_ancestor_of(self, other: str | MaterializedPath) -> bool:
        """True if self is a proper prefix of other."""
        other_path = str(other)
        return bool(self._path) and len(other_path) > len(self._path) and other_path.startswith(self._path)

    def is_descendant_of(self, other: str | MaterializedPath) -> bool:
        other_path = str(other)
        return bool(other_path) and len(self._path) > len(other_path) and self._path.startswith(other_path)

    def rebase(self, old_prefix: str | MaterializedPath, new_prefix: str | MaterializedPath) -> MaterializedPath:
        """Replace ``old_prefix`` with ``new_prefix`` (subtree move arithmetic).

        Raises:
            ValueError: If this path does not start with ``old_prefix``.
        """
        old = str(old_prefix)
        if not self._path.startswith(old):
            msg = f"{self._path!r} does not start with {old!r}"
            raise ValueError(msg)
        return self._new(str(new_prefix) + self._path[len(old) :])

    def __iter__(self) -> Iterator[str]:
        return iter(self._segments)

    def __len__(self) -> int:
        """Return depth (number of segments)."""
        return self.depth

    def __str__(self) -> str:
        return self._path

    def __repr__(self) -> str:
        return f"MaterializedPath({self._path!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, MaterializedPath):
            return self._path == other._path
        if isinstance(other, str):
            return self._path == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._path)

    def __bool__(self) -> bool:
        return bool(self._path)


__all__ = ["MaterializedPath"]
