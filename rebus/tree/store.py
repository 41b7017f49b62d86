"""
Rebus Tree Store.

The in-memory mirror of every published fragment, addressable by path.
Requires Python 3.11+.
"""

from types import MappingProxyType
from typing import Any, Mapping, TypeAlias

from rebus.tree.paths import ROOT, TreePath, format_path
from rebus.utils.logger import LoggerMixin

# Internal nodes are dicts; every other JSON value is a leaf.
TreeValue: TypeAlias = dict[str, "TreeValue"] | list[Any] | str | int | float | bool | None


class _Absent:
    """Marker for a node that does not exist."""

    _instance: "_Absent | None" = None

    def __new__(cls) -> "_Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT = _Absent()


def present(value: Any) -> Any:
    """Translate the internal ABSENT marker into the None callers see."""
    return None if value is ABSENT else value


class TreeStore(LoggerMixin):
    """
    Nested mapping holding the shared state.

    Values assigned at a path replace whatever was there wholesale; subtrees
    coming from different fragments are never merged field by field.
    """

    def __init__(self) -> None:
        self._root: dict[str, TreeValue] = {}

    @property
    def root(self) -> dict[str, TreeValue]:
        return self._root

    @property
    def view(self) -> Mapping[str, TreeValue]:
        """Live read-only view of the root."""
        return MappingProxyType(self._root)

    def get(self, path: TreePath) -> Any:
        """
        Look up the node at ``path`` without creating anything.

        Returns:
            The node, or ABSENT when any segment is missing
        """
        node: Any = self._root
        for segment in path:
            if not isinstance(node, dict) or segment not in node:
                return ABSENT
            node = node[segment]
        return node

    def resolve(self, path: TreePath) -> Any:
        """
        Walk ``path``, creating empty mappings for missing segments.

        Subscribing before anything was published therefore yields ``{}``.
        A leaf met before the end of the path cannot hold children, so the
        walk stops there and ABSENT is returned.
        """
        node: Any = self._root
        for segment in path:
            if not isinstance(node, dict):
                return ABSENT
            if segment not in node:
                node[segment] = {}
            node = node[segment]
        return node

    def assign(self, path: TreePath, value: TreeValue) -> None:
        """
        Replace the node at ``path`` with ``value``.

        Leaves found on the way are replaced by fresh mappings so the
        assignment always lands.
        """
        if path == ROOT:
            raise ValueError("the root cannot be assigned")

        parent = self._root
        for depth, segment in enumerate(path[:-1]):
            child = parent.get(segment)
            if not isinstance(child, dict):
                if segment in parent:
                    self.log.warning(
                        "leaf_replaced_by_mapping",
                        path=format_path(path[: depth + 1]),
                    )
                child = {}
                parent[segment] = child
            parent = child
        parent[path[-1]] = value
