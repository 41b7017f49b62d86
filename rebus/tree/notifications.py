"""
Rebus Notification Registry.

A tree shaped like the Tree Store whose nodes hold the callbacks subscribed at
that path. A change at a path notifies the ancestors of the path (with their
own current subtree) and every node of the subtree under it.
Requires Python 3.11+.
"""

import itertools
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any, NamedTuple

from rebus.tree.paths import TreePath, format_path
from rebus.tree.store import ABSENT, TreeStore, present
from rebus.utils.logger import LoggerMixin

NotifyCallback = Callable[[Any], Any]


@dataclass(slots=True, eq=False)
class NotificationNode:
    """Callbacks registered at one path plus the nodes below it."""

    children: dict[str, "NotificationNode"] = field(default_factory=dict)
    subscriptions: dict[int, "Subscription"] = field(default_factory=dict)


class Subscription:
    """
    Handle for one ``(path, callback)`` registration.

    Closing is idempotent and only prevents future invocations; a delivery
    that is already running is not interrupted.
    """

    __slots__ = ("id", "path", "callback", "_node")

    def __init__(
        self,
        subscription_id: int,
        path: TreePath,
        callback: NotifyCallback,
        node: NotificationNode,
    ) -> None:
        self.id = subscription_id
        self.path = path
        self.callback = callback
        self._node: NotificationNode | None = node

    @property
    def active(self) -> bool:
        return self._node is not None

    def close(self) -> None:
        """Deregister the callback."""
        if self._node is None:
            return
        self._node.subscriptions.pop(self.id, None)
        self._node = None

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "active" if self.active else "closed"
        return f"<Subscription {self.id} {format_path(self.path)!r} {state}>"


class Delivery(NamedTuple):
    """One pending callback invocation and the value it will receive."""

    subscription: Subscription
    value: Any


class NotificationRegistry(LoggerMixin):
    """Lazily grown tree of notification nodes."""

    def __init__(self) -> None:
        self._root = NotificationNode()
        self._ids = itertools.count(1)

    def node(self, path: TreePath) -> NotificationNode:
        """Get the notification node for ``path``, creating it if needed."""
        node = self._root
        for segment in path:
            child = node.children.get(segment)
            if child is None:
                child = NotificationNode()
                node.children[segment] = child
            node = child
        return node

    def find(self, path: TreePath) -> NotificationNode | None:
        """Get the notification node for ``path`` without creating it."""
        node = self._root
        for segment in path:
            node = node.children.get(segment)
            if node is None:
                return None
        return node

    def add(self, path: TreePath, callback: NotifyCallback) -> Subscription:
        """Register ``callback`` at ``path`` and return its handle."""
        node = self.node(path)
        subscription = Subscription(next(self._ids), path, callback, node)
        node.subscriptions[subscription.id] = subscription
        return subscription

    def subscription_count(self, path: TreePath) -> int:
        node = self.find(path)
        return len(node.subscriptions) if node is not None else 0

    def collect(self, path: TreePath, store: TreeStore) -> list[Delivery]:
        """
        Build the ordered deliveries for a change at ``path``.

        Ancestors come first, root to leaf, each receiving its own current
        subtree. Then the node at ``path`` and all of its descendants follow
        in depth-first pre-order, each receiving its own current value (None
        where there is no data). Values are captured now, not at invocation.

        Args:
            path: Path whose value was just replaced
            store: Tree holding the current values

        Returns:
            Deliveries in dispatch order; each subscription at most once
        """
        deliveries: list[Delivery] = []
        seen: set[int] = set()

        def emit(node: NotificationNode, value: Any) -> None:
            # Snapshot: callbacks may close handles while we are collecting
            for subscription in list(node.subscriptions.values()):
                if subscription.id in seen:
                    continue
                seen.add(subscription.id)
                deliveries.append(Delivery(subscription, present(value)))

        node = self._root
        value: Any = store.root
        for segment in path:
            if node is not self._root:
                emit(node, value)
            child = node.children.get(segment)
            if child is None:
                return deliveries
            node = child
            value = value.get(segment, ABSENT) if isinstance(value, dict) else ABSENT

        for subtree_node, subtree_value in self._walk(node, value):
            emit(subtree_node, subtree_value)
        return deliveries

    def _walk(
        self, node: NotificationNode, value: Any
    ) -> Iterator[tuple[NotificationNode, Any]]:
        """Pre-order walk of a notification subtree alongside its values."""
        yield node, value
        for segment, child in list(node.children.items()):
            child_value = value.get(segment, ABSENT) if isinstance(value, dict) else ABSENT
            yield from self._walk(child, child_value)
