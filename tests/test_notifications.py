"""
Tests for Notification Registry.

Requires Python 3.11+.
"""

import pytest

from rebus.tree.notifications import NotificationRegistry, Subscription
from rebus.tree.paths import format_path
from rebus.tree.store import TreeStore


def _noop(value: object) -> None:
    return None


class TestNotificationRegistry:
    """Test cases for NotificationRegistry."""

    @pytest.fixture
    def registry(self) -> NotificationRegistry:
        """Create an empty registry."""
        return NotificationRegistry()

    @pytest.fixture
    def store(self) -> TreeStore:
        """Create an empty store."""
        return TreeStore()

    def _subscribe(self, registry: NotificationRegistry, *paths: str) -> dict[str, Subscription]:
        return {path: registry.add(tuple(path.split(".")), _noop) for path in paths}

    def test_collect_ancestors_then_subtree(self, registry: NotificationRegistry, store: TreeStore):
        """Ancestors come first, root to leaf, then the subtree in pre-order."""
        self._subscribe(registry, "a.b.c.d", "a.b.c", "a", "a.b", "a.b.c.e")
        store.assign(("a", "b", "c"), {"d": 4})

        deliveries = registry.collect(("a", "b", "c"), store)
        paths = [format_path(d.subscription.path) for d in deliveries]

        assert paths == ["a", "a.b", "a.b.c", "a.b.c.d", "a.b.c.e"]

    def test_collect_values(self, registry: NotificationRegistry, store: TreeStore):
        """Each node receives its own current value; missing data is None."""
        self._subscribe(registry, "a", "a.b", "a.b.c", "a.b.c.d")
        store.assign(("a", "b"), {"c": 1})

        values = {
            format_path(d.subscription.path): d.value
            for d in registry.collect(("a", "b"), store)
        }

        assert values == {
            "a": {"b": {"c": 1}},
            "a.b": {"c": 1},
            "a.b.c": 1,
            "a.b.c.d": None,
        }

    def test_collect_skips_unrelated_branches(self, registry: NotificationRegistry, store: TreeStore):
        """Siblings and unrelated paths are not notified."""
        self._subscribe(registry, "a", "a.b", "a.b.c", "a.x", "a.b.d", "z")
        store.assign(("a", "b", "c"), 1)

        paths = {
            format_path(d.subscription.path)
            for d in registry.collect(("a", "b", "c"), store)
        }

        assert paths == {"a", "a.b", "a.b.c"}

    def test_collect_unregistered_path(self, registry: NotificationRegistry, store: TreeStore):
        """A change below any registered node only reaches its ancestors."""
        self._subscribe(registry, "a")
        store.assign(("a", "b", "c"), 1)

        paths = [format_path(d.subscription.path) for d in registry.collect(("a", "b", "c"), store)]

        assert paths == ["a"]

    def test_collect_each_subscription_once(self, registry: NotificationRegistry, store: TreeStore):
        """Two subscriptions at one node are two deliveries, never more."""
        first = registry.add(("a",), _noop)
        second = registry.add(("a",), _noop)
        store.assign(("a",), 1)

        deliveries = registry.collect(("a",), store)

        assert [d.subscription for d in deliveries] == [first, second]

    def test_close_is_idempotent(self, registry: NotificationRegistry, store: TreeStore):
        """Closed subscriptions are not collected; closing twice is harmless."""
        subscription = registry.add(("a",), _noop)

        subscription.close()
        subscription.close()

        assert not subscription.active
        assert registry.subscription_count(("a",)) == 0
        assert registry.collect(("a",), store) == []

    def test_subscription_context_manager(self, registry: NotificationRegistry):
        """Leaving the with-block closes the handle."""
        with registry.add(("a",), _noop) as subscription:
            assert subscription.active

        assert not subscription.active
        assert "closed" in repr(subscription)

    def test_nodes_created_lazily(self, registry: NotificationRegistry):
        """Nodes exist once touched and persist after unsubscribing."""
        assert registry.find(("a", "b")) is None

        registry.add(("a", "b"), _noop).close()

        assert registry.find(("a", "b")) is not None
        assert registry.find(("a",)) is registry.node(("a",))

    def test_subscription_ids_are_unique(self, registry: NotificationRegistry):
        """Test handle identity."""
        ids = {registry.add(("a",), _noop).id for _ in range(5)}

        assert len(ids) == 5
