"""
Rebus Tree Package.

Path handling, the shared tree and the notification registry.
Requires Python 3.11+.
"""

from rebus.tree.paths import ROOT, FragmentNaming, TreePath, format_path
from rebus.tree.store import ABSENT, TreeStore, TreeValue, present
from rebus.tree.notifications import (
    Delivery,
    NotificationNode,
    NotificationRegistry,
    NotifyCallback,
    Subscription,
)

__all__ = [
    # Paths
    "ROOT",
    "FragmentNaming",
    "TreePath",
    "format_path",
    # Store
    "ABSENT",
    "TreeStore",
    "TreeValue",
    "present",
    # Notifications
    "Delivery",
    "NotificationNode",
    "NotificationRegistry",
    "NotifyCallback",
    "Subscription",
]
