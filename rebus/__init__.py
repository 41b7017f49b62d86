"""
Rebus.

A hierarchical JSON tree shared by processes through a common directory.
Any process publishes a sub-object under a dotted path; every process
subscribed at or above that path is notified. There is no server: each
published path lives in its own file and every instance watches the
directory.

    async with await rebus.start("/tmp/shared") as bus:
        bus.subscribe("jobs", print)
        await bus.publish("jobs.build", {"state": "running"})

Requires Python 3.11+.
"""

from rebus.api import default_registry, start, start_sync
from rebus.errors import (
    FragmentParseError,
    PublishTimeoutError,
    RebusClosedError,
    RebusError,
    RebusStartupError,
    RebusUsageError,
    RebusWriteError,
)
from rebus.instance import Rebus
from rebus.registry import InstanceRegistry
from rebus.tree.notifications import Subscription
from rebus.utils.logger import configure_logging

__all__ = [
    # Entry points
    "start",
    "start_sync",
    "default_registry",
    "configure_logging",
    # Classes
    "Rebus",
    "InstanceRegistry",
    "Subscription",
    # Errors
    "RebusError",
    "RebusUsageError",
    "RebusClosedError",
    "RebusStartupError",
    "FragmentParseError",
    "RebusWriteError",
    "PublishTimeoutError",
]
