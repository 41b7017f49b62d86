"""
Rebus Watcher Package.

File system monitoring of the fragment directory.
Requires Python 3.11+.
"""

from rebus.watcher.file_watcher import FragmentEventHandler, FragmentWatcher

__all__ = ["FragmentEventHandler", "FragmentWatcher"]
