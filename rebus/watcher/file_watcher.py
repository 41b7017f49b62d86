"""
Rebus Fragment Watcher.

Bridges watchdog directory events onto the instance's event loop.
Requires Python 3.11+.
"""

import asyncio
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

from watchdog.events import (
    DirCreatedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileClosedEvent,
    FileCreatedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from rebus.tree.paths import FragmentNaming
from rebus.utils.logger import LoggerMixin


class FragmentEventHandler(FileSystemEventHandler, LoggerMixin):
    """
    Handles file system events for fragment files.

    Filters events down to fragment filenames and forwards each one as a
    "changed" notification. Deletions are not forwarded; a removed fragment
    leaves its last value in place.
    """

    def __init__(
        self,
        naming: FragmentNaming,
        on_change: Callable[[str], None],
    ) -> None:
        """
        Initialize the handler.

        Args:
            naming: Decides which filenames are fragments
            on_change: Called from the observer thread with a bare filename
        """
        super().__init__()
        self._naming = naming
        self._on_change: Callable[[str], None] | None = on_change

    def detach(self) -> None:
        """Drop the listener; events arriving afterwards are ignored."""
        self._on_change = None

    def _forward(self, path: str | bytes) -> None:
        filename = os.path.basename(os.fsdecode(path))
        if not self._naming.is_candidate(filename):
            return
        on_change = self._on_change
        if on_change is not None:
            on_change(filename)

    def on_created(self, event: FileCreatedEvent | DirCreatedEvent) -> None:
        """Handle file creation."""
        if event.is_directory:
            return
        self._forward(event.src_path)

    def on_modified(self, event: FileModifiedEvent | DirModifiedEvent) -> None:
        """Handle file modification."""
        if event.is_directory:
            return
        self._forward(event.src_path)

    def on_closed(self, event: FileClosedEvent) -> None:
        """Handle a writer closing a file."""
        self._forward(event.src_path)

    def on_moved(self, event: FileMovedEvent | DirMovedEvent) -> None:
        """Handle rename; a fragment renamed into place counts as changed."""
        if event.is_directory:
            return
        self._forward(event.dest_path)


class FragmentWatcher(LoggerMixin):
    """
    Watches a fragment directory and hands changed filenames to the loop.

    The watchdog observer runs on its own thread. It never touches engine
    state; every event is passed to ``on_change`` on the event loop through
    ``call_soon_threadsafe``.
    """

    def __init__(
        self,
        directory: Path,
        naming: FragmentNaming,
        loop: asyncio.AbstractEventLoop,
        on_change: Callable[[str], Any],
        persistent: bool = True,
    ) -> None:
        """
        Initialize the fragment watcher.

        Args:
            directory: Directory to watch (not recursive)
            naming: Decides which filenames are fragments
            loop: Event loop that owns the instance
            on_change: Called on the loop with each changed filename
            persistent: Whether the observer thread keeps the process alive
        """
        self._directory = directory
        self._loop = loop
        self._on_change = on_change
        self._persistent = persistent
        self._handler = FragmentEventHandler(naming, self._dispatch)
        self._observer: Any = None
        self._running = False

    def _dispatch(self, filename: str) -> None:
        """Runs on the observer thread."""
        try:
            self._loop.call_soon_threadsafe(self._on_change, filename)
        except RuntimeError:
            # Loop already closed; the instance is gone
            self._handler.detach()

    def start(self) -> None:
        """Start watching for fragment changes."""
        if self._running:
            return

        observer = Observer()
        observer.daemon = not self._persistent
        observer.schedule(self._handler, str(self._directory), recursive=False)
        observer.start()
        self._observer = observer
        self._running = True

        self.log.info("watcher_started", persistent=self._persistent)

    def _log_context(self) -> dict[str, Any]:
        return {"directory": str(self._directory)}

    def detach(self) -> None:
        """Stop forwarding events at once; the observer thread may linger."""
        self._handler.detach()

    def stop(self) -> None:
        """
        Stop watching.

        A persistent watcher stops and joins its observer thread, blocking
        the caller for up to five seconds; call it from an executor when on
        the event loop. A non-persistent one only deregisters and signals the
        daemon thread to stop, without waiting for it.
        """
        if not self._running:
            return

        self._handler.detach()
        if self._observer is not None:
            if self._persistent:
                self._observer.stop()
                self._observer.join(timeout=5.0)
            else:
                self._observer.unschedule_all()
                self._observer.stop()
            self._observer = None

        self._running = False
        self.log.info("watcher_stopped")

    @property
    def is_running(self) -> bool:
        """Check if the watcher is running."""
        return self._running

    def __enter__(self) -> "FragmentWatcher":
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        """Context manager exit."""
        self.stop()
