"""
Rebus Fragment Loader.

Reads fragment files, parses them and installs their content into the tree.
Requires Python 3.11+.
"""

import asyncio
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from rebus.errors import FragmentParseError
from rebus.ledger import HashLedger
from rebus.tree.paths import FragmentNaming, TreePath, format_path
from rebus.tree.store import TreeStore
from rebus.utils.logger import LoggerMixin


def encode_value(value: object) -> bytes:
    """
    Serialize a value exactly as it is stored in a fragment file.

    Compact separators and insertion-ordered keys, so re-encoding a value
    loaded from a fragment reproduces the fragment's bytes.

    Raises:
        TypeError: If the value is not JSON serializable
        ValueError: If the value contains NaN or infinity
    """
    return json.dumps(
        value,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


class Loader(LoggerMixin):
    """
    Applies fragment files to a TreeStore.

    A fragment that fails to parse is assumed to be in the middle of being
    written by another process. It is remembered as pending and retried on
    the next change event for the same file.
    """

    def __init__(
        self,
        directory: Path,
        store: TreeStore,
        ledger: HashLedger,
        naming: FragmentNaming,
        on_applied: Callable[[TreePath], None],
    ) -> None:
        """
        Initialize the loader.

        Args:
            directory: Directory holding the fragments
            store: Tree receiving parsed values
            ledger: Digest table used to skip unchanged content
            naming: Filename <-> path mapping
            on_applied: Called with the path of every applied fragment
        """
        self._directory = directory
        self._store = store
        self._ledger = ledger
        self._naming = naming
        self._on_applied = on_applied
        self._pending: dict[str, FragmentParseError] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._settled = asyncio.Event()
        self._settled.set()

    def _log_context(self) -> dict[str, Any]:
        return {"directory": str(self._directory)}

    @property
    def pending_errors(self) -> dict[str, FragmentParseError]:
        """Fragments whose last read could not be parsed."""
        return dict(self._pending)

    def load_fragment(self, filename: str, data: bytes) -> bool:
        """
        Apply raw fragment content.

        Args:
            filename: Fragment filename (no directory)
            data: Raw file content

        Returns:
            True if the tree changed
        """
        path = self._naming.path_for(filename)
        if path is None:
            self.log.debug("fragment_ignored", filename=filename)
            return False

        digest = self._ledger.digest(data)
        if self._ledger.is_current(filename, digest):
            self._resolve_pending(filename)
            return False

        try:
            value = json.loads(data)
        except ValueError as e:
            self._pending[filename] = FragmentParseError(filename, str(e))
            self._settled.clear()
            self.log.debug("fragment_incomplete", filename=filename, error=str(e))
            return False

        self._ledger.record(filename, digest)
        self._resolve_pending(filename)
        self._store.assign(path, value)
        self.log.debug("fragment_applied", filename=filename, path=format_path(path))
        self._on_applied(path)
        return True

    async def load_file(self, filename: str) -> bool:
        """
        Read a fragment from disk and apply it.

        Loads of one file are serialized so content read later is always
        applied later.
        """
        if not self._naming.is_candidate(filename):
            return False

        lock = self._locks.setdefault(filename, asyncio.Lock())
        async with lock:
            try:
                async with aiofiles.open(self._directory / filename, "rb") as f:
                    data = await f.read()
            except (FileNotFoundError, IsADirectoryError) as e:
                self.log.debug("fragment_unreadable", filename=filename, error=str(e))
                return False
            return self.load_fragment(filename, data)

    async def scan(self) -> int:
        """
        Load every fragment currently in the directory concurrently.

        Returns:
            Number of fragments applied

        Raises:
            OSError: If the directory or a fragment cannot be read
        """
        names = await aiofiles.os.listdir(self._directory)
        candidates = [name for name in names if self._naming.is_candidate(name)]
        results = await asyncio.gather(*(self.load_file(name) for name in candidates))
        applied = sum(results)

        self.log.info(
            "directory_scanned",
            fragments=len(candidates),
            applied=applied,
            pending=len(self._pending),
        )
        return applied

    def load_directory_sync(self) -> int:
        """
        Blocking variant of :meth:`scan`.

        A reader racing a writer may see a half-written fragment; without an
        event loop there is no later change event to wait for, so the
        fragment's parse error is raised instead.

        Raises:
            FragmentParseError: If any fragment cannot be parsed
            OSError: If the directory or a fragment cannot be read
        """
        applied = 0
        for name in sorted(p.name for p in self._directory.iterdir()):
            if not self._naming.is_candidate(name):
                continue
            try:
                data = (self._directory / name).read_bytes()
            except (FileNotFoundError, IsADirectoryError):
                continue
            applied += self.load_fragment(name, data)
            if name in self._pending:
                raise self._pending[name]

        self.log.info(
            "directory_loaded",
            applied=applied,
        )
        return applied

    async def wait_settled(self) -> None:
        """Wait until no fragment is pending a successful re-read."""
        await self._settled.wait()

    def _resolve_pending(self, filename: str) -> None:
        if self._pending.pop(filename, None) is None:
            return
        self.log.debug("fragment_recovered", filename=filename)
        if not self._pending:
            self._settled.set()
