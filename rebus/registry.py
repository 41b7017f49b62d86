"""
Rebus Instance Registry.

Process-local table of instances keyed by directory, used when singletons
are enabled.
Requires Python 3.11+.
"""

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING

from rebus.utils.logger import LoggerMixin

if TYPE_CHECKING:
    from rebus.instance import Rebus


class InstanceRegistry(LoggerMixin):
    """
    Maps a backing directory to the one instance serving it.

    Starts in flight are tracked too, so concurrent ``start`` calls for the
    same directory share one instance instead of racing to build two.
    """

    def __init__(self) -> None:
        self._instances: dict[Path, "Rebus"] = {}
        self._starting: dict[Path, asyncio.Future["Rebus"]] = {}

    @staticmethod
    def key(directory: Path | str) -> Path:
        """Normalize a directory so different spellings share one entry."""
        return Path(directory).expanduser().resolve()

    @staticmethod
    def _usable(instance: "Rebus") -> bool:
        return instance.live and not instance.closed

    def get(self, directory: Path | str) -> "Rebus | None":
        """Get the open, live instance registered for ``directory``, if any."""
        instance = self._instances.get(self.key(directory))
        if instance is None or not self._usable(instance):
            return None
        return instance

    def register(self, instance: "Rebus") -> None:
        """
        Make ``instance`` the shared one for its directory.

        Raises:
            ValueError: If the instance is a read-only snapshot
        """
        if not instance.live:
            raise ValueError("read-only snapshots cannot be shared")
        self._instances[self.key(instance.directory)] = instance
        self.log.debug("instance_registered", directory=str(instance.directory))

    def discard(self, instance: "Rebus") -> None:
        """Forget ``instance`` if it is the one registered for its directory."""
        key = self.key(instance.directory)
        if self._instances.get(key) is instance:
            del self._instances[key]
            self.log.debug("instance_discarded", directory=str(instance.directory))

    def clear(self) -> None:
        """Forget every instance without closing them."""
        self._instances.clear()

    async def get_or_start(
        self,
        directory: Path,
        opener: Callable[[], Awaitable["Rebus"]],
    ) -> "Rebus":
        """
        Return the registered instance for ``directory`` or open a new one.

        A hit still yields to the loop once before returning, so callers
        always observe an asynchronous completion.

        Args:
            directory: Backing directory
            opener: Builds and opens a fresh instance

        Returns:
            The shared instance
        """
        key = self.key(directory)
        existing = self.get(key)
        if existing is not None:
            await asyncio.sleep(0)
            return existing

        starting = self._starting.get(key)
        if starting is not None:
            return await asyncio.shield(starting)

        future: asyncio.Future["Rebus"] = asyncio.get_running_loop().create_future()
        self._starting[key] = future
        try:
            instance = await opener()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved; waiters re-raise it
            future.exception()
            raise
        else:
            self.register(instance)
            future.set_result(instance)
            return instance
        finally:
            self._starting.pop(key, None)

    def __contains__(self, directory: object) -> bool:
        if not isinstance(directory, (str, Path)):
            return False
        return self.get(directory) is not None

    def __len__(self) -> int:
        return sum(1 for instance in self._instances.values() if self._usable(instance))
