"""
Rebus Instance.

One live binding between a process and a backing directory: the tree, its
notification registry, the digest ledger, the loader and the directory watch.
Requires Python 3.11+.
"""

import asyncio
import inspect
from collections.abc import Mapping
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, NamedTuple

import aiofiles
import aiofiles.os

from rebus.errors import (
    FragmentParseError,
    PublishTimeoutError,
    RebusClosedError,
    RebusStartupError,
    RebusUsageError,
    RebusWriteError,
)
from rebus.ledger import HashLedger
from rebus.loader import Loader, encode_value
from rebus.tree.notifications import NotificationRegistry, NotifyCallback, Subscription
from rebus.tree.paths import FragmentNaming, TreePath, format_path
from rebus.tree.store import ABSENT, TreeStore, TreeValue, present
from rebus.utils.config import RebusSettings
from rebus.utils.logger import LoggerMixin
from rebus.watcher import FragmentWatcher

if TYPE_CHECKING:
    from rebus.registry import InstanceRegistry

PublishCallback = Callable[[BaseException | None], Any]


class _PendingPublish(NamedTuple):
    """A publish whose value has not been read back yet."""

    digest: str
    future: "asyncio.Future[None]"


class Rebus(LoggerMixin):
    """
    A shared tree backed by a directory of fragment files.

    All tree, registry and ledger mutation happens on the instance's event
    loop. Other processes are seen only through the files they write.
    Instances are created by :func:`rebus.start` or :func:`rebus.start_sync`.
    """

    def __init__(
        self,
        directory: Path,
        settings: RebusSettings,
        persistent: bool = True,
        loop: asyncio.AbstractEventLoop | None = None,
        registry: "InstanceRegistry | None" = None,
    ) -> None:
        """
        Initialize an unopened instance.

        Args:
            directory: Backing directory
            settings: Engine settings (naming, timeouts)
            persistent: Whether the directory watch keeps the process alive
            loop: Loop that owns the instance; None makes a read-only snapshot
            registry: Singleton registry to leave when closed
        """
        self._directory = directory
        self._settings = settings
        self._persistent = persistent
        self._loop = loop
        self._registry = registry

        self._naming = FragmentNaming.from_settings(settings)
        self._store = TreeStore()
        self._notifications = NotificationRegistry()
        self._ledger = HashLedger()
        self._loader = Loader(
            directory,
            self._store,
            self._ledger,
            self._naming,
            on_applied=self._notify_changed,
        )
        self._watcher: FragmentWatcher | None = None

        self._tasks: set[asyncio.Future[Any]] = set()
        self._publishes: set[asyncio.Future[None]] = set()
        # Not cancelled by close()
        self._writes: set[asyncio.Task[None]] = set()
        # Per fragment file, in publish order
        self._inflight: dict[str, list[_PendingPublish]] = {}
        self._write_locks: dict[str, asyncio.Lock] = {}
        self._ready = False
        self._closed = False

    def _log_context(self) -> dict[str, Any]:
        return {"directory": str(self._directory)}

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def value(self) -> Mapping[str, TreeValue]:
        """Live read-only view of the whole tree."""
        return self._store.view

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def ready(self) -> bool:
        """True once the initial scan completed with no fragment mid-write."""
        return self._ready and not self._closed

    @property
    def live(self) -> bool:
        """Whether the instance follows changes (False for snapshots)."""
        return self._loop is not None

    @property
    def pending_errors(self) -> dict[str, FragmentParseError]:
        """Fragments currently failing to parse."""
        return self._loader.pending_errors

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """
        Create the directory, arm the watch and load every fragment.

        Returns only when no fragment is left mid-write, or raises
        RebusStartupError once ``start_timeout`` expires.
        """
        try:
            await self._open()
        except BaseException:
            self.close()
            raise

    async def _open(self) -> None:
        try:
            try:
                await aiofiles.os.mkdir(self._directory)
            except FileExistsError:
                if not await aiofiles.os.path.isdir(self._directory):
                    raise
            self._arm_watch()
            await self._loader.scan()
        except OSError as e:
            self.log.error("instance_start_failed", error=str(e))
            raise RebusStartupError("cannot open fragment directory", self._directory) from e

        timeout = self._settings.start_timeout
        if self._loader.pending_errors:
            self.log.info(
                "waiting_for_fragments",
                pending=sorted(self._loader.pending_errors),
            )
        try:
            await asyncio.wait_for(self._loader.wait_settled(), timeout=timeout)
        except TimeoutError as e:
            pending = ", ".join(sorted(self._loader.pending_errors))
            raise RebusStartupError(
                f"fragments still incomplete after {timeout}s ({pending})",
                self._directory,
            ) from e

        self._ready = True
        self.log.info("instance_started", live=True)

    def open_sync(self) -> None:
        """
        Blocking variant of :meth:`open`.

        A fragment being written at the same moment cannot be waited for, so
        it fails the startup instead.
        """
        try:
            self._directory.mkdir(exist_ok=True)
            self._arm_watch()
            self._loader.load_directory_sync()
        except FragmentParseError as e:
            self.close()
            raise RebusStartupError(f"fragment {e.filename} is incomplete", self._directory) from e
        except OSError as e:
            self.close()
            raise RebusStartupError("cannot open fragment directory", self._directory) from e

        self._ready = True
        self.log.info("instance_started", live=self.live)

    def close(self) -> None:
        """
        Stop following the directory. Safe to call more than once.

        Subscriptions stay registered but are never invoked again. Publishes
        still waiting for confirmation fail with RebusClosedError; writes
        already under way are allowed to land.

        A persistent watch thread is joined here, which blocks the calling
        thread (for up to five seconds). Code running on the event loop
        should prefer :meth:`aclose`.
        """
        watcher = self._shutdown()
        if watcher is not None:
            watcher.stop()

    async def aclose(self) -> None:
        """Like :meth:`close`, but joins the watch thread off the event loop."""
        watcher = self._shutdown()
        if watcher is not None:
            await asyncio.get_running_loop().run_in_executor(None, watcher.stop)

    def _shutdown(self) -> FragmentWatcher | None:
        """Mark the instance closed and hand back the watcher still to stop."""
        if self._closed:
            return None
        self._closed = True

        watcher, self._watcher = self._watcher, None
        if watcher is not None:
            watcher.detach()

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

        for future in list(self._publishes):
            if not future.done():
                future.set_exception(RebusClosedError("instance closed before publish was confirmed"))
        self._publishes.clear()

        if self._registry is not None:
            self._registry.discard(self)

        self.log.info("instance_closed")
        return watcher

    def __enter__(self) -> "Rebus":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    async def __aenter__(self) -> "Rebus":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        state = "closed" if self._closed else ("ready" if self._ready else "starting")
        return f"<Rebus {str(self._directory)!r} {state}>"

    # ------------------------------------------------------------------
    # Subscribe / publish
    # ------------------------------------------------------------------

    def subscribe(self, path: str, callback: NotifyCallback) -> Subscription:
        """
        Be notified whenever the value at or below ``path`` changes.

        The callback is first invoked on the next loop iteration with the
        current value (an empty dict if nothing was published yet), so the
        returned handle is always available inside the callback.

        Args:
            path: Dotted path such as ``"a.b.c"``
            callback: Called with the current value of ``path``; may be a
                coroutine function

        Returns:
            Handle whose ``close()`` stops further notifications

        Raises:
            RebusUsageError: For a malformed path or a non-callable callback
        """
        loop = self._require_live()
        tree_path = self._naming.parse(path)
        if not callable(callback):
            raise RebusUsageError("subscribe callback must be callable")

        self._store.resolve(tree_path)
        subscription = self._notifications.add(tree_path, callback)
        loop.call_soon(self._deliver_current, subscription)
        return subscription

    def publish(
        self,
        path: str,
        value: Any,
        callback: PublishCallback | None = None,
    ) -> "asyncio.Future[None]":
        """
        Publish ``value`` at ``path`` for every instance sharing the directory.

        The returned future completes once this instance has read the value
        back from disk through the same path every subscriber uses, or once a
        later publish to the same path has been read back. Publishes to one
        path are written in call order.

        A value identical to the one on disk completes at once without a
        write. A value identical to the latest publish still in flight for
        the same path is not written again; its future follows that
        publish.

        Args:
            path: Dotted path such as ``"a.b"``
            value: Any JSON-serializable value
            callback: Optional; called with None on success or the error

        Returns:
            Future resolving to None, or failing with RebusWriteError,
            PublishTimeoutError or RebusClosedError

        Raises:
            RebusUsageError: For a malformed path, a non-callable callback or
                a value that cannot be serialized
        """
        loop = self._require_live()
        tree_path = self._naming.parse(path)
        if callback is not None and not callable(callback):
            raise RebusUsageError("publish callback must be callable")
        try:
            data = encode_value(value)
        except (TypeError, ValueError) as e:
            raise RebusUsageError(f"value for {path!r} is not JSON serializable: {e}") from e

        future: asyncio.Future[None] = loop.create_future()
        if callback is not None:
            future.add_done_callback(partial(self._run_publish_callback, path, callback))

        filename = self._naming.filename_for(tree_path)
        digest = self._ledger.digest(data)
        inflight = self._inflight.get(filename)
        if inflight:
            # Only the latest pending write says what the file will hold
            latest = inflight[-1]
            if latest.digest == digest:
                self.log.debug("publish_joined", path=path)
                latest.future.add_done_callback(partial(self._follow_publish, future))
                return future
        elif self._ledger.is_current(filename, digest):
            self.log.debug("publish_unchanged", path=path)
            future.set_result(None)
            return future

        entry = _PendingPublish(digest, future)
        self._inflight.setdefault(filename, []).append(entry)
        # Registered directly: no empty node in the tree, no initial delivery
        confirmation = self._notifications.add(
            tree_path, partial(self._confirm_publish, tree_path, filename, data, future)
        )
        self._publishes.add(future)
        future.add_done_callback(partial(self._publish_finished, filename, entry, confirmation))

        timeout = self._settings.publish_timeout
        if timeout is not None:
            timer = loop.call_later(timeout, self._expire_publish, path, timeout, future)
            future.add_done_callback(lambda _: timer.cancel())

        write = loop.create_task(self._write(path, filename, data, future))
        self._writes.add(write)
        write.add_done_callback(self._writes.discard)
        self.log.debug("publish_started", path=path, filename=filename, size=len(data))
        return future

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_live(self) -> asyncio.AbstractEventLoop:
        """Get the owning loop, or raise for closed instances and snapshots."""
        if self._closed:
            raise RebusClosedError(f"instance for {self._directory} is closed")
        if self._loop is None:
            raise RebusUsageError(
                "instance was started without an event loop and is a read-only snapshot"
            )
        return self._loop

    def _arm_watch(self) -> None:
        if self._loop is None:
            return
        self._watcher = FragmentWatcher(
            self._directory,
            self._naming,
            self._loop,
            on_change=self._on_file_changed,
            persistent=self._persistent,
        )
        self._watcher.start()

    def _on_file_changed(self, filename: str) -> None:
        """Runs on the loop for every watch event."""
        if self._closed:
            return
        self._track(self._loader.load_file(filename), "fragment_load_failed")

    def _notify_changed(self, path: TreePath) -> None:
        """Schedule every delivery caused by a change at ``path``."""
        self._notifications.node(path)
        if self._loop is None:
            return
        deliveries = self._notifications.collect(path, self._store)
        for delivery in deliveries:
            self._loop.call_soon(self._deliver, delivery.subscription, delivery.value)

    def _deliver_current(self, subscription: Subscription) -> None:
        self._deliver(subscription, present(self._store.get(subscription.path)))

    def _deliver(self, subscription: Subscription, value: Any) -> None:
        if self._closed or not subscription.active:
            return
        try:
            result = subscription.callback(value)
        except Exception:
            self.log.exception(
                "notification_callback_failed",
                path=format_path(subscription.path),
                subscription=subscription.id,
            )
            return
        if inspect.isawaitable(result):
            self._track(result, "notification_callback_failed")

    def _track(self, awaitable: Any, failure_event: str) -> None:
        task = asyncio.ensure_future(awaitable, loop=self._loop)
        self._tasks.add(task)
        task.add_done_callback(partial(self._task_done, failure_event))

    def _task_done(self, failure_event: str, task: "asyncio.Future[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.log.error(failure_event, error=repr(error))

    async def _write(
        self,
        path: str,
        filename: str,
        data: bytes,
        future: "asyncio.Future[None]",
    ) -> None:
        target = self._directory / filename
        # Lock waiters are served in order, so writes land in publish order
        lock = self._write_locks.setdefault(filename, asyncio.Lock())
        async with lock:
            try:
                async with aiofiles.open(target, "wb") as f:
                    await f.write(data)
            except OSError as e:
                self.log.error("publish_write_failed", path=path, filename=str(target), error=str(e))
                if not future.done():
                    error = RebusWriteError(path, target)
                    error.__cause__ = e
                    future.set_exception(error)
                return

        # Content equal to what the loader last applied will not produce a
        # change event, e.g. after 1 -> 2 -> 1 where 2 was never read
        if not future.done() and self._ledger.is_current(filename, self._ledger.digest(data)):
            self._settle_publish(path, filename, future)

    def _confirm_publish(
        self,
        tree_path: TreePath,
        filename: str,
        data: bytes,
        future: "asyncio.Future[None]",
        value: Any,
    ) -> None:
        """Resolve ``future`` once a change delivers exactly the written value."""
        if future.done():
            return
        # None is also what an absent node is delivered as
        if value is None and self._store.get(tree_path) is ABSENT:
            return
        try:
            if encode_value(value) != data:
                return
        except (TypeError, ValueError):
            return
        self._settle_publish(format_path(tree_path), filename, future)

    def _settle_publish(self, path: str, filename: str, future: "asyncio.Future[None]") -> None:
        """Complete ``future`` and every earlier publish it overwrote."""
        for entry in list(self._inflight.get(filename, ())):
            if entry.future is future:
                break
            if not entry.future.done():
                self.log.debug("publish_superseded", path=path)
                entry.future.set_result(None)
        self.log.debug("publish_confirmed", path=path)
        future.set_result(None)

    @staticmethod
    def _follow_publish(future: "asyncio.Future[None]", source: "asyncio.Future[None]") -> None:
        if future.done():
            return
        if source.cancelled():
            future.cancel()
        elif source.exception() is not None:
            future.set_exception(source.exception())
        else:
            future.set_result(None)

    def _expire_publish(self, path: str, timeout: float, future: "asyncio.Future[None]") -> None:
        if not future.done():
            self.log.warning("publish_timed_out", path=path, timeout=timeout)
            future.set_exception(PublishTimeoutError(path, timeout))

    def _publish_finished(
        self,
        filename: str,
        entry: _PendingPublish,
        confirmation: Subscription,
        future: "asyncio.Future[None]",
    ) -> None:
        confirmation.close()
        self._publishes.discard(future)
        inflight = self._inflight.get(filename)
        if inflight is not None and entry in inflight:
            inflight.remove(entry)
            if not inflight:
                del self._inflight[filename]

    def _run_publish_callback(
        self,
        path: str,
        callback: PublishCallback,
        future: "asyncio.Future[None]",
    ) -> None:
        if future.cancelled():
            return
        # Retrieving the exception here also keeps asyncio from reporting
        # it as never retrieved when the caller only uses the callback.
        error = future.exception()
        try:
            callback(error)
        except Exception:
            self.log.exception("publish_callback_failed", path=path)
