"""
Rebus Public API.

Entry points that bring up an instance for a directory.
Requires Python 3.11+.
"""

import asyncio
from pathlib import Path
from typing import Any, Callable

from rebus.errors import RebusError, RebusUsageError
from rebus.instance import Rebus
from rebus.registry import InstanceRegistry
from rebus.utils.config import RebusSettings, get_settings
from rebus.utils.logger import get_logger

StartCallback = Callable[[BaseException | None, Rebus | None], Any]

logger = get_logger("rebus.api")

# Shared state - the process-wide table used when no registry is passed
_default_registry = InstanceRegistry()


def default_registry() -> InstanceRegistry:
    """Get the process-wide instance registry."""
    return _default_registry


def _resolve_options(
    directory: Path | str | None,
    singletons: bool | None,
    persistent: bool | None,
    registry: InstanceRegistry | None,
    settings: RebusSettings | None,
) -> tuple[Path, bool, bool, InstanceRegistry, RebusSettings]:
    config = settings if settings is not None else get_settings().rebus
    return (
        Path(directory) if directory is not None else config.directory,
        config.singletons if singletons is None else singletons,
        config.persistent if persistent is None else persistent,
        registry if registry is not None else _default_registry,
        config,
    )


async def start(
    directory: Path | str | None = None,
    *,
    singletons: bool | None = None,
    persistent: bool | None = None,
    registry: InstanceRegistry | None = None,
    settings: RebusSettings | None = None,
    callback: StartCallback | None = None,
) -> Rebus:
    """
    Start (or reuse) an instance for ``directory``.

    Completes once every fragment already in the directory has been loaded.
    If a fragment is caught mid-write, completion waits until a later change
    makes it parse.

    Args:
        directory: Backing directory; defaults to ``<tempdir>/rebus``
        singletons: Reuse one instance per directory in this process
        persistent: Whether the directory watch keeps the process alive
        registry: Singleton table; defaults to the process-wide one
        settings: Engine settings; defaults to ``get_settings().rebus``
        callback: Optional; called with ``(None, instance)`` or ``(error, None)``

    Returns:
        Ready instance

    Raises:
        RebusStartupError: If the directory cannot be created or read
        RebusUsageError: If the callback is not callable
    """
    if callback is not None and not callable(callback):
        raise RebusUsageError("start callback must be callable")
    directory, singletons, persistent, registry, config = _resolve_options(
        directory, singletons, persistent, registry, settings
    )

    async def opener() -> Rebus:
        instance = Rebus(
            directory,
            config,
            persistent=persistent,
            loop=asyncio.get_running_loop(),
            registry=registry if singletons else None,
        )
        await instance.open()
        return instance

    try:
        if singletons:
            instance = await registry.get_or_start(directory, opener)
        else:
            instance = await opener()
    except RebusError as e:
        if callback is not None:
            callback(e, None)
        raise

    if callback is not None:
        callback(None, instance)
    return instance


def start_sync(
    directory: Path | str | None = None,
    *,
    singletons: bool | None = None,
    persistent: bool | None = None,
    registry: InstanceRegistry | None = None,
    settings: RebusSettings | None = None,
    loop: asyncio.AbstractEventLoop | None = None,
) -> Rebus:
    """
    Blocking variant of :func:`start`.

    The tree is loaded before this returns. When an event loop is passed or
    running, the instance follows later changes on that loop like one from
    :func:`start`; otherwise it is a read-only snapshot.

    This is best effort: a fragment being written at the same moment makes
    the call fail with RebusStartupError rather than wait.

    Snapshots are never shared: with singletons enabled, a live instance
    already registered for the directory is returned, but a new snapshot is
    not registered and is never handed out by :func:`start`.

    Raises:
        RebusStartupError: If the directory cannot be read or a fragment is
            incomplete
    """
    directory, singletons, persistent, registry, config = _resolve_options(
        directory, singletons, persistent, registry, settings
    )
    if singletons:
        existing = registry.get(directory)
        if existing is not None:
            return existing

    if loop is None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("snapshot_instance", directory=str(directory))

    shared = singletons and loop is not None
    instance = Rebus(
        directory,
        config,
        persistent=persistent,
        loop=loop,
        registry=registry if shared else None,
    )
    instance.open_sync()
    if shared:
        registry.register(instance)
    return instance
