"""
Rebus Test Configuration.

Pytest fixtures and configuration.
Requires Python 3.11+.
"""

import asyncio
import json
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from rebus import InstanceRegistry, Rebus, start
from rebus.utils.config import RebusSettings
from rebus.utils.logger import configure_logging


@pytest.fixture(scope="session", autouse=True)
def logging_configured() -> None:
    """Route structlog output through the configured renderer once."""
    configure_logging()


@pytest.fixture
def folder(tmp_path: Path) -> Path:
    """Empty shared directory for one test."""
    path = tmp_path / "rebus"
    path.mkdir()
    return path


@pytest.fixture
def settings() -> RebusSettings:
    """
    Engine settings for tests.

    Watches do not keep the interpreter alive, so a test that forgets to
    close an instance cannot hang the run.
    """
    return RebusSettings(persistent=False, publish_timeout=5.0, start_timeout=None)


@pytest.fixture
def registry() -> InstanceRegistry:
    """Fresh singleton table, isolated from the process-wide one."""
    return InstanceRegistry()


@pytest.fixture
def sample_fragments(folder: Path) -> Path:
    """Directory already holding two published fragments."""
    (folder / "a.b.json").write_text(json.dumps({"c1": "x", "c2": "y"}))
    (folder / "c.d.json").write_text("{}")
    return folder


@pytest_asyncio.fixture
async def open_bus(
    folder: Path,
    registry: InstanceRegistry,
    settings: RebusSettings,
) -> AsyncGenerator[Callable[..., Awaitable[Rebus]], None]:
    """
    Factory starting instances that are closed at teardown.

    Instances are independent (no singletons) unless asked otherwise.
    """
    opened: list[Rebus] = []

    async def _open(directory: Path | None = None, **kwargs: Any) -> Rebus:
        kwargs.setdefault("singletons", False)
        kwargs.setdefault("registry", registry)
        kwargs.setdefault("settings", settings)
        bus = await start(directory or folder, **kwargs)
        opened.append(bus)
        return bus

    yield _open

    for bus in opened:
        bus.close()


async def _eventually(
    predicate: Callable[[], bool],
    timeout: float = 5.0,
    interval: float = 0.02,
) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError(f"condition not met within {timeout}s")
        await asyncio.sleep(interval)


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    """Poll a predicate on the running loop until it holds."""
    return _eventually
