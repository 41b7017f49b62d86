"""
Tests for Instance Registry.

Requires Python 3.11+.
"""

import asyncio
from pathlib import Path
from types import SimpleNamespace

import pytest

from rebus.registry import InstanceRegistry


def _fake_instance(directory: Path, live: bool = True) -> SimpleNamespace:
    """Stand-in exposing the attributes the registry reads."""
    return SimpleNamespace(directory=directory, closed=False, live=live)


class TestInstanceRegistry:
    """Test cases for InstanceRegistry."""

    def test_register_and_get(self, registry: InstanceRegistry, folder: Path):
        """Test registering an instance for a directory."""
        instance = _fake_instance(folder)
        registry.register(instance)

        assert registry.get(folder) is instance
        assert folder in registry
        assert len(registry) == 1

    def test_directory_spellings_share_entry(self, registry: InstanceRegistry, folder: Path):
        """Relative segments and str paths resolve to one key."""
        instance = _fake_instance(folder)
        registry.register(instance)

        assert registry.get(str(folder / ".." / folder.name)) is instance

    def test_closed_instances_are_invisible(self, registry: InstanceRegistry, folder: Path):
        """A closed instance is never handed out again."""
        instance = _fake_instance(folder)
        registry.register(instance)
        instance.closed = True

        assert registry.get(folder) is None
        assert len(registry) == 0

    def test_snapshots_are_never_registered(self, registry: InstanceRegistry, folder: Path):
        """A read-only instance cannot become the shared one."""
        with pytest.raises(ValueError):
            registry.register(_fake_instance(folder, live=False))

        assert registry.get(folder) is None

    def test_discard_only_removes_same_instance(self, registry: InstanceRegistry, folder: Path):
        """Discarding a replaced instance leaves its successor registered."""
        old = _fake_instance(folder)
        new = _fake_instance(folder)
        registry.register(old)
        registry.register(new)

        registry.discard(old)
        assert registry.get(folder) is new

        registry.discard(new)
        assert registry.get(folder) is None

    def test_clear(self, registry: InstanceRegistry, tmp_path: Path):
        """Test forgetting every instance."""
        registry.register(_fake_instance(tmp_path / "one"))
        registry.register(_fake_instance(tmp_path / "two"))

        registry.clear()

        assert len(registry) == 0

    def test_contains_rejects_other_types(self, registry: InstanceRegistry):
        """Membership checks on non-paths are simply False."""
        assert 42 not in registry

    @pytest.mark.asyncio
    async def test_get_or_start_shares_concurrent_starts(self, registry: InstanceRegistry, folder: Path):
        """Concurrent starts for one directory run the opener once."""
        calls = 0

        async def opener() -> SimpleNamespace:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            return _fake_instance(folder)

        first, second = await asyncio.gather(
            registry.get_or_start(folder, opener),
            registry.get_or_start(folder, opener),
        )

        assert calls == 1
        assert first is second
        assert registry.get(folder) is first

    @pytest.mark.asyncio
    async def test_get_or_start_reuses_registered(self, registry: InstanceRegistry, folder: Path):
        """An existing instance is returned without calling the opener."""
        instance = _fake_instance(folder)
        registry.register(instance)

        async def opener() -> SimpleNamespace:
            raise AssertionError("must not open a second instance")

        assert await registry.get_or_start(folder, opener) is instance

    @pytest.mark.asyncio
    async def test_get_or_start_failure_reaches_all_waiters(self, registry: InstanceRegistry, folder: Path):
        """A failed start fails every concurrent caller and registers nothing."""

        async def opener() -> SimpleNamespace:
            await asyncio.sleep(0.05)
            raise OSError("boom")

        results = await asyncio.gather(
            registry.get_or_start(folder, opener),
            registry.get_or_start(folder, opener),
            return_exceptions=True,
        )

        assert all(isinstance(result, OSError) for result in results)
        assert registry.get(folder) is None
