"""
Rebus Error Classes.

Error Hierarchy:
    RebusError
    ├── RebusUsageError (also ValueError)
    │   └── RebusClosedError
    ├── RebusStartupError
    ├── FragmentParseError
    ├── RebusWriteError
    └── PublishTimeoutError (also TimeoutError)

Usage errors are raised synchronously by the call that was misused. Startup,
write and timeout errors travel through the awaited future or the callback.
Parse errors are recovered internally and only escape from ``start_sync``.

Requires Python 3.11+.
"""

from pathlib import Path


class RebusError(Exception):
    """Base error class for the shared tree engine."""


class RebusUsageError(RebusError, ValueError):
    """Raised for programmer mistakes: bad path, bad callback, bad value."""


class RebusClosedError(RebusUsageError):
    """Raised when a closed instance is asked to publish or subscribe."""


class RebusStartupError(RebusError):
    """Raised when an instance cannot be brought up for a directory."""

    def __init__(self, message: str, directory: Path | str) -> None:
        super().__init__(f"{message}: {directory}")
        self.directory = Path(directory)


class FragmentParseError(RebusError):
    """A fragment could not be parsed, usually because it is mid-write."""

    def __init__(self, filename: str, reason: str) -> None:
        super().__init__(f"cannot parse fragment {filename}: {reason}")
        self.filename = filename
        self.reason = reason


class RebusWriteError(RebusError):
    """Writing a fragment during publish failed."""

    def __init__(self, path: str, filename: Path) -> None:
        super().__init__(f"failed to write {path} to {filename}")
        self.path = path
        self.filename = filename


class PublishTimeoutError(RebusError, TimeoutError):
    """A published value was not observed back within the timeout."""

    def __init__(self, path: str, timeout: float) -> None:
        super().__init__(f"publish of {path} not confirmed within {timeout}s")
        self.path = path
        self.timeout = timeout
