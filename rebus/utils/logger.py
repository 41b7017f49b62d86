"""
Rebus Structured Logging Module.

Provides consistent, structured logging throughout the package.
Requires Python 3.11+.
"""

import logging
import os
import sys
from typing import Any

import structlog
from structlog.types import Processor

from rebus.utils.config import get_settings


def _add_app_context(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Add application context to all log entries.

    Several processes usually share one directory, so every entry carries
    the writing process id.
    """
    settings = get_settings()
    event_dict["app"] = settings.app_name
    event_dict["version"] = settings.app_version
    event_dict["pid"] = os.getpid()
    return event_dict


def configure_logging() -> None:
    """
    Configure structured logging.

    The package never calls this itself; applications call it once at startup.
    """
    settings = get_settings()
    level = getattr(logging, settings.logging.level.upper())

    # Common processors for all output formats
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_app_context,
    ]

    if settings.logging.format == "json":
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            ),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    # Observer threads log every inotify event at debug level
    logging.getLogger("watchdog").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


class LoggerMixin:
    """
    Mixin class to add logging capability to any class.

    Classes tied to one fragment directory override ``_log_context`` so
    each of their entries names it.

    Usage:
        class Reader(LoggerMixin):
            def _log_context(self):
                return {"directory": str(self.directory)}

            def read(self):
                self.log.info("fragment_read", filename="a.json")
    """

    def _log_context(self) -> dict[str, Any]:
        return {}

    @property
    def log(self) -> structlog.stdlib.BoundLogger:
        """Get logger bound to this class name and its context."""
        if not hasattr(self, "_logger"):
            self._logger = get_logger(self.__class__.__name__).bind(**self._log_context())
        return self._logger
