"""
Rebus Utilities Package.

Configuration and logging shared across all modules.
Requires Python 3.11+.
"""

from rebus.utils.config import LoggingSettings, RebusSettings, Settings, get_settings
from rebus.utils.logger import configure_logging, get_logger, LoggerMixin

__all__ = [
    "LoggingSettings",
    "RebusSettings",
    "Settings",
    "get_settings",
    "configure_logging",
    "get_logger",
    "LoggerMixin",
]
