"""
Tests for structured logging.

Requires Python 3.11+.
"""

import os
from pathlib import Path

from structlog.testing import capture_logs

from rebus.ledger import HashLedger
from rebus.loader import Loader
from rebus.tree.paths import FragmentNaming
from rebus.tree.store import TreeStore
from rebus.utils.logger import LoggerMixin, _add_app_context


class TestAppContext:
    """Test cases for the app-context processor."""

    def test_adds_process_fields(self):
        """Entries name the app and the writing process."""
        event = _add_app_context(None, "info", {"event": "x"})  # type: ignore[arg-type]

        assert event["app"] == "rebus"
        assert event["pid"] == os.getpid()
        assert event["event"] == "x"


class TestLoggerMixin:
    """Test cases for LoggerMixin."""

    def test_plain_class_has_no_extra_context(self):
        """Test the default context."""

        class Plain(LoggerMixin):
            pass

        with capture_logs() as logs:
            Plain().log.info("plain_event")

        assert logs == [{"event": "plain_event", "log_level": "info"}]

    def test_engine_entries_name_their_directory(self, sample_fragments: Path):
        """Loader entries carry the fragment directory."""
        with capture_logs() as logs:
            loader = Loader(
                sample_fragments, TreeStore(), HashLedger(), FragmentNaming(), on_applied=lambda path: None
            )
            loader.load_directory_sync()

        loaded = [entry for entry in logs if entry["event"] == "directory_loaded"]
        assert loaded == [
            {
                "event": "directory_loaded",
                "log_level": "info",
                "directory": str(sample_fragments),
                "applied": 2,
            }
        ]
