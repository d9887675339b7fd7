"""Tests for the logging bootstrap."""

from __future__ import annotations

import json
import logging

import pytest
import structlog

from plugbus.core.models.config import LogConfig
from plugbus.logging_utils import configure_logging


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
    structlog.reset_defaults()


class TestConfigureLogging:
    """Tests for configure_logging()."""

    def test_defaults_install_one_handler(self):
        """Test that the default config logs to stderr at INFO."""
        configure_logging()

        root = logging.getLogger()
        assert root.level == logging.INFO
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)

    def test_structured_file_output(self, tmp_path):
        """Test that structured logs are written as JSON lines."""
        path = tmp_path / "logs" / "plugbus.log"
        configure_logging(LogConfig(level="DEBUG", structured=True, file=path))

        structlog.get_logger("plugbus.test").info("Plugin added", plugin="p1")

        record = json.loads(path.read_text().strip().splitlines()[-1])
        assert record["event"] == "Plugin added"
        assert record["plugin"] == "p1"
        assert record["level"] == "info"

    def test_level_filters_records(self, tmp_path):
        """Test that records below the level are dropped."""
        path = tmp_path / "plugbus.log"
        configure_logging(LogConfig(level="WARNING", file=path))

        logger = structlog.get_logger("plugbus.test")
        logger.info("hidden")
        logger.warning("shown")

        content = path.read_text()
        assert "shown" in content
        assert "hidden" not in content

    def test_stdlib_records_use_same_formatter(self, tmp_path):
        """Test that plain logging records are rendered too."""
        path = tmp_path / "plugbus.log"
        configure_logging(LogConfig(structured=True, file=path))

        logging.getLogger("plugbus.stdlib").warning("from stdlib")

        record = json.loads(path.read_text().strip().splitlines()[-1])
        assert record["event"] == "from stdlib"
        assert record["logger"] == "plugbus.stdlib"
