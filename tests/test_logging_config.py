"""Tests for logging setup."""

import logging


class TestSetupLogging:
    """Test the featgraph logger configuration."""

    def test_default_level_is_warning(self, monkeypatch):
        """Test WARNING is the default without FEATGRAPH_DEBUG."""
        from featgraph.logging_config import setup_logging

        monkeypatch.delenv("FEATGRAPH_DEBUG", raising=False)
        logger = setup_logging()
        assert logger.name == "featgraph"
        assert logger.level == logging.WARNING
        assert len(logger.handlers) == 1
        assert logger.handlers[0].formatter._fmt == "%(message)s"

    def test_debug_env(self, monkeypatch):
        """Test FEATGRAPH_DEBUG switches to DEBUG with timestamps."""
        from featgraph.logging_config import setup_logging

        monkeypatch.setenv("FEATGRAPH_DEBUG", "true")
        logger = setup_logging()
        assert logger.level == logging.DEBUG
        assert "asctime" in logger.handlers[0].formatter._fmt

    def test_quiet(self):
        """Test quiet mode installs only a NullHandler."""
        from featgraph.logging_config import setup_logging

        logger = setup_logging(quiet=True)
        assert [type(h) for h in logger.handlers] == [logging.NullHandler]

    def test_repeated_setup_does_not_stack_handlers(self):
        """Test calling setup twice keeps one handler."""
        from featgraph.logging_config import setup_logging

        setup_logging(logging.INFO)
        logger = setup_logging(logging.INFO)
        assert len(logger.handlers) == 1


class TestGetLogger:
    """Test module loggers."""

    def test_prefix(self):
        """Test names are placed under the featgraph namespace."""
        from featgraph.logging_config import get_logger

        assert get_logger("storage").name == "featgraph.storage"
        assert get_logger("featgraph.graph").name == "featgraph.graph"
        assert get_logger().name == "featgraph"
