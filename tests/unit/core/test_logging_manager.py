"""Unit tests for the Logging Manager."""

import json
import logging
import logging.handlers

import pytest
import structlog

from caskit.core.logging_manager import LoggingManager, get_logger
from caskit.utils.exceptions import ConfigurationError


@pytest.fixture
def logging_config(tmp_path):
    """Create a logging configuration for testing."""
    return {
        "level": "info",
        "format": "text",
        "color": False,
        "file": {
            "enabled": True,
            "path": str(tmp_path / "logs" / "test.log"),
            "rotation": "1 MB",
            "retention": 3,
        },
    }


@pytest.fixture
def logging_manager(logging_config):
    manager = LoggingManager(logging_config)
    yield manager
    manager.shutdown()


def test_logging_manager_initialization(logging_manager, tmp_path):
    """Test that the LoggingManager initializes correctly."""
    logging_manager.initialize()

    assert logging_manager.initialized

    # Check log directory was created
    assert (tmp_path / "logs").is_dir()

    # Check root logger was set up
    assert logging.getLogger().level == logging.INFO

    # Clean up
    logging_manager.shutdown()
    assert not logging_manager.initialized


def test_file_handler_rotation(logging_manager):
    """Test that the file handler rotates at the configured size."""
    logging_manager.initialize()

    file_handler = logging_manager._file_handler
    assert isinstance(file_handler, logging.handlers.RotatingFileHandler)
    assert file_handler.maxBytes == 1024 * 1024
    assert file_handler.backupCount == 3


def test_get_logger(logging_manager):
    """Test getting a logger from the LoggingManager."""
    assert isinstance(logging_manager.get_logger("before"), logging.Logger)

    logging_manager.initialize()
    logger = logging_manager.get_logger("test_logger")

    assert logger is not None
    assert not isinstance(logger, logging.Logger)


def test_log_to_file_as_json(logging_manager, logging_config):
    """Test that file output is one JSON object per line."""
    logging_manager.initialize()

    structlog.get_logger("caskit.test").info("Build finished", stage="bundle", chunks=3)
    logging_manager.shutdown()

    with open(logging_config["file"]["path"], "r", encoding="utf-8") as f:
        lines = [json.loads(line) for line in f if line.strip()]
    record = next(line for line in lines if line.get("event") == "Build finished")
    assert record["stage"] == "bundle"
    assert record["chunks"] == 3
    assert record["levelname"] == "INFO"


def test_console_only():
    """Test that the file handler is optional."""
    manager = LoggingManager({"level": "debug"})
    manager.initialize()
    try:
        status = manager.status()
        assert status["initialized"] is True
        assert status["handlers"] == ["StreamHandler"]
        assert logging.getLogger().level == logging.DEBUG
    finally:
        manager.shutdown()


def test_initialize_replaces_existing_handlers():
    """Test that initializing twice does not duplicate console output."""
    manager = LoggingManager()
    manager.initialize()
    manager.initialize()
    try:
        assert len(logging.getLogger().handlers) == 1
    finally:
        manager.shutdown()


@pytest.mark.parametrize("config, path", [({"level": "loud"}, "logging.level"), ({"format": "xml"}, "logging.format")])
def test_invalid_config(config, path):
    """Test that unusable settings are rejected."""
    manager = LoggingManager(config)

    with pytest.raises(ConfigurationError) as exc_info:
        manager.initialize()
    assert exc_info.value.path == path
    assert not manager.initialized


def test_shutdown_without_initialize():
    manager = LoggingManager()
    manager.shutdown()
    assert not manager.initialized


def test_module_get_logger():
    assert get_logger("caskit.build") is not None
