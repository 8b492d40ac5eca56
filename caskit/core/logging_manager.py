from __future__ import annotations

import logging
import logging.handlers
import os
import pathlib
import sys
from typing import Any, Dict, List, Optional

import structlog
from pythonjsonlogger import jsonlogger

from caskit.utils.exceptions import ConfigurationError


class LoggingManager:
    """Configures logging for the caskit command line tool.

    Python's logging module receives a console handler and, when configured,
    a rotating file handler. structlog is layered on top so that components
    log key/value events through :func:`get_logger`.
    """

    # Mapping from string log levels to logging module constants
    LOG_LEVELS = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
        "critical": logging.CRITICAL,
    }

    DEFAULT_CONFIG: Dict[str, Any] = {
        "level": "warning",
        "format": "text",
        "color": True,
        "file": {"enabled": False, "path": "logs/caskit.log", "rotation": "10 MB", "retention": 5},
    }

    def __init__(self, config: Optional[Dict[str, Any]] = None) -> None:
        """Initialize the Logging Manager.

        Args:
            config: Logging settings, merged over ``DEFAULT_CONFIG``.
        """
        self._config: Dict[str, Any] = {**self.DEFAULT_CONFIG, **(config or {})}
        self._root_logger: Optional[logging.Logger] = None
        self._console_handler: Optional[logging.Handler] = None
        self._file_handler: Optional[logging.Handler] = None
        self._handlers: List[logging.Handler] = []
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """Install handlers on the root logger and configure structlog.

        Raises:
            ConfigurationError: If the logging configuration is unusable.
        """
        level_name = str(self._config.get("level", "warning")).lower()
        if level_name not in self.LOG_LEVELS:
            raise ConfigurationError(f"Unknown log level: {level_name}", path="logging.level")
        log_level = self.LOG_LEVELS[level_name]
        log_format = str(self._config.get("format", "text")).lower()
        if log_format not in ("text", "json"):
            raise ConfigurationError(f"Unknown log format: {log_format}", path="logging.format")

        self._root_logger = logging.getLogger()
        self._root_logger.setLevel(log_level)
        for handler in list(self._root_logger.handlers):
            self._root_logger.removeHandler(handler)

        formatter = self._create_formatter(log_format)

        # Console output goes to stderr so stdout stays free for reports
        self._console_handler = logging.StreamHandler(sys.stderr)
        self._console_handler.setLevel(log_level)
        self._console_handler.setFormatter(formatter)
        self._root_logger.addHandler(self._console_handler)
        self._handlers.append(self._console_handler)

        file_config = self._config.get("file", {}) or {}
        if file_config.get("enabled", False):
            file_path = pathlib.Path(file_config.get("path", "logs/caskit.log"))
            os.makedirs(file_path.parent, exist_ok=True)

            rotation = file_config.get("rotation", "10 MB")
            if isinstance(rotation, str) and "MB" in rotation:
                max_bytes = int(rotation.split()[0]) * 1024 * 1024
            else:
                max_bytes = 10 * 1024 * 1024

            self._file_handler = logging.handlers.RotatingFileHandler(
                file_path,
                maxBytes=max_bytes,
                backupCount=int(file_config.get("retention", 5)),
            )
            self._file_handler.setLevel(log_level)
            # Files always get JSON so they can be grepped by field
            self._file_handler.setFormatter(self._create_formatter("json"))
            self._root_logger.addHandler(self._file_handler)
            self._handlers.append(self._file_handler)

        self._configure_structlog()
        self._initialized = True

    def _create_formatter(self, log_format: str) -> logging.Formatter:
        """Create the formatter for a handler.

        Args:
            log_format: ``text`` or ``json``.

        Returns:
            logging.Formatter: A structlog-aware formatter.
        """
        if log_format == "json":
            # structlog hands the event dict over as record.msg, which
            # JsonFormatter merges into the output object
            return jsonlogger.JsonFormatter(
                fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
                datefmt="%Y-%m-%dT%H:%M:%S%z",
                json_ensure_ascii=False,
            )
        return structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=bool(self._config.get("color", True))),
            foreign_pre_chain=self._shared_processors(),
        )

    @staticmethod
    def _shared_processors() -> List[Any]:
        return [
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
        ]

    def _configure_structlog(self) -> None:
        """Configure structlog for structured logging."""
        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                *self._shared_processors(),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=False,
        )

    def get_logger(self, name: str) -> Any:
        """Get a logger for a specific component.

        Args:
            name: The name of the component requesting a logger.

        Returns:
            A structlog bound logger once initialized, a stdlib logger before.
        """
        if not self._initialized:
            return logging.getLogger(name)
        return structlog.get_logger(name)

    def shutdown(self) -> None:
        """Flush and detach all handlers installed by this manager."""
        if not self._initialized:
            return

        for handler in self._handlers:
            if self._root_logger is not None:
                self._root_logger.removeHandler(handler)
            handler.flush()
            handler.close()

        self._handlers = []
        self._initialized = False

    def status(self) -> Dict[str, Any]:
        """Get the status of the Logging Manager."""
        return {
            "initialized": self._initialized,
            "level": self._config.get("level"),
            "format": self._config.get("format"),
            "handlers": [type(handler).__name__ for handler in self._handlers],
        }


def get_logger(name: str) -> Any:
    """Return a structlog logger bound to ``name``.

    Works before :class:`LoggingManager` is initialized; structlog then falls
    back to its default configuration.
    """
    return structlog.get_logger(name)
