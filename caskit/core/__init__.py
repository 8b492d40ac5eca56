"""Core services shared by every caskit component."""

from caskit.core.logging_manager import LoggingManager, get_logger
