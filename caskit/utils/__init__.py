"""Utility functions and classes for caskit."""

from caskit.utils.exceptions import (
    AssetProcessingError,
    BundlingError,
    CasKitError,
    CompilationError,
    ConfigurationError,
    PackagingError,
    ProcessSpawnError,
    SigningError,
    StageError,
    ValidationError,
)
