from __future__ import annotations

from typing import Any, Dict, Optional


class CasKitError(Exception):
    """Base exception for all caskit errors.

    Every error carries a stable ``code`` that ends up in build, package,
    test and validation results when the exception is captured.
    """

    code: str = "CASKIT_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, **kwargs: Any) -> None:
        """
        Initialize exception.

        Args:
            message: Error message
            code: Stable error code, defaults to the class code
            **kwargs: Additional error information
        """
        self.message = message
        if code is not None:
            self.code = code
        self.details: Dict[str, Any] = kwargs
        super().__init__(message)

    def __str__(self) -> str:
        """String representation."""
        return f"{self.message}"


class ConfigurationError(CasKitError):
    """Exception raised for a malformed or missing manifest or build config."""

    code = "CONFIGURATION_ERROR"

    def __init__(self, message: str, path: Optional[str] = None, **kwargs: Any) -> None:
        """Initialize a ConfigurationError.

        Args:
            message: A descriptive error message.
            path: The configuration file or key that caused the error.
            **kwargs: Additional error information.
        """
        super().__init__(message, path=path, **kwargs)
        self.path = path

    def __str__(self) -> str:
        if self.path:
            return f"{self.message} (Path: {self.path})"
        return super().__str__()


class StageError(CasKitError):
    """Base exception for failures of one build stage."""

    stage: str = "build"

    def __init__(self, message: str, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        super().__init__(message, **details, **kwargs)


class CompilationError(StageError):
    """Exception raised when the source compile stage reports failures."""

    code = "COMPILATION_FAILED"
    stage = "compile"


class BundlingError(StageError):
    """Exception raised when a bundler backend reports build failures."""

    code = "BUNDLING_FAILED"
    stage = "bundle"


class AssetProcessingError(StageError):
    """Exception raised when static assets cannot be processed."""

    code = "ASSET_PROCESSING_FAILED"
    stage = "assets"


class PackagingError(CasKitError):
    """Exception raised for archive, signing or checksum failures."""

    code = "PACKAGING_FAILED"

    def __init__(self, message: str, archive_path: Optional[str] = None, **kwargs: Any) -> None:
        """Initialize a PackagingError.

        Args:
            message: A descriptive error message.
            archive_path: The archive being produced when the error occurred.
            **kwargs: Additional error information.
        """
        super().__init__(message, archive_path=archive_path, **kwargs)
        self.archive_path = archive_path


class SigningError(PackagingError):
    """Exception raised when an archive cannot be signed or verified."""

    code = "SIGNING_FAILED"


class ValidationError(CasKitError):
    """Exception raised for structural, semantic or compatibility failures."""

    code = "VALIDATION_ERROR"


class ProcessSpawnError(CasKitError):
    """Exception raised when an external tool executable cannot be started."""

    code = "PROCESS_SPAWN_FAILED"

    def __init__(self, message: str, command: Optional[str] = None, **kwargs: Any) -> None:
        """Initialize a ProcessSpawnError.

        Args:
            message: A descriptive error message.
            command: The command line that failed to start.
            **kwargs: Additional error information.
        """
        super().__init__(message, command=command, **kwargs)
        self.command = command

    def __str__(self) -> str:
        if self.command:
            return f"{self.message} (Command: {self.command})"
        return super().__str__()
