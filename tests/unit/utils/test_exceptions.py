"""Unit tests for the exceptions module."""

import pytest

from caskit.build.result import Diagnostic
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


def test_caskit_error():
    """Test the base CasKitError class."""
    # Test basic error
    error = CasKitError("Test error message")
    assert str(error) == "Test error message"
    assert error.code == "CASKIT_ERROR"
    assert error.details == {}

    # Test with custom code
    error = CasKitError("Test with code", code="CUSTOM_CODE")
    assert error.code == "CUSTOM_CODE"

    # Test with details
    error = CasKitError("Test with details", plugin="hello-world", attempt=2)
    assert error.details == {"plugin": "hello-world", "attempt": 2}


def test_custom_code_does_not_leak_to_class():
    CasKitError("one", code="OTHER")
    assert CasKitError("two").code == "CASKIT_ERROR"


def test_configuration_error():
    """Test the ConfigurationError class."""
    error = ConfigurationError("Invalid bundler")
    assert str(error) == "Invalid bundler"
    assert error.code == "CONFIGURATION_ERROR"
    assert error.path is None

    # Test with path
    error = ConfigurationError("Invalid bundler", path="bundler")
    assert str(error) == "Invalid bundler (Path: bundler)"
    assert error.details["path"] == "bundler"

    # Test with a specific code
    error = ConfigurationError("No manifest", code="MANIFEST_NOT_FOUND", path="plugin.json")
    assert error.code == "MANIFEST_NOT_FOUND"


@pytest.mark.parametrize(
    "error_class, code, stage",
    [
        (CompilationError, "COMPILATION_FAILED", "compile"),
        (BundlingError, "BUNDLING_FAILED", "bundle"),
        (AssetProcessingError, "ASSET_PROCESSING_FAILED", "assets"),
    ],
)
def test_stage_errors(error_class, code, stage):
    """Test that every stage error carries its code and stage."""
    error = error_class("Stage broke", details={"file": "src/index.ts"})

    assert isinstance(error, StageError)
    assert error.code == code
    assert error.stage == stage
    assert error.details == {"file": "src/index.ts"}


def test_stage_error_to_diagnostic():
    """Test that captured stage errors keep their stage."""
    diagnostic = Diagnostic.from_exception(BundlingError("esbuild exited with 1"))

    assert diagnostic.code == "BUNDLING_FAILED"
    assert diagnostic.stage == "bundle"
    assert diagnostic.message == "esbuild exited with 1"


def test_foreign_exception_to_diagnostic():
    diagnostic = Diagnostic.from_exception(RuntimeError("boom"), "assets")

    assert diagnostic.code == "BUILD_FAILED"
    assert diagnostic.stage == "assets"


def test_packaging_errors():
    """Test the PackagingError and SigningError classes."""
    error = PackagingError("Disk full", archive_path="/tmp/p-1.0.0.zip")
    assert error.code == "PACKAGING_FAILED"
    assert error.archive_path == "/tmp/p-1.0.0.zip"

    error = SigningError("Invalid private key")
    assert isinstance(error, PackagingError)
    assert error.code == "SIGNING_FAILED"
    assert error.archive_path is None


def test_validation_error():
    error = ValidationError("Manifest invalid")
    assert error.code == "VALIDATION_ERROR"


def test_process_spawn_error():
    """Test the ProcessSpawnError class."""
    error = ProcessSpawnError("Failed to start npx")
    assert str(error) == "Failed to start npx"
    assert error.code == "PROCESS_SPAWN_FAILED"

    error = ProcessSpawnError("Failed to start npx", command="npx --no-install tsc")
    assert str(error) == "Failed to start npx (Command: npx --no-install tsc)"
    assert error.details["command"] == "npx --no-install tsc"
