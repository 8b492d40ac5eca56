"""Developer tools for CAS plugins.

High level operations behind the command line: building, packaging,
validating and testing a plugin, and signing key management. Each operation
works from a loaded :class:`PluginContext` and reports through a result
object rather than raising.
"""

from __future__ import annotations

import pathlib
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from caskit.build.analyzer import BundleAnalyzer, BundleReport
from caskit.build.builder import BuildOrchestrator
from caskit.build.config import BuildMode
from caskit.build.context import ConfigLoader, PluginContext
from caskit.build.result import BuildResult, Diagnostic
from caskit.core.logging_manager import get_logger
from caskit.plugin_system.integrity import verify_checksum
from caskit.plugin_system.manifest import MANIFEST_FILENAME
from caskit.plugin_system.package import Packager, PackageOptions, PackageResult
from caskit.plugin_system.signing import (
    SigningKey,
    generate_signing_key,
    private_key_from_env,
    public_key_pem,
    signature_path,
    verify_file,
)
from caskit.plugin_system.testing import TestConfig, TestRunner, TestRunSummary
from caskit.plugin_system.validation import ValidationResult
from caskit.plugin_system.validator import ManifestValidator, PluginValidator, SecurityValidator
from caskit.utils.exceptions import CasKitError, SigningError

logger = get_logger(__name__)

VALIDATION_PASSES = ("manifest", "structure", "dependencies", "security", "compatibility")


def load_plugin(
    root: Union[str, pathlib.Path],
    config_path: Optional[Union[str, pathlib.Path]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> PluginContext:
    """Load the plugin at ``root``.

    Raises:
        ConfigurationError: If the manifest or configuration is malformed
    """
    return ConfigLoader().load(
        pathlib.Path(root),
        pathlib.Path(config_path) if config_path else None,
        overrides,
    )


def build_plugin(
    context: PluginContext,
    mode: BuildMode = BuildMode.PRODUCTION,
    analyze: bool = False,
) -> Tuple[BuildResult, Optional[BundleReport]]:
    """Build a plugin, optionally analyzing the output.

    The output is analyzed when ``analyze`` is set or the configuration
    enables bundle analysis, and only if the build succeeded.
    """
    config = context.build_config
    result = BuildOrchestrator().build(config, mode)
    report = None
    if result.success and (analyze or config.optimization.bundle_analysis):
        report = BundleAnalyzer().analyze(config.output_dir)
    return result, report


def package_plugin(
    context: PluginContext,
    options: Optional[PackageOptions] = None,
    skip_validation: bool = False,
) -> PackageResult:
    """Validate the manifest, then build and archive the plugin.

    An invalid manifest stops packaging before the build; its issues are
    reported as errors of the result.
    """
    if not skip_validation:
        validation = ManifestValidator().validate(context.manifest_path)
        if not validation.valid:
            logger.error("Packaging aborted, manifest is invalid", errors=len(validation.errors))
            return PackageResult(
                success=False,
                errors=[Diagnostic(code=i.code, message=i.message, stage="validate") for i in validation.errors],
                warnings=[Diagnostic(code=i.code, message=i.message, stage="validate") for i in validation.warnings],
            )
    return Packager(context).package(options)


@dataclass
class ValidationReport:
    """Results of every validation pass; a skipped pass is None."""

    passes: Dict[str, Optional[ValidationResult]] = field(
        default_factory=lambda: {name: None for name in VALIDATION_PASSES}
    )

    @property
    def valid(self) -> bool:
        return all(result.valid for result in self.passes.values() if result is not None)

    @property
    def combined(self) -> ValidationResult:
        merged = ValidationResult()
        for result in self.passes.values():
            if result is not None:
                merged = merged.merge(result)
        return merged

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"valid": self.valid}
        for name, result in self.passes.items():
            data[name] = result.to_dict() if result is not None else None
        return data


def validate_plugin(
    root: Union[str, pathlib.Path],
    config_path: Optional[Union[str, pathlib.Path]] = None,
    strict: bool = False,
    skip_manifest: bool = False,
    skip_deps: bool = False,
    skip_security: bool = False,
    check_compatibility: bool = True,
) -> ValidationReport:
    """Run the manifest, structure, dependency, security and compatibility passes.

    The manifest pass reads ``plugin.json`` directly, so it reports problems
    even when the plugin cannot be loaded. The other passes need a loaded
    plugin; if loading fails the failure is reported in the structure pass.
    """
    root = pathlib.Path(root).resolve()
    report = ValidationReport()

    if not skip_manifest:
        report.passes["manifest"] = ManifestValidator().validate(root / MANIFEST_FILENAME, strict=strict)

    try:
        context = load_plugin(root, config_path)
    except CasKitError as e:
        failure = ValidationResult()
        failure.error(e.code, f"Plugin could not be loaded: {e}", str(getattr(e, "path", None) or root))
        report.passes["structure"] = failure
        return report

    plugin_validator = PluginValidator(context)
    report.passes["structure"] = plugin_validator.validate_structure()
    if not skip_deps:
        report.passes["dependencies"] = plugin_validator.validate_dependencies()
    if not skip_security:
        report.passes["security"] = SecurityValidator(context).validate()
    if check_compatibility:
        report.passes["compatibility"] = plugin_validator.check_compatibility()

    logger.info("Validation finished", root=str(root), valid=report.valid)
    return report


def run_plugin_tests(
    context: PluginContext,
    config: TestConfig,
    on_output: Optional[Callable[[str], None]] = None,
) -> TestRunSummary:
    return TestRunner(context.root, on_output=on_output).run(config)


def create_signing_key(path: Union[str, pathlib.Path]) -> SigningKey:
    """Generate a key pair for signing plugin packages.

    Raises:
        SigningError: If the key files cannot be written
    """
    return generate_signing_key(path)


@dataclass
class VerificationResult:
    archive: pathlib.Path
    signature_valid: Optional[bool] = None
    checksum_valid: Optional[bool] = None
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors and self.signature_valid is not False and self.checksum_valid is not False


def verify_package(
    archive: Union[str, pathlib.Path],
    public_key: Optional[Union[str, pathlib.Path]] = None,
    checksum: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> VerificationResult:
    """Check a package's signature and, if given, its checksum.

    The signature is checked against ``public_key`` (a PEM file), or against
    the public half of ``CAS_PRIVATE_KEY`` when no public key is given. The
    signature check is skipped when there is no signature file.
    """
    archive = pathlib.Path(archive)
    result = VerificationResult(archive=archive)
    if not archive.is_file():
        result.errors.append(f"Package not found: {archive}")
        return result

    if checksum:
        result.checksum_valid = verify_checksum(archive, checksum)

    if signature_path(archive).is_file():
        try:
            if public_key:
                public_pem = pathlib.Path(public_key).read_bytes()
            else:
                private_pem = private_key_from_env(environ)
                if private_pem is None:
                    raise SigningError("No public key given and CAS_PRIVATE_KEY is not set")
                public_pem = public_key_pem(private_pem)
            result.signature_valid = verify_file(archive, public_pem)
        except SigningError as e:
            result.errors.append(str(e))
        except OSError as e:
            result.errors.append(f"Failed to read public key: {e}")
    elif public_key:
        result.errors.append(f"Signature file not found: {signature_path(archive)}")

    logger.info(
        "Package verified",
        archive=str(archive),
        signature_valid=result.signature_valid,
        checksum_valid=result.checksum_valid,
    )
    return result
