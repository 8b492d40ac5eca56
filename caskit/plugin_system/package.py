"""Plugin packaging.

This module turns a plugin into a distributable archive: it builds the plugin
with the canonical production profile, writes a zip or tar archive, and
optionally signs it and computes its checksum.
"""

from __future__ import annotations

import abc
import enum
import io
import json
import pathlib
import tarfile
import time
import zipfile
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set

from caskit.build.bundlers.base import TEST_MARKERS
from caskit.build.builder import BuildOrchestrator
from caskit.build.config import BuildMode, production_profile
from caskit.build.context import PluginContext
from caskit.build.result import Diagnostic
from caskit.core.logging_manager import get_logger
from caskit.plugin_system.integrity import generate_checksum
from caskit.plugin_system.manifest import MANIFEST_FILENAME, PluginManifest
from caskit.plugin_system.signing import private_key_from_env, sign_file, signature_path
from caskit.utils.exceptions import CasKitError, ConfigurationError, PackagingError

logger = get_logger(__name__)

STAGE = "package"

# package.json keys only needed for development
DEV_ONLY_FIELDS = ("devDependencies", "scripts")


class PackageFormat(str, enum.Enum):
    """Archive format of a plugin package."""

    ZIP = "zip"
    TAR = "tar"  # gzip compressed unless compression is disabled


@dataclass
class PackageOptions:
    """Options for one packaging run.

    Attributes:
        format: Archive format
        output_path: Archive path, ``<root>/<id>-<version>.<format>`` if omitted
        sign: Write a detached signature next to the archive
        compress: Compress archive members
        include_dev: Ship ``package.json`` unchanged instead of a production copy
        exclude_tests: Leave test files out of the archive
        generate_checksum: Compute the SHA-256 digest of the archive
    """

    format: PackageFormat = PackageFormat.ZIP
    output_path: Optional[pathlib.Path] = None
    sign: bool = True
    compress: bool = True
    include_dev: bool = False
    exclude_tests: bool = True
    generate_checksum: bool = False


@dataclass
class PackageResult:
    """Outcome of a packaging run."""

    success: bool = False
    output_path: Optional[pathlib.Path] = None
    size: int = 0
    file_count: int = 0
    manifest: Optional[PluginManifest] = None
    signature: Optional[bytes] = None
    signature_path: Optional[pathlib.Path] = None
    checksum: Optional[str] = None
    errors: List[Diagnostic] = field(default_factory=list)
    warnings: List[Diagnostic] = field(default_factory=list)
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "outputPath": str(self.output_path) if self.output_path else None,
            "size": self.size,
            "fileCount": self.file_count,
            "manifest": self.manifest.to_dict() if self.manifest else None,
            "signed": self.signature is not None,
            "signaturePath": str(self.signature_path) if self.signature_path else None,
            "checksum": self.checksum,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "duration": round(self.duration, 3),
        }


class ArchiveWriter(abc.ABC):
    """Write side of an archive. Member names are unique; repeats are skipped."""

    def __init__(self, path: pathlib.Path) -> None:
        self.path = path
        self.names: Set[str] = set()

    @property
    def count(self) -> int:
        return len(self.names)

    def add_file(self, source: pathlib.Path, name: str) -> None:
        if self._claim(name):
            self._write_file(source, name)

    def add_bytes(self, data: bytes, name: str) -> None:
        if self._claim(name):
            self._write_bytes(data, name)

    def add_directory(self, directory: pathlib.Path, prefix: str = "", exclude_tests: bool = False) -> None:
        for path in sorted(directory.rglob("*")):
            if not path.is_file():
                continue
            relative = path.relative_to(directory)
            if exclude_tests and is_test_file(relative):
                continue
            self.add_file(path, f"{prefix}{relative.as_posix()}")

    def _claim(self, name: str) -> bool:
        if name in self.names:
            logger.debug("Skipping duplicate archive member", name=name)
            return False
        self.names.add(name)
        return True

    @abc.abstractmethod
    def _write_file(self, source: pathlib.Path, name: str) -> None:
        ...

    @abc.abstractmethod
    def _write_bytes(self, data: bytes, name: str) -> None:
        ...

    @abc.abstractmethod
    def close(self) -> None:
        ...


class ZipArchiveWriter(ArchiveWriter):
    def __init__(self, path: pathlib.Path, compress: bool) -> None:
        super().__init__(path)
        compression = zipfile.ZIP_DEFLATED if compress else zipfile.ZIP_STORED
        self._zip = zipfile.ZipFile(path, "w", compression)

    def _write_file(self, source: pathlib.Path, name: str) -> None:
        self._zip.write(source, name)

    def _write_bytes(self, data: bytes, name: str) -> None:
        self._zip.writestr(name, data)

    def close(self) -> None:
        self._zip.close()


class TarArchiveWriter(ArchiveWriter):
    def __init__(self, path: pathlib.Path, compress: bool) -> None:
        super().__init__(path)
        self._tar = tarfile.open(path, "w:gz" if compress else "w")

    def _write_file(self, source: pathlib.Path, name: str) -> None:
        self._tar.add(str(source), arcname=name, recursive=False)

    def _write_bytes(self, data: bytes, name: str) -> None:
        info = tarfile.TarInfo(name)
        info.size = len(data)
        info.mtime = int(time.time())
        info.mode = 0o644
        self._tar.addfile(info, io.BytesIO(data))

    def close(self) -> None:
        self._tar.close()


def open_archive(path: pathlib.Path, archive_format: PackageFormat, compress: bool) -> ArchiveWriter:
    if archive_format == PackageFormat.ZIP:
        return ZipArchiveWriter(path, compress)
    return TarArchiveWriter(path, compress)


def is_test_file(relative: pathlib.Path) -> bool:
    return "__tests__" in relative.parts or any(marker in relative.name for marker in TEST_MARKERS)


def production_package_json(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy of a ``package.json`` without development-only fields."""
    return {key: value for key, value in data.items() if key not in DEV_ONLY_FIELDS}


class Packager:
    """Builds and archives one plugin.

    Attributes:
        context: The plugin being packaged
        orchestrator: Runs the production build
    """

    def __init__(
        self,
        context: PluginContext,
        orchestrator: Optional[BuildOrchestrator] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.context = context
        self.orchestrator = orchestrator or BuildOrchestrator()
        self._environ = environ

    def default_output_path(self, archive_format: PackageFormat) -> pathlib.Path:
        return self.context.root / f"{self.context.manifest.default_archive_stem}.{archive_format.value}"

    def package(self, options: Optional[PackageOptions] = None) -> PackageResult:
        """Build the plugin and write its archive.

        Errors never propagate; they are reported in the result.

        Args:
            options: Packaging options

        Returns:
            The packaging result
        """
        options = options or PackageOptions()
        started = time.monotonic()
        result = PackageResult()

        logger.info("Building plugin for packaging", plugin=self.context.manifest.id)
        build = self.orchestrator.build(production_profile(self.context.build_config), BuildMode.PRODUCTION)
        result.warnings.extend(build.warnings)
        if not build.success:
            result.errors.extend(build.errors)
            result.duration = time.monotonic() - started
            logger.error("Packaging aborted, build failed", errors=len(build.errors))
            return result

        output_path = pathlib.Path(options.output_path or self.default_output_path(options.format))
        if not output_path.is_absolute():
            output_path = self.context.root / output_path
        result.output_path = output_path

        try:
            self._write_archive(output_path, options, result)
            result.size = output_path.stat().st_size

            if options.sign:
                self._sign(output_path, result)

            if options.generate_checksum:
                result.checksum = generate_checksum(output_path)
        except CasKitError as e:
            self._discard(output_path)
            result.errors.append(Diagnostic.from_exception(e, STAGE))
        except (OSError, ValueError) as e:
            self._discard(output_path)
            error = PackagingError(f"Packaging failed: {e}", archive_path=str(output_path))
            result.errors.append(Diagnostic.from_exception(error, STAGE))

        result.success = not result.errors
        result.duration = time.monotonic() - started
        if result.success:
            logger.info(
                "Package created",
                path=str(output_path),
                size=result.size,
                files=result.file_count,
                signed=result.signature is not None,
            )
        else:
            logger.error("Packaging failed", path=str(output_path), errors=len(result.errors))
        return result

    def _write_archive(self, output_path: pathlib.Path, options: PackageOptions, result: PackageResult) -> None:
        """Write all members; the partial archive is removed on failure.

        Raises:
            PackagingError: If the archive cannot be written
        """
        root = self.context.root
        build_output = self.context.build_config.output_dir
        output_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            writer = open_archive(output_path, options.format, options.compress)
        except (OSError, tarfile.TarError) as e:
            raise PackagingError(f"Cannot create archive: {e}", archive_path=str(output_path)) from e

        completed = False
        try:
            if build_output.is_dir():
                writer.add_directory(build_output, exclude_tests=options.exclude_tests)

            manifest_path = root / MANIFEST_FILENAME
            result.manifest = PluginManifest.load(manifest_path)
            writer.add_file(manifest_path, MANIFEST_FILENAME)

            for name in ("README.md", "LICENSE"):
                if (root / name).is_file():
                    writer.add_file(root / name, name)

            package_json = root / "package.json"
            if package_json.is_file():
                if options.include_dev:
                    writer.add_file(package_json, "package.json")
                else:
                    writer.add_bytes(
                        json.dumps(self._production_package_json(package_json), indent=2).encode("utf-8"),
                        "package.json",
                    )

            assets = root / "assets"
            if assets.is_dir() and not (build_output / "assets").is_dir():
                writer.add_directory(assets, prefix="assets/", exclude_tests=options.exclude_tests)
            completed = True
        except (OSError, ValueError, tarfile.TarError, zipfile.BadZipFile) as e:
            raise PackagingError(f"Failed to write archive: {e}", archive_path=str(output_path)) from e
        finally:
            writer.close()
            if not completed:
                self._discard(output_path)

        result.file_count = writer.count

    @staticmethod
    def _production_package_json(path: pathlib.Path) -> Dict[str, Any]:
        """Production copy of a package.json file.

        Raises:
            ConfigurationError: If the file is not a JSON object
        """
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ConfigurationError(
                "package.json must be a JSON object", path=str(path), code="INVALID_PACKAGE_JSON"
            )
        return production_package_json(data)

    def _sign(self, output_path: pathlib.Path, result: PackageResult) -> None:
        """Sign the finished archive with the key from the environment.

        Raises:
            SigningError: If a key is configured but unusable
        """
        private_key = private_key_from_env(self._environ)
        if private_key is None:
            logger.warning("No private key found for signing", env="CAS_PRIVATE_KEY")
            result.warnings.append(
                Diagnostic(
                    code="SIGNING_SKIPPED",
                    message="No private key found for signing; set CAS_PRIVATE_KEY to sign packages",
                    stage=STAGE,
                )
            )
            return
        result.signature = sign_file(output_path, private_key)
        result.signature_path = signature_path(output_path)

    @staticmethod
    def _discard(output_path: pathlib.Path) -> None:
        for path in (output_path, signature_path(output_path)):
            if path.exists():
                path.unlink()
                logger.debug("Removed partial package file", path=str(path))
