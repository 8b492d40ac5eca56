"""Plugin validation.

:class:`ManifestValidator` checks a ``plugin.json`` structurally and
semantically. :class:`PluginValidator` and :class:`SecurityValidator` look at
the rest of the plugin (layout, dependencies, platform compatibility, source
code). Every pass returns a :class:`ValidationResult`; passes are combined
with :meth:`ValidationResult.merge`.
"""

from __future__ import annotations

import json
import pathlib
import re
from typing import Any, Dict, List, Optional, Tuple, Union

import pydantic

from caskit.build.bundlers.base import SOURCE_SUFFIXES, TEST_MARKERS, derive_profiles
from caskit.build.context import PluginContext
from caskit.core.logging_manager import get_logger
from caskit.plugin_system.manifest import (
    LEADING_VERSION_PATTERN,
    OPTIONAL_FIELDS,
    PLUGIN_ID_PATTERN,
    RANGE_VERSION_PATTERN,
    REQUIRED_FIELDS,
    DependencyType,
    PluginManifest,
    PluginPermission,
)
from caskit.plugin_system.validation import ValidationResult

logger = get_logger(__name__)

STRING_FIELDS = ("id", "name", "version", "description", "author", "entry", "casVersion")
LIST_FIELDS = ("dependencies", "permissions")
OBJECT_FIELDS = ("compatibility", "metadata")

STRICT_NAME_LIMIT = 50
STRICT_DESCRIPTION_LIMIT = 200
NAME_LIMIT = 100
DESCRIPTION_LIMIT = 500


def field_code(field_name: str) -> str:
    """Upper snake case form of a manifest key: ``casVersion`` -> ``CAS_VERSION``."""
    return re.sub(r"(?<!^)(?=[A-Z])", "_", field_name).upper()


def _leading_components(version: str) -> Optional[Tuple[int, int, int]]:
    match = LEADING_VERSION_PATTERN.match(version)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2)), int(match.group(3))


class ManifestValidator:
    """Validates plugin manifests."""

    def validate(self, manifest_path: Union[str, pathlib.Path], strict: bool = False) -> ValidationResult:
        """Validate a manifest file.

        Args:
            manifest_path: Path to ``plugin.json``
            strict: Turn length advisories and unknown fields into errors

        Returns:
            The validation result; ``manifest`` is set when the file is valid
        """
        path = pathlib.Path(manifest_path)
        result = ValidationResult()

        if not path.is_file():
            result.error("MANIFEST_NOT_FOUND", f"Plugin manifest not found at {path}", str(path))
            return result

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            result.error("INVALID_JSON", f"Invalid JSON in manifest: {e}", str(path))
            return result
        except OSError as e:
            result.error("MANIFEST_NOT_FOUND", f"Plugin manifest cannot be read: {e}", str(path))
            return result

        if not isinstance(data, dict):
            result.error("INVALID_MANIFEST", "Plugin manifest must be a JSON object", str(path))
            return result

        result = (
            self.check_structure(data, strict)
            .merge(self.check_semantics(data, strict))
            .merge(self.check_compatibility(data))
        )

        if result.valid:
            try:
                result.manifest = PluginManifest.model_validate(data)
            except pydantic.ValidationError as e:
                for error in e.errors():
                    location = ".".join(str(part) for part in error["loc"])
                    result.error("INVALID_FIELD_TYPE", f"{location}: {error['msg']}", location)

        logger.debug(
            "Manifest validated",
            path=str(path),
            valid=result.valid,
            errors=len(result.errors),
            warnings=len(result.warnings),
        )
        return result

    def check_structure(self, data: Dict[str, Any], strict: bool = False) -> ValidationResult:
        """Required fields present, fields of the right JSON type, no unknown fields."""
        result = ValidationResult()

        for name in REQUIRED_FIELDS:
            if name not in data or data[name] is None:
                result.error(f"MISSING_{field_code(name)}", f"Required field '{name}' is missing", name)

        for name, value in data.items():
            if value is None:
                continue
            if name in STRING_FIELDS and not isinstance(value, str):
                result.error("INVALID_FIELD_TYPE", f"Field '{name}' must be a string", name)
            elif name in LIST_FIELDS and not isinstance(value, list):
                result.error("INVALID_FIELD_TYPE", f"Field '{name}' must be an array", name)
            elif name in OBJECT_FIELDS and not isinstance(value, dict):
                result.error("INVALID_FIELD_TYPE", f"Field '{name}' must be an object", name)
            elif name not in REQUIRED_FIELDS and name not in OPTIONAL_FIELDS:
                result.report("UNKNOWN_FIELD", f"Unknown manifest field '{name}'", name, as_error=strict)

        return result

    def check_semantics(self, data: Dict[str, Any], strict: bool = False) -> ValidationResult:
        """Formats, dependency entries, permissions and length advisories.

        Only fields that passed the structural type check are looked at.
        """
        result = ValidationResult()

        plugin_id = data.get("id")
        if isinstance(plugin_id, str) and not PLUGIN_ID_PATTERN.match(plugin_id):
            result.error(
                "INVALID_ID_FORMAT",
                "Plugin ID must contain only lowercase letters, numbers, and hyphens",
                "id",
            )

        version = data.get("version")
        if isinstance(version, str) and not LEADING_VERSION_PATTERN.match(version):
            result.error("INVALID_VERSION_FORMAT", "Version must follow semantic versioning (x.y.z)", "version")

        cas_version = data.get("casVersion")
        if isinstance(cas_version, str) and not RANGE_VERSION_PATTERN.match(cas_version.strip()):
            result.error(
                "INVALID_CAS_VERSION",
                "casVersion must be a version, optionally prefixed by a comparison (e.g. >=1.0.0)",
                "casVersion",
            )

        name = data.get("name")
        if isinstance(name, str):
            self._check_length(result, "name", name, STRICT_NAME_LIMIT, NAME_LIMIT, strict)

        description = data.get("description")
        if isinstance(description, str):
            if not description.strip():
                result.error("MISSING_DESCRIPTION", "Plugin description is required", "description")
            self._check_length(
                result, "description", description, STRICT_DESCRIPTION_LIMIT, DESCRIPTION_LIMIT, strict
            )

        entry = data.get("entry")
        if isinstance(entry, str) and not entry.strip():
            result.error("MISSING_ENTRY", "Plugin entry point is required", "entry")

        dependencies = data.get("dependencies")
        if isinstance(dependencies, list):
            for index, dependency in enumerate(dependencies):
                self._check_dependency(result, index, dependency)

        permissions = data.get("permissions")
        if isinstance(permissions, list):
            for index, permission in enumerate(permissions):
                if not isinstance(permission, str):
                    result.error("INVALID_FIELD_TYPE", "Permissions must be strings", f"permissions[{index}]")
                elif not PluginPermission.is_known(permission):
                    result.warning("UNKNOWN_PERMISSION", f"Unknown permission: {permission}", "permissions")

        return result

    def check_compatibility(self, data: Dict[str, Any]) -> ValidationResult:
        """Compatibility bounds well formed and ordered."""
        result = ValidationResult()
        compatibility = data.get("compatibility")
        if compatibility is None:
            result.warning("MISSING_COMPATIBILITY", "Compatibility information is missing", "compatibility")
            return result
        if not isinstance(compatibility, dict):
            return result

        bounds: Dict[str, Optional[Tuple[int, int, int]]] = {}
        for key, code, label in (
            ("minCasVersion", "INVALID_MIN_VERSION", "Minimum"),
            ("maxCasVersion", "INVALID_MAX_VERSION", "Maximum"),
        ):
            value = compatibility.get(key)
            if value is None:
                bounds[key] = None
                continue
            components = _leading_components(value) if isinstance(value, str) else None
            if components is None:
                result.error(code, f"{label} CAS version must follow semantic versioning", f"compatibility.{key}")
            bounds[key] = components

        minimum = bounds["minCasVersion"]
        maximum = bounds["maxCasVersion"]
        if minimum is not None and maximum is not None:
            # Tuples compare pairwise; the first differing component decides
            if minimum > maximum:
                result.error(
                    "INVALID_VERSION_RANGE",
                    "Minimum CAS version cannot be greater than maximum version",
                    "compatibility",
                )
        return result

    @staticmethod
    def _check_length(
        result: ValidationResult, field_name: str, value: str, strict_limit: int, limit: int, strict: bool
    ) -> None:
        code = f"{field_code(field_name)}_TOO_LONG"
        if strict:
            if len(value) > strict_limit:
                result.error(code, f"Plugin {field_name} must be {strict_limit} characters or less in strict mode", field_name)
        elif len(value) > limit:
            result.warning(
                f"LONG_{field_code(field_name)}",
                f"Plugin {field_name} is quite long, consider shortening it",
                field_name,
            )
        elif len(value) > strict_limit:
            result.warning(code, f"Plugin {field_name} exceeds {strict_limit} characters", field_name)

    @staticmethod
    def _check_dependency(result: ValidationResult, index: int, dependency: Any) -> None:
        path = f"dependencies[{index}]"
        if not isinstance(dependency, dict):
            result.error("INVALID_DEPENDENCY", "Dependencies must be objects with name, version, and type", path)
            return

        fields = [dependency.get(key) for key in ("name", "version", "type")]
        if not all(isinstance(value, str) and value.strip() for value in fields):
            result.error("INVALID_DEPENDENCY", "Dependencies must have name, version, and type", path)

        dependency_type = dependency.get("type")
        if dependency_type and (
            not isinstance(dependency_type, str) or dependency_type not in DependencyType._value2member_map_
        ):
            result.error(
                "INVALID_DEPENDENCY_TYPE",
                "Dependency type must be one of: core, peer, external",
                f"{path}.type",
            )


class PluginValidator:
    """Validates the plugin around its manifest.

    Attributes:
        context: The loaded plugin
    """

    def __init__(self, context: PluginContext) -> None:
        self.context = context

    def validate_structure(self) -> ValidationResult:
        """Source directory, entry sources, documentation and tests."""
        result = ValidationResult()
        root = self.context.root
        config = self.context.build_config

        if not config.src_dir.is_dir():
            result.error("MISSING_SOURCE_DIR", f"Source directory not found: {config.src_dir}", "src")
        else:
            for profile in derive_profiles(config):
                for name, entry in profile.entries.items():
                    if not entry.is_file():
                        result.error(
                            "MISSING_ENTRY_SOURCE",
                            f"Entry point '{name}' not found at {entry.relative_to(root)}",
                            str(entry.relative_to(root)),
                        )
            if not self._has_tests():
                result.warning("NO_TESTS", "No test files found", "tests")

        if not (root / "package.json").is_file():
            result.warning("MISSING_PACKAGE_JSON", "package.json not found", "package.json")
        if not (root / "README.md").is_file():
            result.warning("MISSING_README", "README.md not found", "README.md")
        if not (root / "LICENSE").is_file():
            result.warning("MISSING_LICENSE", "LICENSE file not found", "LICENSE")

        return result

    def validate_dependencies(self) -> ValidationResult:
        """Manifest dependencies are unique and external ones are installed."""
        result = ValidationResult()
        manifest = self.context.manifest

        seen: List[str] = []
        for dependency in manifest.dependencies:
            if dependency.name in seen:
                result.error(
                    "DUPLICATE_DEPENDENCY",
                    f"Dependency declared more than once: {dependency.name}",
                    "dependencies",
                )
            seen.append(dependency.name)

        package_json = self.context.root / "package.json"
        if not package_json.is_file():
            return result
        try:
            with open(package_json, "r", encoding="utf-8") as f:
                package_data = json.load(f)
        except (OSError, ValueError) as e:
            result.error("INVALID_PACKAGE_JSON", f"Failed to read package.json: {e}", "package.json")
            return result
        if not isinstance(package_data, dict):
            result.error("INVALID_PACKAGE_JSON", "package.json must be a JSON object", "package.json")
            return result

        declared = set()
        for section in ("dependencies", "peerDependencies", "optionalDependencies"):
            entries = package_data.get(section)
            if isinstance(entries, dict):
                declared.update(entries)

        for dependency in manifest.dependencies_of_type(DependencyType.EXTERNAL):
            if dependency.name not in declared:
                result.warning(
                    "UNDECLARED_DEPENDENCY",
                    f"External dependency {dependency.name} is not listed in package.json",
                    "dependencies",
                )
        return result

    def check_compatibility(self) -> ValidationResult:
        """The configured platform version lies inside the manifest's range."""
        result = ValidationResult()
        manifest = self.context.manifest
        platform_version = self.context.platform_version
        if not manifest.is_compatible_with(platform_version):
            result.error(
                "INCOMPATIBLE_PLATFORM",
                f"Plugin {manifest.id} is not compatible with platform version {platform_version}",
                "compatibility",
            )
        return result

    def _has_tests(self) -> bool:
        root = self.context.root
        if (root / "tests").is_dir() or (root / "test").is_dir():
            return True
        src = self.context.build_config.src_dir
        return any(
            "__tests__" in path.parts or any(marker in path.name for marker in TEST_MARKERS)
            for path in src.rglob("*")
            if path.suffix in SOURCE_SUFFIXES
        )


# (code, pattern, message, is_error)
DANGEROUS_PATTERNS = (
    ("UNSAFE_EVAL", re.compile(r"\beval\s*\("), "Use of eval()", True),
    ("UNSAFE_FUNCTION_CONSTRUCTOR", re.compile(r"\bnew\s+Function\s*\("), "Use of the Function constructor", True),
    ("UNSAFE_INNER_HTML", re.compile(r"\.innerHTML\s*="), "Assignment to innerHTML", False),
    ("UNSAFE_DOCUMENT_WRITE", re.compile(r"\bdocument\.write\s*\("), "Use of document.write()", False),
    (
        "CHILD_PROCESS",
        re.compile(r"""require\(\s*['"]child_process['"]\s*\)|from\s+['"]child_process['"]"""),
        "Use of child_process",
        False,
    ),
    (
        "HARDCODED_SECRET",
        re.compile(r"""(?i)\b(api[_-]?key|secret|password|token)\s*[:=]\s*['"][^'"\s]{8,}['"]"""),
        "Possible hard-coded secret",
        False,
    ),
)


class SecurityValidator:
    """Flags risky permissions and dangerous source patterns."""

    def __init__(self, context: PluginContext) -> None:
        self.context = context

    def validate(self) -> ValidationResult:
        result = ValidationResult()

        for permission in self.context.manifest.get_permission_risks()["high"]:
            result.warning(
                "HIGH_RISK_PERMISSION",
                f"High risk permission requested: {permission} "
                f"({PluginPermission.get_description(PluginPermission(permission))})",
                "permissions",
            )

        src = self.context.build_config.src_dir
        if src.is_dir():
            for path in sorted(src.rglob("*")):
                if path.suffix in SOURCE_SUFFIXES and path.is_file():
                    self._scan_file(result, path)

        self._check_install_scripts(result)
        return result

    def _scan_file(self, result: ValidationResult, path: pathlib.Path) -> None:
        relative = str(path.relative_to(self.context.root))
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Cannot scan source file", path=relative, error=str(e))
            return

        for line_number, line in enumerate(text.splitlines(), start=1):
            for code, pattern, message, is_error in DANGEROUS_PATTERNS:
                if pattern.search(line):
                    result.report(code, f"{message} in {relative}:{line_number}", relative, as_error=is_error)

    def _check_install_scripts(self, result: ValidationResult) -> None:
        package_json = self.context.root / "package.json"
        if not package_json.is_file():
            return
        try:
            with open(package_json, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            return
        scripts = data.get("scripts") if isinstance(data, dict) else None
        if not isinstance(scripts, dict):
            return
        for hook in ("preinstall", "install", "postinstall"):
            if hook in scripts:
                result.warning("INSTALL_SCRIPT", f"package.json defines a {hook} script", "package.json")
