"""Validation result types shared by every validation pass."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from caskit.plugin_system.manifest import PluginManifest


class Severity(str, enum.Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationIssue:
    """A single finding of a validation pass.

    Attributes:
        code: Stable machine readable code, e.g. ``MISSING_ID``
        message: Human readable description
        path: Manifest field or file the issue refers to
        severity: Error or warning
    """

    code: str
    message: str
    path: Optional[str] = None
    severity: Severity = Severity.ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "path": self.path,
            "severity": self.severity.value,
        }


@dataclass
class ValidationResult:
    """Outcome of one or more validation passes.

    ``valid`` is derived from the errors; warnings never change it.
    """

    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)
    manifest: Optional[PluginManifest] = None

    @property
    def valid(self) -> bool:
        return not self.errors

    def error(self, code: str, message: str, path: Optional[str] = None) -> None:
        self.errors.append(ValidationIssue(code, message, path, Severity.ERROR))

    def warning(self, code: str, message: str, path: Optional[str] = None) -> None:
        self.warnings.append(ValidationIssue(code, message, path, Severity.WARNING))

    def report(self, code: str, message: str, path: Optional[str] = None, as_error: bool = True) -> None:
        if as_error:
            self.error(code, message, path)
        else:
            self.warning(code, message, path)

    def has_code(self, code: str) -> bool:
        return any(issue.code == code for issue in self.errors + self.warnings)

    def merge(self, other: ValidationResult) -> ValidationResult:
        """Combine two passes into a new result.

        The merged result is valid only if both inputs are.
        """
        return ValidationResult(
            errors=self.errors + other.errors,
            warnings=self.warnings + other.warnings,
            manifest=self.manifest or other.manifest,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "valid": self.valid,
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": [issue.to_dict() for issue in self.warnings],
        }
        if self.manifest is not None:
            data["manifest"] = self.manifest.to_dict()
        return data
