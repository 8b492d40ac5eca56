"""Result types produced by the build pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from caskit.utils.exceptions import CasKitError, StageError


@dataclass(frozen=True)
class Diagnostic:
    """One error or warning reported by a build stage.

    Attributes:
        code: Stable machine readable code
        message: Human readable description
        stage: Pipeline stage that reported it (clean, compile, bundle, assets, size)
        file: Source file the diagnostic points at, if known
        line: Line in ``file``, if known
    """

    code: str
    message: str
    stage: str = "build"
    file: Optional[str] = None
    line: Optional[int] = None

    @classmethod
    def from_exception(cls, error: Exception, stage: Optional[str] = None) -> Diagnostic:
        if isinstance(error, CasKitError):
            default_stage = error.stage if isinstance(error, StageError) else "build"
            return cls(code=error.code, message=error.message, stage=stage or default_stage)
        return cls(code="BUILD_FAILED", message=str(error), stage=stage or "build")

    def __str__(self) -> str:
        location = ""
        if self.file:
            location = f"{self.file}:{self.line}: " if self.line else f"{self.file}: "
        return f"{location}{self.message} [{self.code}]"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"code": self.code, "message": self.message, "stage": self.stage}
        if self.file:
            data["file"] = self.file
        if self.line:
            data["line"] = self.line
        return data


@dataclass
class BuildStats:
    chunks: int = 0
    modules: int = 0
    assets: int = 0
    entrypoints: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)

    def merge(self, other: BuildStats) -> BuildStats:
        """Combine stats of two bundle runs (e.g. client and server)."""
        return BuildStats(
            chunks=self.chunks + other.chunks,
            modules=self.modules + other.modules,
            assets=self.assets + other.assets,
            entrypoints=self.entrypoints + [e for e in other.entrypoints if e not in self.entrypoints],
            dependencies=self.dependencies + [d for d in other.dependencies if d not in self.dependencies],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunks": self.chunks,
            "modules": self.modules,
            "assets": self.assets,
            "entrypoints": list(self.entrypoints),
            "dependencies": list(self.dependencies),
        }


@dataclass
class BuildResult:
    """Outcome of one build, one bundle run, or one watch-mode stage run.

    Attributes:
        success: Whether every stage that ran succeeded
        errors: Errors of the failing stage, in order
        warnings: Warnings of every stage that ran, in order
        duration: Wall-clock duration in seconds
        size: Total bytes in the output directory
        stats: Bundle statistics
        stage: Stage that produced a partial watch-mode result
    """

    success: bool = False
    errors: List[Diagnostic] = field(default_factory=list)
    warnings: List[Diagnostic] = field(default_factory=list)
    duration: float = 0.0
    size: int = 0
    stats: BuildStats = field(default_factory=BuildStats)
    stage: Optional[str] = None

    @classmethod
    def failure(cls, error: Diagnostic, **kwargs: Any) -> BuildResult:
        return cls(success=False, errors=[error], **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "duration": round(self.duration, 3),
            "size": self.size,
            "stats": self.stats.to_dict(),
        }
        if self.stage:
            data["stage"] = self.stage
        return data
