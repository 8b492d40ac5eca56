"""Bundle size analysis for ``build --analyze``."""

from __future__ import annotations

import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, List

# Per-file sizes above which a suggestion is emitted
LARGE_SCRIPT_BYTES = 250 * 1024
LARGE_ASSET_BYTES = 500 * 1024

SCRIPT_SUFFIXES = {".js", ".mjs", ".cjs"}


@dataclass(frozen=True)
class OutputFile:
    path: str
    size: int
    kind: str


@dataclass
class BundleReport:
    total_size: int = 0
    files: List[OutputFile] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    def largest(self, count: int = 10) -> List[OutputFile]:
        return sorted(self.files, key=lambda f: f.size, reverse=True)[:count]

    def size_by_kind(self) -> Dict[str, int]:
        sizes: Dict[str, int] = {}
        for output_file in self.files:
            sizes[output_file.kind] = sizes.get(output_file.kind, 0) + output_file.size
        return sizes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalSize": self.total_size,
            "sizeByKind": self.size_by_kind(),
            "largest": [{"path": f.path, "size": f.size} for f in self.largest()],
            "suggestions": list(self.suggestions),
        }


def _classify(path: pathlib.Path) -> str:
    if path.name.endswith(".map"):
        return "sourcemap"
    if path.suffix == ".gz":
        return "compressed"
    if path.suffix in SCRIPT_SUFFIXES:
        return "script"
    if path.suffix == ".css":
        return "style"
    if path.name.endswith(".d.ts"):
        return "types"
    return "asset"


class BundleAnalyzer:
    """Summarizes what a build wrote to its output directory."""

    def analyze(self, output_dir: pathlib.Path) -> BundleReport:
        report = BundleReport()
        if not output_dir.is_dir():
            return report

        for path in sorted(output_dir.rglob("*")):
            if not path.is_file():
                continue
            size = path.stat().st_size
            report.files.append(OutputFile(path=path.relative_to(output_dir).as_posix(), size=size, kind=_classify(path)))
            report.total_size += size

        for output_file in report.files:
            if output_file.kind == "script" and output_file.size > LARGE_SCRIPT_BYTES:
                report.suggestions.append(
                    f"{output_file.path} is {format_size(output_file.size)}; consider code splitting "
                    "or externalizing large dependencies"
                )
            elif output_file.kind == "asset" and output_file.size > LARGE_ASSET_BYTES:
                report.suggestions.append(
                    f"{output_file.path} is {format_size(output_file.size)}; consider optimizing or lazy loading it"
                )

        if any(f.kind == "sourcemap" for f in report.files):
            report.suggestions.append("Source maps are included; disable them for production builds")

        return report


def format_size(size: int) -> str:
    """Human readable byte size."""
    value = float(size)
    for unit in ("B", "KB", "MB"):
        if value < 1024 or unit == "MB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} MB"
