"""esbuild backend, driven through the esbuild CLI."""

from __future__ import annotations

import json
import pathlib
import re
import time
from typing import Any, Dict, List, Tuple

from caskit.build.bundlers.base import Bundler, BundleProfile, module_sources, package_name, work_dir
from caskit.build.config import BuildConfig, BuildMode, BundlerBackend, OutputFormat, TargetEnvironment
from caskit.build.process import npx, run_tool
from caskit.build.result import BuildResult, BuildStats, Diagnostic
from caskit.utils.exceptions import BundlingError

STAGE = "bundle"

# "✘ [ERROR] Could not resolve "./missing"" / "▲ [WARNING] ..."
_MESSAGE_PATTERN = re.compile(r"^\W*\[(?P<level>ERROR|WARNING)\]\s+(?P<message>.+)$")
# "    src/index.ts:3:7:"
_LOCATION_PATTERN = re.compile(r"^\s+(?P<file>[^\s:][^:]*):(?P<line>\d+):(?P<column>\d+):\s*$")

_FORMATS = {
    OutputFormat.ESM: "esm",
    OutputFormat.CJS: "cjs",
    OutputFormat.UMD: "iife",
    OutputFormat.SYSTEM: "esm",
}


def parse_esbuild_log(output: str) -> Tuple[List[Diagnostic], List[Diagnostic]]:
    """Split esbuild's log into errors and warnings, attaching source locations."""
    entries: List[Tuple[str, Diagnostic]] = []
    for line in output.splitlines():
        match = _MESSAGE_PATTERN.match(line)
        if match:
            level = match.group("level")
            code = "ESBUILD_ERROR" if level == "ERROR" else "ESBUILD_WARNING"
            entries.append((level, Diagnostic(code=code, message=match.group("message").strip(), stage=STAGE)))
            continue
        location = _LOCATION_PATTERN.match(line)
        if location and entries and entries[-1][1].file is None:
            level, last = entries[-1]
            entries[-1] = (
                level,
                Diagnostic(
                    code=last.code,
                    message=last.message,
                    stage=STAGE,
                    file=location.group("file"),
                    line=int(location.group("line")),
                ),
            )
    errors = [d for level, d in entries if level == "ERROR"]
    warnings = [d for level, d in entries if level == "WARNING"]
    return errors, warnings


def stats_from_metafile(metafile: Dict[str, Any], profile: BundleProfile) -> BuildStats:
    """Build statistics from an esbuild metafile."""
    outputs: Dict[str, Any] = metafile.get("outputs", {})
    inputs: Dict[str, Any] = metafile.get("inputs", {})

    chunks = [path for path in outputs if path.endswith((".js", ".mjs", ".cjs"))]
    assets = [path for path in outputs if not path.endswith((".js", ".mjs", ".cjs", ".map"))]

    dependencies: List[str] = []
    for path in inputs:
        name = package_name(path)
        if name and name not in dependencies:
            dependencies.append(name)
    for output in outputs.values():
        for imported in output.get("imports", []):
            if imported.get("external") and imported["path"] not in dependencies:
                dependencies.append(imported["path"])

    return BuildStats(
        chunks=len(chunks),
        modules=len(inputs),
        assets=len(assets),
        entrypoints=list(profile.entries),
        dependencies=dependencies,
    )


class EsbuildBundler(Bundler):
    """Bundles with esbuild.

    esbuild has no UMD or SystemJS output: UMD profiles are emitted as an
    IIFE exposing a global, SystemJS as ESM, each with a warning.
    """

    backend = BundlerBackend.ESBUILD

    def build_command(
        self, config: BuildConfig, profile: BundleProfile, mode: BuildMode, metafile: pathlib.Path
    ) -> List[str]:
        production = mode == BuildMode.PRODUCTION
        optimization = config.optimization
        args: List[str] = []

        if profile.preserve_modules:
            args += [str(path) for path in module_sources(config)]
            args.append(f"--outbase={config.src_dir}")
        else:
            args += [f"{name}={path}" for name, path in profile.entries.items()]
            args.append("--bundle")

        args += [
            f"--outdir={profile.out_dir}",
            f"--format={_FORMATS[profile.format]}",
            f"--platform={'node' if profile.target == TargetEnvironment.NODE else 'browser'}",
            f"--target={config.typescript.target.lower()}",
            f"--metafile={metafile}",
            "--log-level=warning",
            "--color=false",
        ]
        if profile.format == OutputFormat.UMD:
            args.append(f"--global-name={_global_name(config)}")
        if optimization.minify and production:
            args.append("--minify")
        if config.output.sourcemap:
            args.append("--sourcemap")
        if optimization.code_splitting and profile.format == OutputFormat.ESM and not profile.preserve_modules:
            args.append("--splitting")
        args.append(f"--tree-shaking={'true' if optimization.treeshake else 'false'}")
        if profile.jsx:
            args.append("--jsx=automatic")
        if profile.styles:
            args += ["--loader:.svg=file", "--loader:.png=file", "--loader:.woff2=file"]
        args += [f"--external:{name}" for name in profile.externals]
        args.append(f"--define:process.env.NODE_ENV={json.dumps(mode.value)}")
        args += [f"--define:process.env.{key}={json.dumps(value)}" for key, value in sorted(config.defines.items())]

        return npx("esbuild", *args)

    def bundle_profile(self, config: BuildConfig, profile: BundleProfile, mode: BuildMode) -> BuildResult:
        started = time.monotonic()
        metafile = work_dir(config) / f"esbuild-{profile.name}.meta.json"
        if metafile.exists():
            metafile.unlink()

        notes: List[Diagnostic] = []
        if profile.format == OutputFormat.UMD:
            notes.append(
                Diagnostic(
                    code="FORMAT_SUBSTITUTED",
                    message="esbuild cannot emit UMD; emitting an IIFE with a global name instead",
                    stage=STAGE,
                )
            )
        elif profile.format == OutputFormat.SYSTEM:
            notes.append(
                Diagnostic(
                    code="FORMAT_SUBSTITUTED",
                    message="esbuild cannot emit SystemJS; emitting ESM instead",
                    stage=STAGE,
                )
            )

        result = run_tool(self.build_command(config, profile, mode, metafile), cwd=config.root)
        errors, warnings = parse_esbuild_log(result.output)
        warnings = notes + warnings

        if not result.ok:
            if not errors:
                error = BundlingError(
                    f"esbuild exited with code {result.returncode}", returncode=result.returncode
                )
                errors = [Diagnostic.from_exception(error)]
            return BuildResult(success=False, errors=errors, warnings=warnings, duration=time.monotonic() - started)

        try:
            with open(metafile, "r", encoding="utf-8") as f:
                stats = stats_from_metafile(json.load(f), profile)
        except (OSError, json.JSONDecodeError) as e:
            raise BundlingError(f"Failed to read esbuild metafile: {e}", metafile=str(metafile)) from e
        finally:
            if metafile.exists():
                metafile.unlink()

        return BuildResult(success=True, warnings=warnings, duration=time.monotonic() - started, stats=stats)


def _global_name(config: BuildConfig) -> str:
    plugin_id = config.defines.get("CAS_PLUGIN_ID", config.root.name)
    parts = re.split(r"[^A-Za-z0-9]+", plugin_id)
    name = parts[0] + "".join(part.capitalize() for part in parts[1:])
    return name if name and not name[0].isdigit() else f"plugin{name}"
