"""Bundler backend abstraction.

A backend turns plugin sources into delivery bundles. The pipeline works
with :class:`Bundler` only; which backend runs is decided by
:func:`caskit.build.bundlers.create_bundler` from ``config.bundler``.
"""

from __future__ import annotations

import abc
import pathlib
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from caskit.build.config import BuildConfig, BuildMode, BundlerBackend, OutputFormat, PluginType, TargetEnvironment
from caskit.build.result import BuildResult, BuildStats, Diagnostic
from caskit.build.watcher import ShutdownScope, WatchHandle, watch_stage
from caskit.core.logging_manager import get_logger

logger = get_logger(__name__)

STAGE = "bundle"

# Host platform libraries that service code imports but never bundles
PLATFORM_EXTERNALS = ("express", "@cas/core-api")
# UI libraries the host page provides to library plugins
PEER_EXTERNALS = ("react", "react-dom", "@cas/types")

WORK_DIR = ".caskit"

SOURCE_SUFFIXES = {".ts", ".tsx", ".js", ".jsx", ".mjs"}
TEST_MARKERS = (".test.", ".spec.")


@dataclass(frozen=True)
class BundleProfile:
    """One bundler invocation derived from the build configuration.

    Attributes:
        name: Profile name, also used as output sub-directory where needed
        entries: Entry point name to source file
        target: Runtime environment
        format: Module format of the output
        out_dir: Directory the profile writes into
        externals: Module names left as runtime imports
        jsx: Whether the component-framework transform is enabled
        styles: Whether style preprocessing is enabled
        preserve_modules: Emit one output per source module instead of a bundle
    """

    name: str
    entries: Dict[str, pathlib.Path]
    target: TargetEnvironment
    format: OutputFormat
    out_dir: pathlib.Path
    externals: Tuple[str, ...] = ()
    jsx: bool = False
    styles: bool = False
    preserve_modules: bool = False


def _entry(src: pathlib.Path, *candidates: str) -> pathlib.Path:
    """First candidate that exists under ``src``, else the first one."""
    for candidate in candidates:
        if (src / candidate).exists():
            return src / candidate
    return src / candidates[0]


def derive_profiles(config: BuildConfig) -> List[BundleProfile]:
    """Derive the bundler invocations for a plugin from its type.

    - ui: one browser bundle with JSX and styles, entry ``main``
    - api: one node bundle with platform libraries external, entry ``server``
    - fullstack: a ``client`` profile with ui rules and a ``server`` profile
      with api rules
    - library: peer UI libraries external, emitted twice: a universal (UMD)
      bundle and a module-preserving ESM build
    """
    src = config.src_dir
    out = config.output_dir
    fmt = config.output.format
    plugin_type = config.plugin_type

    if plugin_type == PluginType.UI:
        return [
            BundleProfile(
                name="main",
                entries={"main": _entry(src, "index.tsx", "index.ts")},
                target=TargetEnvironment.BROWSER,
                format=fmt,
                out_dir=out,
                jsx=True,
                styles=True,
            )
        ]
    elif plugin_type == PluginType.API:
        return [
            BundleProfile(
                name="server",
                entries={"server": _entry(src, "index.ts", "server.ts")},
                target=TargetEnvironment.NODE,
                format=fmt,
                out_dir=out,
                externals=PLATFORM_EXTERNALS,
            )
        ]
    elif plugin_type == PluginType.FULLSTACK:
        return [
            BundleProfile(
                name="client",
                entries={"client": _entry(src, "client/index.tsx", "client/index.ts")},
                target=TargetEnvironment.BROWSER,
                format=fmt,
                out_dir=out,
                jsx=True,
                styles=True,
            ),
            BundleProfile(
                name="server",
                entries={"server": _entry(src, "server/index.ts", "server.ts")},
                target=TargetEnvironment.NODE,
                format=fmt,
                out_dir=out,
                externals=PLATFORM_EXTERNALS,
            ),
        ]
    else:
        entries = {"index": _entry(src, "index.ts", "index.tsx")}
        target = config.targets[0].environment if config.targets else TargetEnvironment.BROWSER
        return [
            BundleProfile(
                name="umd",
                entries=entries,
                target=target,
                format=OutputFormat.UMD,
                out_dir=out / "umd",
                externals=PEER_EXTERNALS,
            ),
            BundleProfile(
                name="esm",
                entries=entries,
                target=target,
                format=OutputFormat.ESM,
                out_dir=out / "esm",
                externals=PEER_EXTERNALS,
                preserve_modules=True,
            ),
        ]


def package_name(module_path: str) -> Optional[str]:
    """npm package a resolved module path belongs to, if any."""
    marker = "node_modules/"
    normalized = module_path.replace("\\", "/")
    index = normalized.rfind(marker)
    if index < 0:
        return None
    parts = normalized[index + len(marker):].split("/")
    if parts[0].startswith("@") and len(parts) > 1:
        return f"{parts[0]}/{parts[1]}"
    return parts[0] or None


def work_dir(config: BuildConfig) -> pathlib.Path:
    """Scratch directory for generated bundler files."""
    path = config.root / WORK_DIR
    path.mkdir(parents=True, exist_ok=True)
    return path


class Bundler(abc.ABC):
    """Base class for bundler backends.

    Subclasses implement :meth:`bundle_profile`; :meth:`bundle` runs every
    derived profile in order and stops at the first failure.
    """

    backend: BundlerBackend

    def bundle(self, config: BuildConfig, mode: BuildMode = BuildMode.PRODUCTION) -> BuildResult:
        """Produce the bundles for ``config``.

        Raises:
            ProcessSpawnError: If the backend executable cannot be started
            BundlingError: If the backend's output cannot be interpreted
        """
        started = time.monotonic()
        warnings: List[Diagnostic] = []
        stats = BuildStats()

        for profile in derive_profiles(config):
            logger.info("Bundling", backend=self.backend.value, profile=profile.name, mode=mode.value)
            partial = self.bundle_profile(config, profile, mode)
            warnings.extend(partial.warnings)
            if not partial.success:
                return BuildResult(
                    success=False,
                    errors=list(partial.errors),
                    warnings=warnings,
                    duration=time.monotonic() - started,
                    stage=STAGE,
                )
            stats = stats.merge(partial.stats)

        return BuildResult(
            success=True,
            warnings=warnings,
            duration=time.monotonic() - started,
            stats=stats,
            stage=STAGE,
        )

    @abc.abstractmethod
    def bundle_profile(self, config: BuildConfig, profile: BundleProfile, mode: BuildMode) -> BuildResult:
        """Run the backend for one profile."""

    def watch_paths(self, config: BuildConfig) -> List[pathlib.Path]:
        return [
            config.src_dir,
            config.root / "package.json",
            config.root / config.typescript.tsconfig,
        ]

    def watch(
        self,
        config: BuildConfig,
        on_result: Callable[[BuildResult], None],
        scope: ShutdownScope,
        on_start: Optional[Callable[[str], None]] = None,
        reload: Optional[Callable[[], BuildConfig]] = None,
    ) -> WatchHandle:
        """Rebuild in development mode whenever an input changes.

        Args:
            config: Configuration used to find the paths to watch
            on_result: Receives the result of every rebuild
            scope: Shutdown scope the loop registers with
            on_start: Called before each rebuild
            reload: Supplies a fresh configuration for every rebuild

        Returns:
            Handle that stops the loop
        """
        current = reload or (lambda: config)
        return watch_stage(
            STAGE,
            self.watch_paths(config),
            lambda: self.bundle(current(), BuildMode.DEVELOPMENT),
            on_result,
            scope,
            on_start=on_start,
        )


def module_sources(config: BuildConfig) -> List[pathlib.Path]:
    """Source modules of a plugin, excluding tests and declaration files."""
    sources = []
    for path in sorted(config.src_dir.rglob("*")):
        if path.suffix not in SOURCE_SUFFIXES or path.name.endswith(".d.ts"):
            continue
        if any(marker in path.name for marker in TEST_MARKERS) or "__tests__" in path.parts:
            continue
        sources.append(path)
    return sources


def module_entries(config: BuildConfig) -> Dict[str, pathlib.Path]:
    """One entry per source module, named by its path below ``src`` without suffix."""
    return {
        path.relative_to(config.src_dir).with_suffix("").as_posix(): path
        for path in module_sources(config)
    }
