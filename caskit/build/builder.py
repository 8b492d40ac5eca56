"""Build orchestration for CAS plugins.

This module contains the BuildOrchestrator that sequences the compile,
bundle and asset stages into a single build, or starts one watch loop per
stage for development.
"""

from __future__ import annotations

import pathlib
import shutil
import time
from typing import Callable, List, Optional, Tuple

from caskit.build.analyzer import BundleAnalyzer, BundleReport
from caskit.build.assets import AssetProcessor
from caskit.build.bundlers import Bundler, create_bundler
from caskit.build.compiler import SourceCompiler
from caskit.build.config import BuildConfig, BuildMode, PluginType
from caskit.build.result import BuildResult, BuildStats, Diagnostic
from caskit.build.session import SessionSnapshot, WatchSession
from caskit.build.watcher import FileWatcher, ShutdownScope, watch_stage
from caskit.core.logging_manager import get_logger
from caskit.utils.exceptions import CasKitError

logger = get_logger(__name__)


def directory_size(path: pathlib.Path) -> int:
    """Total size in bytes of all files below ``path``."""
    if not path.is_dir():
        return 0
    return sum(item.stat().st_size for item in path.rglob("*") if item.is_file())


class BuildOrchestrator:
    """Runs the build pipeline for one plugin.

    Attributes:
        compiler: Source compile stage
        assets: Static asset stage
        bundler_factory: Builds the bundler selected by ``config.bundler``
    """

    def __init__(
        self,
        compiler: Optional[SourceCompiler] = None,
        assets: Optional[AssetProcessor] = None,
        bundler_factory: Callable[..., Bundler] = create_bundler,
    ) -> None:
        self.compiler = compiler or SourceCompiler()
        self.assets = assets or AssetProcessor()
        self.bundler_factory = bundler_factory

    def build(self, config: BuildConfig, mode: BuildMode = BuildMode.PRODUCTION) -> BuildResult:
        """Run clean, compile, bundle, assets and size in order.

        The first failing stage ends the build; its errors become the
        result's errors. Warnings from every stage that ran are kept in
        order. Nothing is raised: unexpected failures are reported as
        errors in the result.

        Args:
            config: Build configuration
            mode: Development or production

        Returns:
            Result of the build
        """
        started = time.monotonic()
        result = BuildResult()
        stage = "clean"

        logger.info(
            "Starting build",
            root=str(config.root),
            plugin_type=config.plugin_type.value,
            bundler=config.bundler.value,
            mode=mode.value,
        )

        try:
            if config.output.clean:
                self.clean(config)

            stage = "compile"
            compiled = self.compiler.compile(config, mode)
            result.warnings.extend(compiled.warnings)
            if not compiled.success:
                return self._fail(result, compiled.errors, stage, started)

            stage = "bundle"
            bundler = self.bundler_factory(config.bundler)
            bundled = bundler.bundle(config, mode)
            result.warnings.extend(bundled.warnings)
            if not bundled.success:
                return self._fail(result, bundled.errors, stage, started)
            result.stats = bundled.stats

            if config.plugin_type != PluginType.API:
                stage = "assets"
                processed = self.assets.process(config, mode)
                result.warnings.extend(processed.warnings)
                if not processed.success:
                    return self._fail(result, processed.errors, stage, started)
                result.stats = BuildStats(
                    chunks=result.stats.chunks,
                    modules=result.stats.modules,
                    assets=result.stats.assets + processed.stats.assets,
                    entrypoints=result.stats.entrypoints,
                    dependencies=result.stats.dependencies,
                )

            stage = "size"
            result.size = directory_size(config.output_dir)
        except CasKitError as e:
            return self._fail(result, [Diagnostic.from_exception(e, stage)], stage, started)
        except Exception as e:
            logger.exception("Unexpected build failure", stage=stage)
            error = Diagnostic(code="BUILD_FAILED", message=f"Build failed: {e}", stage=stage)
            return self._fail(result, [error], stage, started)

        result.success = True
        result.duration = time.monotonic() - started
        logger.info("Build completed", duration=round(result.duration, 3), size=result.size)
        return result

    def clean(self, config: BuildConfig) -> None:
        """Remove the output directory."""
        output_dir = config.output_dir
        if output_dir.exists():
            shutil.rmtree(output_dir)
            logger.info("Cleaned output directory", path=str(output_dir))

    def _fail(
        self, result: BuildResult, errors: List[Diagnostic], stage: str, started: float
    ) -> BuildResult:
        result.success = False
        result.errors.extend(errors)
        result.stats = BuildStats()
        result.duration = time.monotonic() - started
        logger.error("Build failed", stage=stage, errors=len(errors))
        return result

    def watch(
        self,
        config: BuildConfig,
        on_result: Callable[[BuildResult], None],
        scope: Optional[ShutdownScope] = None,
        on_settled: Optional[Callable[[SessionSnapshot], None]] = None,
        reload: Optional[Callable[[], BuildConfig]] = None,
    ) -> ShutdownScope:
        """Start the compile, bundle and asset watch loops.

        The loops run independently and each reports its own partial result
        to ``on_result``; there is no ordering between them. When
        ``on_settled`` is given, a :class:`WatchSession` also reports once
        every stage has finished its latest run. Closing the returned scope
        stops all loops.

        Args:
            config: Build configuration used to start the loops
            on_result: Receives every partial stage result
            scope: Shutdown scope to register with, a new one if omitted
            on_settled: Receives the reconciled state of all stages
            reload: Supplies a fresh configuration for every rebuild

        Returns:
            The shutdown scope owning the loops
        """
        scope = scope or ShutdownScope()
        stages = ["compile", "bundle"]
        if config.plugin_type != PluginType.API:
            stages.append("assets")

        report = on_result
        on_start: Optional[Callable[[str], None]] = None
        if on_settled is not None:
            report, on_start = self._session_hooks(stages, on_result, on_settled, scope)

        if config.output.clean:
            self.clean(config)

        logger.info("Starting watch mode", root=str(config.root), stages=stages)
        self.compiler.watch(config, report, scope, on_start=on_start, reload=reload)
        self.bundler_factory(config.bundler).watch(config, report, scope, on_start=on_start, reload=reload)
        if "assets" in stages:
            self.assets.watch(config, report, scope, on_start=on_start, reload=reload)
        return scope

    def watch_sequential(
        self,
        config: BuildConfig,
        on_result: Callable[[BuildResult], None],
        scope: Optional[ShutdownScope] = None,
        reload: Optional[Callable[[], BuildConfig]] = None,
    ) -> FileWatcher:
        """Re-run the whole development build on every change.

        A single loop watches every input of the pipeline and runs
        :meth:`build` from start to end, so stages never overlap.

        Returns:
            The started watcher, registered with ``scope``
        """
        scope = scope or ShutdownScope()
        current = reload or (lambda: config)
        paths = [
            config.src_dir,
            config.root / "package.json",
            config.root / config.typescript.tsconfig,
            *self.assets.source_dirs(config),
        ]
        logger.info("Starting sequential watch mode", root=str(config.root))
        return watch_stage(
            "build",
            paths,
            lambda: self.build(current(), BuildMode.DEVELOPMENT),
            on_result,
            scope,
        )

    @staticmethod
    def _session_hooks(
        stages: List[str],
        on_result: Callable[[BuildResult], None],
        on_settled: Callable[[SessionSnapshot], None],
        scope: ShutdownScope,
    ) -> Tuple[Callable[[BuildResult], None], Callable[[str], None]]:
        session = WatchSession(stages, on_settled)
        scope.register("session", session.close)

        def report(result: BuildResult) -> None:
            on_result(result)
            session.report(result)

        return report, session.mark_running

    def analyze(self, config: BuildConfig) -> BundleReport:
        """Size report of the current build output."""
        return BundleAnalyzer().analyze(config.output_dir)
