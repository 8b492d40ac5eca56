"""Backends without a working implementation yet.

They keep the bundler contract by reporting success together with a
``BACKEND_NOT_IMPLEMENTED`` warning, so a build selecting them completes and
the limitation is visible to the caller.
"""

from __future__ import annotations

from typing import Callable, Optional

from caskit.build.bundlers.base import Bundler, BundleProfile, derive_profiles
from caskit.build.config import BuildConfig, BuildMode, BundlerBackend
from caskit.build.result import BuildResult, BuildStats, Diagnostic
from caskit.build.watcher import NullWatchHandle, ShutdownScope, WatchHandle
from caskit.core.logging_manager import get_logger

logger = get_logger(__name__)

STAGE = "bundle"


class DegradedBundler(Bundler):
    """Bundler that produces no output and says so."""

    def limitation(self) -> Diagnostic:
        return Diagnostic(
            code="BACKEND_NOT_IMPLEMENTED",
            message=(
                f"The {self.backend.value} bundler is not fully implemented; no bundles were produced. "
                "Use bundler 'esbuild' or 'webpack'."
            ),
            stage=STAGE,
        )

    def bundle(self, config: BuildConfig, mode: BuildMode = BuildMode.PRODUCTION) -> BuildResult:
        logger.warning("Bundler not fully implemented", backend=self.backend.value)
        entrypoints = [name for profile in derive_profiles(config) for name in profile.entries]
        return BuildResult(
            success=True,
            warnings=[self.limitation()],
            stats=BuildStats(entrypoints=list(dict.fromkeys(entrypoints))),
            stage=STAGE,
        )

    def bundle_profile(self, config: BuildConfig, profile: BundleProfile, mode: BuildMode) -> BuildResult:
        return BuildResult(success=True, warnings=[self.limitation()], stage=STAGE)

    def watch(
        self,
        config: BuildConfig,
        on_result: Callable[[BuildResult], None],
        scope: ShutdownScope,
        on_start: Optional[Callable[[str], None]] = None,
        reload: Optional[Callable[[], BuildConfig]] = None,
    ) -> WatchHandle:
        """Report the degraded result once; there is nothing to watch."""
        if on_start is not None:
            on_start(STAGE)
        on_result(self.bundle(config, BuildMode.DEVELOPMENT))
        handle = NullWatchHandle()
        scope.register_handle(STAGE, handle)
        return handle


class RollupBundler(DegradedBundler):
    backend = BundlerBackend.ROLLUP


class ViteBundler(DegradedBundler):
    backend = BundlerBackend.VITE
