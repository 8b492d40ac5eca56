"""Build pipeline for CAS plugins.

Modules:
    config: Build configuration and its layered builder
    context: Plugin context loading (manifest and configuration file)
    builder: Build orchestrator running compile, bundle and asset stages
    bundlers: Bundler backends
    compiler: Source compile stage
    assets: Static asset stage
    watcher: Polling file watcher and shutdown scope for watch mode
    session: Reconciliation of watch-mode stage results
    analyzer: Bundle size analysis
"""

from __future__ import annotations

from caskit.build.builder import BuildOrchestrator
from caskit.build.config import BuildConfig, BuildConfigBuilder, BuildMode, BundlerBackend, PluginType
from caskit.build.result import BuildResult, BuildStats, Diagnostic

__all__ = [
    "BuildConfig",
    "BuildConfigBuilder",
    "BuildMode",
    "BuildOrchestrator",
    "BuildResult",
    "BuildStats",
    "BundlerBackend",
    "Diagnostic",
    "PluginType",
]
