"""Bundler backends."""

from __future__ import annotations

from typing import assert_never

from caskit.build.bundlers.base import Bundler, BundleProfile, derive_profiles
from caskit.build.bundlers.esbuild import EsbuildBundler
from caskit.build.bundlers.unsupported import RollupBundler, ViteBundler
from caskit.build.bundlers.webpack import WebpackBundler
from caskit.build.config import BundlerBackend


def create_bundler(backend: BundlerBackend) -> Bundler:
    """Construct the bundler for a backend.

    The branches cover every :class:`BundlerBackend` member; a new member
    fails type checking here until it is handled.
    """
    if backend is BundlerBackend.WEBPACK:
        return WebpackBundler()
    elif backend is BundlerBackend.ROLLUP:
        return RollupBundler()
    elif backend is BundlerBackend.ESBUILD:
        return EsbuildBundler()
    elif backend is BundlerBackend.VITE:
        return ViteBundler()
    else:
        assert_never(backend)


__all__ = [
    "Bundler",
    "BundleProfile",
    "EsbuildBundler",
    "RollupBundler",
    "ViteBundler",
    "WebpackBundler",
    "create_bundler",
    "derive_profiles",
]
