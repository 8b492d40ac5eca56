"""Plugin validation, packaging, signing and testing.

Modules:
    manifest: Plugin manifest model
    validation: Validation result types
    validator: Manifest, structure, dependency and security validation
    package: Archive creation
    signing: Detached signatures for archives
    integrity: Archive checksums
    testing: Test framework backends and the test runner
    tools: High level operations used by the command line
"""

from __future__ import annotations

from caskit.plugin_system.manifest import PluginManifest, PluginPermission

__all__ = ["PluginManifest", "PluginPermission"]
