"""Plugin context loading.

Reads ``plugin.json`` and the optional ``cas.config.*`` file of a plugin and
turns them into a :class:`PluginContext` the pipeline components work from.
"""

from __future__ import annotations

import json
import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import yaml

from caskit.build.config import BuildConfig, BuildConfigBuilder, PluginType
from caskit.core.logging_manager import get_logger
from caskit.plugin_system.manifest import MANIFEST_FILENAME, PluginManifest
from caskit.utils.exceptions import ConfigurationError

CONFIG_FILENAMES = ("cas.config.yaml", "cas.config.yml", "cas.config.json")

DEFAULT_PLATFORM_VERSION = "1.0.0"

logger = get_logger(__name__)


@dataclass(frozen=True)
class PluginContext:
    """Everything a command needs to know about one plugin.

    Attributes:
        root: Plugin root directory
        manifest: Parsed plugin manifest
        build_config: Assembled build configuration
        test_settings: ``test`` section of the configuration file
        package_settings: ``package`` section of the configuration file
        platform_version: Platform version compatibility is checked against
        config_path: Configuration file that was read, if any
    """

    root: pathlib.Path
    manifest: PluginManifest
    build_config: BuildConfig
    test_settings: Dict[str, Any] = field(default_factory=dict)
    package_settings: Dict[str, Any] = field(default_factory=dict)
    platform_version: str = DEFAULT_PLATFORM_VERSION
    config_path: Optional[pathlib.Path] = None

    @property
    def manifest_path(self) -> pathlib.Path:
        return self.root / MANIFEST_FILENAME

    @property
    def plugin_type(self) -> PluginType:
        return self.build_config.plugin_type


def detect_plugin_type(root: pathlib.Path) -> PluginType:
    """Guess the plugin type from the source layout.

    A ``src/index.tsx`` or ``src/components`` marks a UI plugin, which is
    full-stack when ``src/server.ts`` or ``src/api`` also exists. A
    ``src/server.ts`` or ``src/routes`` alone marks an API plugin. Anything
    else is a library.
    """
    src = root / "src"
    if (src / "index.tsx").exists() or (src / "components").is_dir():
        if (src / "server.ts").exists() or (src / "api").is_dir():
            return PluginType.FULLSTACK
        return PluginType.UI

    if (src / "server.ts").exists() or (src / "routes").is_dir():
        return PluginType.API

    return PluginType.LIBRARY


def find_config_file(root: pathlib.Path) -> Optional[pathlib.Path]:
    for name in CONFIG_FILENAMES:
        candidate = root / name
        if candidate.is_file():
            return candidate
    return None


def read_config_file(path: pathlib.Path) -> Dict[str, Any]:
    """Read a YAML or JSON configuration file.

    Raises:
        ConfigurationError: If the file cannot be read or is not a mapping
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Configuration file not found: {path}", path=str(path)) from e
    except (json.JSONDecodeError, UnicodeDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to parse configuration file: {e}", path=str(path)) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration file must contain a mapping", path=str(path))
    return data


class ConfigLoader:
    """Loads plugin contexts from disk."""

    def load(
        self,
        root: pathlib.Path,
        config_path: Optional[pathlib.Path] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> PluginContext:
        """Load the manifest and configuration of the plugin at ``root``.

        Args:
            root: Plugin root directory
            config_path: Explicit configuration file, otherwise ``cas.config.*`` is searched
            overrides: Command line build overrides (camelCase or snake_case keys)

        Returns:
            The plugin context

        Raises:
            ConfigurationError: If the manifest or configuration is malformed
        """
        root = pathlib.Path(root).resolve()
        manifest = PluginManifest.load(root / MANIFEST_FILENAME)

        if config_path is not None:
            config_path = pathlib.Path(config_path)
            if not config_path.is_absolute():
                config_path = root / config_path
        else:
            config_path = find_config_file(root)

        file_config: Dict[str, Any] = read_config_file(config_path) if config_path else {}

        type_value = file_config.get("pluginType")
        if type_value is None:
            plugin_type = detect_plugin_type(root)
            logger.debug("Detected plugin type", plugin_type=plugin_type.value, root=str(root))
        else:
            try:
                plugin_type = PluginType(type_value)
            except ValueError as e:
                raise ConfigurationError(
                    f"Unknown plugin type: {type_value}", path="pluginType"
                ) from e

        build_config = (
            BuildConfigBuilder(root, plugin_type)
            .with_file_settings(file_config.get("build"))
            .with_overrides(overrides)
            .with_defines(
                {
                    "CAS_PLUGIN_ID": manifest.id,
                    "CAS_PLUGIN_VERSION": manifest.version,
                }
            )
            .build()
        )

        return PluginContext(
            root=root,
            manifest=manifest,
            build_config=build_config,
            test_settings=dict(file_config.get("test") or {}),
            package_settings=dict(file_config.get("package") or {}),
            platform_version=str(file_config.get("platformVersion", DEFAULT_PLATFORM_VERSION)),
            config_path=config_path,
        )

    def rebuild_config(self, context: PluginContext, overrides: Optional[Mapping[str, Any]] = None) -> BuildConfig:
        """Build a fresh configuration for a watch-triggered rebuild."""
        return self.load(context.root, context.config_path, overrides).build_config
