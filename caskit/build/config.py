"""Build configuration for CAS plugins.

This module contains the configuration models that describe how a plugin is
compiled and bundled, and the builder that assembles one immutable
:class:`BuildConfig` from plugin-type defaults, the configuration file and
command line overrides.
"""

from __future__ import annotations

import copy
import enum
import pathlib
from typing import Any, Dict, List, Mapping, Optional

import pydantic
from pydantic.alias_generators import to_camel, to_snake

from caskit.utils.exceptions import ConfigurationError


class PluginType(str, enum.Enum):
    """Kinds of plugin, each with its own build defaults."""

    UI = "ui"
    API = "api"  # Backend service, no static assets
    FULLSTACK = "fullstack"
    LIBRARY = "library"


class BundlerBackend(str, enum.Enum):
    """Bundler backends a build can be delegated to."""

    WEBPACK = "webpack"
    ROLLUP = "rollup"
    ESBUILD = "esbuild"
    VITE = "vite"


class OutputFormat(str, enum.Enum):
    """Module formats of the emitted bundles."""

    ESM = "esm"
    CJS = "cjs"
    UMD = "umd"
    SYSTEM = "system"


class TargetEnvironment(str, enum.Enum):
    """Runtime environments a bundle is built for."""

    BROWSER = "browser"
    NODE = "node"


class BuildMode(str, enum.Enum):
    """Build modes."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


class _ConfigModel(pydantic.BaseModel):
    """Frozen model that reads camelCase keys and accepts snake_case names."""

    model_config = pydantic.ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )


class BuildTarget(_ConfigModel):
    environment: TargetEnvironment = TargetEnvironment.BROWSER
    version: Optional[str] = None


class OptimizationConfig(_ConfigModel):
    minify: bool = True
    treeshake: bool = True
    code_splitting: bool = True
    bundle_analysis: bool = False
    compression: bool = True


class OutputConfig(_ConfigModel):
    format: OutputFormat = OutputFormat.ESM
    preserve_modules: bool = False
    sourcemap: bool = True
    clean: bool = True
    out_dir: str = "dist"


class TypeScriptConfig(_ConfigModel):
    strict: bool = True
    declaration: bool = False
    target: str = "ES2020"
    module: str = "ESNext"
    lib: List[str] = pydantic.Field(default_factory=lambda: ["ES2020", "DOM", "DOM.Iterable"])
    tsconfig: str = "tsconfig.json"


class CssConfig(_ConfigModel):
    preprocessors: List[str] = pydantic.Field(default_factory=list)
    modules: bool = False
    postcss: bool = False
    autoprefixer: bool = False


class BuildConfig(_ConfigModel):
    """Configuration for building one CAS plugin.

    One value is assembled per invocation (and per watch-triggered rebuild)
    by :class:`BuildConfigBuilder`; it is never mutated afterwards.

    Attributes:
        root: Plugin root directory
        plugin_type: Kind of plugin being built
        targets: Runtime environments to build for
        bundler: Bundler backend that produces the bundles
        optimization: Minification, tree shaking, splitting and compression flags
        output: Output format and output directory settings
        typescript: Source compiler options
        css: Style processing options
        defines: Compile-time constants injected into the bundles
    """

    root: pathlib.Path = pathlib.Path(".")
    plugin_type: PluginType = PluginType.LIBRARY
    targets: List[BuildTarget] = pydantic.Field(default_factory=lambda: [BuildTarget()])
    bundler: BundlerBackend = BundlerBackend.WEBPACK
    optimization: OptimizationConfig = pydantic.Field(default_factory=OptimizationConfig)
    output: OutputConfig = pydantic.Field(default_factory=OutputConfig)
    typescript: TypeScriptConfig = pydantic.Field(default_factory=TypeScriptConfig)
    css: CssConfig = pydantic.Field(default_factory=CssConfig)
    defines: Dict[str, str] = pydantic.Field(default_factory=dict)

    @property
    def output_dir(self) -> pathlib.Path:
        """Absolute directory the build writes into."""
        return self.root / self.output.out_dir

    @property
    def src_dir(self) -> pathlib.Path:
        return self.root / "src"

    def replace(self, **changes: Any) -> BuildConfig:
        """Return a copy with the given top-level fields replaced."""
        return self.model_copy(update=changes)


def default_settings(plugin_type: PluginType) -> Dict[str, Any]:
    """Inferred build settings for a plugin type.

    Args:
        plugin_type: Kind of plugin

    Returns:
        Nested settings dictionary with snake_case keys
    """
    is_api = plugin_type == PluginType.API
    is_library = plugin_type == PluginType.LIBRARY
    has_styles = plugin_type in (PluginType.UI, PluginType.FULLSTACK)

    return {
        "plugin_type": plugin_type.value,
        "targets": [{"environment": "node" if is_api else "browser"}],
        # vite support is not complete, so UI plugins default to esbuild
        "bundler": BundlerBackend.ESBUILD.value if plugin_type == PluginType.UI else BundlerBackend.WEBPACK.value,
        "optimization": {
            "minify": True,
            "treeshake": True,
            "code_splitting": not is_library,
            "bundle_analysis": False,
            "compression": True,
        },
        "output": {
            "format": OutputFormat.ESM.value,
            "preserve_modules": is_library,
            "sourcemap": True,
            "clean": True,
            "out_dir": "dist",
        },
        "typescript": {
            "strict": True,
            "declaration": is_library,
            "target": "ES2020",
            "module": "ESNext",
            "lib": ["ES2020"] if is_api else ["ES2020", "DOM", "DOM.Iterable"],
        },
        "css": {
            "preprocessors": ["less"] if has_styles else [],
            "modules": has_styles,
            "postcss": has_styles,
            "autoprefixer": has_styles,
        },
    }


# Keys whose children are user data rather than settings
_OPAQUE_KEYS = {"defines"}


def normalize_keys(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Convert camelCase setting keys to snake_case, recursively."""
    normalized: Dict[str, Any] = {}
    for key, value in data.items():
        name = to_snake(key)
        if isinstance(value, Mapping) and name not in _OPAQUE_KEYS:
            value = normalize_keys(value)
        elif isinstance(value, list):
            value = [normalize_keys(item) if isinstance(item, Mapping) else item for item in value]
        normalized[name] = value
    return normalized


def deep_merge(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge ``overlay`` over ``base``; nested mappings merge, everything else replaces."""
    merged = copy.deepcopy(dict(base))
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class BuildConfigBuilder:
    """Assembles a :class:`BuildConfig` from three layers.

    The layers always apply in the same order, whatever order they were
    supplied in: plugin-type defaults, then the configuration file, then
    command line overrides. ``None`` override values mean "not given" and
    are dropped.
    """

    def __init__(self, root: pathlib.Path, plugin_type: PluginType) -> None:
        self._root = pathlib.Path(root)
        self._plugin_type = plugin_type
        self._file_settings: Dict[str, Any] = {}
        self._overrides: Dict[str, Any] = {}
        self._defines: Dict[str, str] = {}

    def with_file_settings(self, settings: Optional[Mapping[str, Any]]) -> BuildConfigBuilder:
        """Set the configuration-file layer (the file's ``build`` section)."""
        self._file_settings = normalize_keys(settings or {})
        return self

    def with_overrides(self, overrides: Optional[Mapping[str, Any]]) -> BuildConfigBuilder:
        """Set the command line layer."""
        self._overrides = _drop_none(normalize_keys(overrides or {}))
        return self

    def with_defines(self, defines: Mapping[str, str]) -> BuildConfigBuilder:
        self._defines = dict(defines)
        return self

    def build(self) -> BuildConfig:
        """Merge the layers and validate the result.

        Returns:
            A frozen build configuration

        Raises:
            ConfigurationError: If the merged settings are invalid
        """
        merged = default_settings(self._plugin_type)
        merged = deep_merge(merged, self._file_settings)
        merged = deep_merge(merged, self._overrides)
        merged["root"] = self._root
        merged["defines"] = {**merged.get("defines", {}), **self._defines}

        try:
            return BuildConfig.model_validate(merged)
        except pydantic.ValidationError as e:
            raise ConfigurationError(
                f"Invalid build configuration: {e.errors()[0]['msg']}",
                path=".".join(str(part) for part in e.errors()[0]["loc"]),
            ) from e


def _drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            value = _drop_none(value)
            if not value:
                continue
        elif value is None:
            continue
        cleaned[key] = value
    return cleaned


def production_profile(config: BuildConfig) -> BuildConfig:
    """Canonical profile used for packaging.

    Overrides whatever the caller configured: minified, tree shaken, a single
    bundle without code splitting, no source maps, clean output.
    """
    return config.replace(
        optimization=config.optimization.model_copy(
            update={
                "minify": True,
                "treeshake": True,
                "code_splitting": False,
                "bundle_analysis": False,
                "compression": True,
            }
        ),
        output=config.output.model_copy(update={"sourcemap": False, "clean": True}),
    )
