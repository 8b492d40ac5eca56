"""Unit tests for build configuration and plugin context loading."""

import json

import pytest
import yaml

from caskit.build.config import (
    BuildConfigBuilder,
    BundlerBackend,
    OutputFormat,
    PluginType,
    TargetEnvironment,
    deep_merge,
    normalize_keys,
    production_profile,
)
from caskit.build.context import ConfigLoader, detect_plugin_type
from caskit.utils.exceptions import ConfigurationError


def test_defaults_follow_plugin_type(tmp_path):
    """Test the inferred defaults of each plugin type."""
    ui = BuildConfigBuilder(tmp_path, PluginType.UI).build()
    assert ui.bundler == BundlerBackend.ESBUILD
    assert ui.css.modules is True
    assert ui.targets[0].environment == TargetEnvironment.BROWSER

    api = BuildConfigBuilder(tmp_path, PluginType.API).build()
    assert api.bundler == BundlerBackend.WEBPACK
    assert api.targets[0].environment == TargetEnvironment.NODE
    assert api.css.preprocessors == []

    library = BuildConfigBuilder(tmp_path, PluginType.LIBRARY).build()
    assert library.output.preserve_modules is True
    assert library.optimization.code_splitting is False
    assert library.typescript.declaration is True


def test_layers_apply_in_fixed_order(tmp_path):
    """Test that overrides beat the file, which beats the defaults, whatever the call order."""
    config = (
        BuildConfigBuilder(tmp_path, PluginType.UI)
        .with_overrides({"output": {"format": "cjs"}})
        .with_file_settings({"output": {"format": "umd", "sourcemap": False}, "bundler": "webpack"})
        .build()
    )

    assert config.output.format == OutputFormat.CJS
    assert config.output.sourcemap is False
    assert config.bundler == BundlerBackend.WEBPACK


def test_none_overrides_are_ignored(tmp_path):
    """Test that flags that were not given do not clobber the file layer."""
    config = (
        BuildConfigBuilder(tmp_path, PluginType.UI)
        .with_file_settings({"optimization": {"minify": False}})
        .with_overrides({"optimization": {"minify": None}, "output": {"sourcemap": None}})
        .build()
    )

    assert config.optimization.minify is False
    assert config.output.sourcemap is True


def test_camel_case_file_settings(tmp_path):
    """Test that camelCase keys from the configuration file are accepted."""
    config = (
        BuildConfigBuilder(tmp_path, PluginType.UI)
        .with_file_settings({"optimization": {"codeSplitting": False, "bundleAnalysis": True}})
        .build()
    )

    assert config.optimization.code_splitting is False
    assert config.optimization.bundle_analysis is True


def test_invalid_setting_raises_configuration_error(tmp_path):
    """Test that an unknown bundler is rejected."""
    builder = BuildConfigBuilder(tmp_path, PluginType.UI).with_file_settings({"bundler": "parcel"})

    with pytest.raises(ConfigurationError) as exc_info:
        builder.build()
    assert exc_info.value.path == "bundler"


def test_config_is_immutable(tmp_path):
    """Test that a built configuration cannot be changed in place."""
    config = BuildConfigBuilder(tmp_path, PluginType.UI).build()

    with pytest.raises(Exception):
        config.bundler = BundlerBackend.WEBPACK


def test_production_profile(tmp_path):
    """Test that the packaging profile overrides the caller's settings."""
    config = (
        BuildConfigBuilder(tmp_path, PluginType.UI)
        .with_overrides({"optimization": {"minify": False, "codeSplitting": True}, "output": {"sourcemap": True}})
        .build()
    )

    profile = production_profile(config)

    assert profile.optimization.minify is True
    assert profile.optimization.code_splitting is False
    assert profile.output.sourcemap is False
    assert profile.output.clean is True
    assert config.optimization.minify is False


def test_normalize_keys_keeps_defines():
    """Test that user defines keep their original names."""
    data = normalize_keys({"outDir": "build", "defines": {"API_URL": "x"}})
    assert data == {"out_dir": "build", "defines": {"API_URL": "x"}}


def test_deep_merge():
    """Test that nested mappings merge and other values replace."""
    merged = deep_merge({"a": {"b": 1, "c": 2}, "d": [1]}, {"a": {"c": 3}, "d": [2]})
    assert merged == {"a": {"b": 1, "c": 3}, "d": [2]}


class TestPluginTypeDetection:
    """Tests for detect_plugin_type."""

    def test_ui(self, tmp_path):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "index.tsx").touch()
        assert detect_plugin_type(tmp_path) == PluginType.UI

    def test_fullstack(self, tmp_path):
        (tmp_path / "src" / "components").mkdir(parents=True)
        (tmp_path / "src" / "server.ts").touch()
        assert detect_plugin_type(tmp_path) == PluginType.FULLSTACK

    def test_api(self, tmp_path):
        (tmp_path / "src" / "routes").mkdir(parents=True)
        assert detect_plugin_type(tmp_path) == PluginType.API

    def test_library(self, tmp_path):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "index.ts").touch()
        assert detect_plugin_type(tmp_path) == PluginType.LIBRARY


class TestConfigLoader:
    """Tests for ConfigLoader."""

    def test_load_without_config_file(self, plugin_root):
        """Test loading a plugin that only has a manifest."""
        context = ConfigLoader().load(plugin_root)

        assert context.manifest.id == "hello-world"
        assert context.plugin_type == PluginType.UI
        assert context.config_path is None
        assert context.build_config.defines["CAS_PLUGIN_ID"] == "hello-world"
        assert context.build_config.defines["CAS_PLUGIN_VERSION"] == "1.0.0"

    def test_load_yaml_config(self, plugin_root):
        """Test that the YAML configuration file is read."""
        settings = {
            "pluginType": "library",
            "platformVersion": "1.5.0",
            "build": {"output": {"outDir": "build"}},
            "test": {"framework": "vitest"},
        }
        (plugin_root / "cas.config.yaml").write_text(yaml.safe_dump(settings), encoding="utf-8")

        context = ConfigLoader().load(plugin_root)

        assert context.plugin_type == PluginType.LIBRARY
        assert context.platform_version == "1.5.0"
        assert context.build_config.output_dir == context.root / "build"
        assert context.test_settings == {"framework": "vitest"}

    def test_explicit_json_config(self, plugin_root):
        """Test that --config paths are resolved against the plugin root."""
        (plugin_root / "custom.json").write_text(json.dumps({"build": {"bundler": "webpack"}}), encoding="utf-8")

        context = ConfigLoader().load(plugin_root, config_path="custom.json")

        assert context.build_config.bundler == BundlerBackend.WEBPACK
        assert context.config_path == context.root / "custom.json"

    def test_unknown_plugin_type(self, plugin_root):
        (plugin_root / "cas.config.json").write_text(json.dumps({"pluginType": "widget"}), encoding="utf-8")

        with pytest.raises(ConfigurationError):
            ConfigLoader().load(plugin_root)

    def test_config_must_be_mapping(self, plugin_root):
        (plugin_root / "cas.config.yaml").write_text("- one\n- two\n", encoding="utf-8")

        with pytest.raises(ConfigurationError):
            ConfigLoader().load(plugin_root)

    def test_undecodable_config_file(self, plugin_root):
        (plugin_root / "cas.config.yaml").write_bytes(b"pluginType: \xff\xfe\n")

        with pytest.raises(ConfigurationError):
            ConfigLoader().load(plugin_root)

    def test_undecodable_manifest(self, plugin_root):
        (plugin_root / "plugin.json").write_bytes(b'{"id": "\xff"}')

        with pytest.raises(ConfigurationError) as exc_info:
            ConfigLoader().load(plugin_root)
        assert exc_info.value.code == "INVALID_JSON"

    def test_missing_manifest(self, tmp_path):
        with pytest.raises(ConfigurationError) as exc_info:
            ConfigLoader().load(tmp_path)
        assert exc_info.value.code == "MANIFEST_NOT_FOUND"

    def test_rebuild_config_applies_overrides(self, plugin_root):
        """Test that watch rebuilds see the same overrides."""
        loader = ConfigLoader()
        context = loader.load(plugin_root)

        config = loader.rebuild_config(context, {"output": {"format": "cjs"}})

        assert config.output.format == OutputFormat.CJS
