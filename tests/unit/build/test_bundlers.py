"""Unit tests for bundler backends, profile derivation and tool output parsing."""

import json
import pathlib
from unittest.mock import patch

import pytest

from caskit.build.bundlers import (
    EsbuildBundler,
    RollupBundler,
    ViteBundler,
    WebpackBundler,
    create_bundler,
    derive_profiles,
)
from caskit.build.bundlers.base import PEER_EXTERNALS, PLATFORM_EXTERNALS, package_name
from caskit.build.bundlers.esbuild import parse_esbuild_log, stats_from_metafile
from caskit.build.bundlers.webpack import JsRegex, parse_webpack_stats, to_js
from caskit.build.compiler import SourceCompiler, parse_tsc_output
from caskit.build.config import BuildConfigBuilder, BuildMode, BundlerBackend, OutputFormat, PluginType
from caskit.build.process import ToolResult


def _config(root, plugin_type=PluginType.UI, **overrides):
    return (
        BuildConfigBuilder(root, plugin_type)
        .with_overrides(overrides)
        .with_defines({"CAS_PLUGIN_ID": "hello-world"})
        .build()
    )


@pytest.mark.parametrize(
    "backend, expected",
    [
        (BundlerBackend.WEBPACK, WebpackBundler),
        (BundlerBackend.ROLLUP, RollupBundler),
        (BundlerBackend.ESBUILD, EsbuildBundler),
        (BundlerBackend.VITE, ViteBundler),
    ],
)
def test_create_bundler(backend, expected):
    """Test that every backend maps to its bundler."""
    bundler = create_bundler(backend)
    assert isinstance(bundler, expected)
    assert bundler.backend == backend


class TestDeriveProfiles:
    """Tests for derive_profiles."""

    def test_ui(self, tmp_path):
        profiles = derive_profiles(_config(tmp_path, PluginType.UI))

        assert [p.name for p in profiles] == ["main"]
        assert profiles[0].jsx and profiles[0].styles
        assert profiles[0].entries == {"main": tmp_path / "src" / "index.tsx"}

    def test_api(self, tmp_path):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "server.ts").touch()

        profiles = derive_profiles(_config(tmp_path, PluginType.API))

        assert [p.name for p in profiles] == ["server"]
        assert profiles[0].entries == {"server": tmp_path / "src" / "server.ts"}
        assert profiles[0].externals == PLATFORM_EXTERNALS
        assert not profiles[0].jsx

    def test_fullstack(self, tmp_path):
        profiles = derive_profiles(_config(tmp_path, PluginType.FULLSTACK))

        assert [p.name for p in profiles] == ["client", "server"]
        assert profiles[0].jsx
        assert profiles[1].externals == PLATFORM_EXTERNALS

    def test_library(self, tmp_path):
        profiles = derive_profiles(_config(tmp_path, PluginType.LIBRARY))

        assert [(p.name, p.format) for p in profiles] == [("umd", OutputFormat.UMD), ("esm", OutputFormat.ESM)]
        assert profiles[0].out_dir == tmp_path / "dist" / "umd"
        assert profiles[1].preserve_modules
        assert all(p.externals == PEER_EXTERNALS for p in profiles)


def test_package_name():
    """Test that npm package names are extracted from module paths."""
    assert package_name("node_modules/react/index.js") == "react"
    assert package_name("../node_modules/@cas/types/dist/index.js") == "@cas/types"
    assert package_name("src/index.tsx") is None


class TestDegradedBundlers:
    """Tests for backends without an implementation."""

    def test_reports_success_with_warning(self, tmp_path):
        result = RollupBundler().bundle(_config(tmp_path))

        assert result.success
        assert [w.code for w in result.warnings] == ["BACKEND_NOT_IMPLEMENTED"]
        assert "rollup" in result.warnings[0].message
        assert result.stats.entrypoints == ["main"]
        assert result.stats.chunks == 0


class TestEsbuild:
    """Tests for the esbuild backend."""

    def test_production_command(self, tmp_path):
        config = _config(tmp_path)
        profile = derive_profiles(config)[0]

        command = EsbuildBundler().build_command(config, profile, BuildMode.PRODUCTION, tmp_path / "meta.json")

        assert command[:3] == ["npx", "--no-install", "esbuild"]
        assert "--bundle" in command
        assert "--minify" in command
        assert "--sourcemap" in command
        assert "--splitting" in command
        assert "--jsx=automatic" in command
        assert "--format=esm" in command
        assert '--define:process.env.NODE_ENV="production"' in command

    def test_development_command_is_not_minified(self, tmp_path):
        config = _config(tmp_path)
        profile = derive_profiles(config)[0]

        command = EsbuildBundler().build_command(config, profile, BuildMode.DEVELOPMENT, tmp_path / "meta.json")

        assert "--minify" not in command

    def test_umd_becomes_iife_with_global_name(self, tmp_path):
        config = _config(tmp_path, PluginType.LIBRARY)
        umd = derive_profiles(config)[0]

        command = EsbuildBundler().build_command(config, umd, BuildMode.PRODUCTION, tmp_path / "meta.json")

        assert "--format=iife" in command
        assert "--global-name=helloWorld" in command
        assert "--external:react" in command

    def test_failed_run_reports_located_errors(self, tmp_path):
        config = _config(tmp_path)
        output = '✘ [ERROR] Could not resolve "./missing"\n\n    src/index.tsx:1:7:\n'

        with patch("caskit.build.bundlers.esbuild.run_tool") as run_tool:
            run_tool.return_value = ToolResult(command=["npx"], returncode=1, output=output)
            result = EsbuildBundler().bundle(config, BuildMode.PRODUCTION)

        assert not result.success
        assert result.errors[0].code == "ESBUILD_ERROR"
        assert result.errors[0].file == "src/index.tsx"
        assert result.errors[0].line == 1
        assert result.stage == "bundle"

    def test_failed_run_without_messages(self, tmp_path):
        with patch("caskit.build.bundlers.esbuild.run_tool") as run_tool:
            run_tool.return_value = ToolResult(command=["npx"], returncode=2, output="")
            result = EsbuildBundler().bundle(_config(tmp_path))

        assert not result.success
        assert result.errors[0].code == "BUNDLING_FAILED"

    def test_successful_run_reads_metafile(self, tmp_path):
        config = _config(tmp_path)
        metafile_data = {
            "inputs": {"src/index.tsx": {}, "node_modules/react/index.js": {}},
            "outputs": {
                "dist/main.js": {"imports": [{"path": "@cas/types", "external": True}]},
                "dist/main.js.map": {},
                "dist/main.css": {},
            },
        }

        def run(command, cwd):
            metafile = next(arg.split("=", 1)[1] for arg in command if arg.startswith("--metafile="))
            pathlib.Path(metafile).write_text(json.dumps(metafile_data), encoding="utf-8")
            return ToolResult(command=command, returncode=0, output="")

        with patch("caskit.build.bundlers.esbuild.run_tool", side_effect=run):
            result = EsbuildBundler().bundle(config)

        assert result.success
        assert result.stats.chunks == 1
        assert result.stats.modules == 2
        assert result.stats.assets == 1
        assert result.stats.dependencies == ["react", "@cas/types"]
        assert not list((tmp_path / ".caskit").glob("*.meta.json"))


def test_parse_esbuild_log_splits_levels():
    """Test that warnings and errors are separated."""
    output = "▲ [WARNING] Duplicate key\n\n    src/a.ts:2:4:\n✘ [ERROR] Unexpected end of file\n"

    errors, warnings = parse_esbuild_log(output)

    assert [w.message for w in warnings] == ["Duplicate key"]
    assert warnings[0].file == "src/a.ts"
    assert [e.message for e in errors] == ["Unexpected end of file"]
    assert errors[0].file is None


def test_stats_from_metafile_without_outputs(tmp_path):
    profile = derive_profiles(_config(tmp_path))[0]
    stats = stats_from_metafile({}, profile)
    assert stats.chunks == 0
    assert stats.entrypoints == ["main"]


class TestWebpack:
    """Tests for webpack stats parsing and config rendering."""

    def test_parse_errors(self):
        stats = {
            "errors": [{"message": "Module not found: './missing'\nmore", "moduleName": "./src/index.ts", "loc": "3:1"}],
            "warnings": ["asset size limit exceeded"],
            "chunks": [{}, {}],
            "modules": [{"name": "./src/index.ts"}],
        }

        result = parse_webpack_stats(stats)

        assert not result.success
        assert result.errors[0].message == "Module not found: './missing'"
        assert result.errors[0].file == "./src/index.ts"
        assert result.errors[0].line == 3
        assert result.warnings[0].code == "WEBPACK_WARNING"
        assert result.stats.chunks == 0

    def test_parse_multi_compiler_stats(self):
        stats = {
            "children": [
                {
                    "chunks": [{}],
                    "modules": [{"name": "./node_modules/lodash/lodash.js"}],
                    "assets": [{}, {}],
                    "entrypoints": {"client": {}},
                },
                {"chunks": [{}], "modules": [{"name": "./src/server.ts"}], "assets": [{}], "entrypoints": {"server": {}}},
            ]
        }

        result = parse_webpack_stats(stats)

        assert result.success
        assert result.stats.chunks == 2
        assert result.stats.assets == 3
        assert result.stats.entrypoints == ["client", "server"]
        assert result.stats.dependencies == ["lodash"]

    def test_to_js(self):
        rendered = to_js({"test": JsRegex(r"\.tsx?$"), "exclude": ["node_modules"], "cache": False})
        assert r'"test": /\.tsx?$/' in rendered
        assert '"cache": false' in rendered

    def test_render_config_is_commonjs(self, tmp_path):
        config = _config(tmp_path, PluginType.API)
        profile = derive_profiles(config)[0]

        rendered = WebpackBundler().render_config(config, profile, BuildMode.PRODUCTION)

        assert "module.exports = {" in rendered
        assert "require('webpack')" in rendered
        assert '"target": "node"' in rendered


class TestCompiler:
    """Tests for the TypeScript compile stage."""

    def test_parse_tsc_output(self):
        output = (
            "src/index.ts(12,5): error TS2322: Type 'string' is not assignable to type 'number'.\n"
            "  Details follow here.\n"
            "error TS5058: The specified path does not exist: 'tsconfig.json'.\n"
        )

        errors, warnings = parse_tsc_output(output)

        assert [e.code for e in errors] == ["TS2322", "TS5058"]
        assert errors[0].file == "src/index.ts"
        assert errors[0].line == 12
        assert errors[0].message.endswith("Details follow here.")
        assert warnings == []

    def test_missing_tsconfig_skips_type_check(self, tmp_path):
        result = SourceCompiler().compile(_config(tmp_path))

        assert result.success
        assert [w.code for w in result.warnings] == ["TYPECHECK_SKIPPED"]

    def test_declaration_command(self, tmp_path):
        config = _config(tmp_path, PluginType.LIBRARY)
        command = SourceCompiler().build_command(config)

        assert "--emitDeclarationOnly" in command
        assert "--noEmit" not in command

    def test_compile_failure(self, tmp_path):
        (tmp_path / "tsconfig.json").write_text("{}", encoding="utf-8")
        output = "src/index.ts(1,1): error TS1005: ';' expected.\n"

        with patch("caskit.build.compiler.run_tool") as run_tool:
            run_tool.return_value = ToolResult(command=["npx"], returncode=2, output=output)
            result = SourceCompiler().compile(_config(tmp_path))

        assert not result.success
        assert result.errors[0].code == "TS1005"
        assert result.stage == "compile"
