"""webpack backend.

Each derived profile is rendered as a CommonJS configuration module under
``.caskit/`` and run with ``webpack --config``; results come back through
``--json``.
"""

from __future__ import annotations

import json
import pathlib
import time
from typing import Any, Dict, List, Optional

from caskit.build.bundlers.base import Bundler, BundleProfile, module_entries, package_name, work_dir
from caskit.build.config import BuildConfig, BuildMode, BundlerBackend, OutputFormat, TargetEnvironment
from caskit.build.process import npx, run_tool
from caskit.build.result import BuildResult, BuildStats, Diagnostic
from caskit.utils.exceptions import BundlingError

STAGE = "bundle"
CONFIG_FILENAME = "webpack.{profile}.config.cjs"
STATS_FILENAME = "webpack.{profile}.stats.json"


class JsRegex(str):
    """A string rendered as a JavaScript regular expression literal."""


class JsCode(str):
    """A string rendered verbatim as JavaScript code."""


def to_js(value: Any, indent: int = 0) -> str:
    """Render a Python value as a JavaScript expression."""
    pad = "  " * (indent + 1)
    end = "  " * indent
    if isinstance(value, JsRegex):
        return f"/{value}/"
    if isinstance(value, JsCode):
        return str(value)
    if isinstance(value, pathlib.Path):
        return json.dumps(str(value))
    if isinstance(value, dict):
        if not value:
            return "{}"
        items = [f"{pad}{json.dumps(str(key))}: {to_js(item, indent + 1)}" for key, item in value.items()]
        return "{\n" + ",\n".join(items) + f"\n{end}}}"
    if isinstance(value, (list, tuple)):
        if not value:
            return "[]"
        items = [f"{pad}{to_js(item, indent + 1)}" for item in value]
        return "[\n" + ",\n".join(items) + f"\n{end}]"
    return json.dumps(value)


_LIBRARY_TYPES = {
    OutputFormat.ESM: "module",
    OutputFormat.CJS: "commonjs2",
    OutputFormat.UMD: "umd",
    OutputFormat.SYSTEM: "system",
}


class WebpackBundler(Bundler):
    """Bundles with webpack through a generated configuration file."""

    backend = BundlerBackend.WEBPACK

    def compiler_config(self, config: BuildConfig, profile: BundleProfile, mode: BuildMode) -> Dict[str, Any]:
        """webpack configuration object for one profile."""
        production = mode == BuildMode.PRODUCTION
        optimization = config.optimization
        library_type = _LIBRARY_TYPES[profile.format]

        output: Dict[str, Any] = {
            "path": profile.out_dir,
            "filename": "[name].[contenthash:8].js" if production and not profile.preserve_modules else "[name].js",
            "chunkFilename": "[name].[contenthash:8].chunk.js" if production else "[name].chunk.js",
            "publicPath": "auto",
            "library": {"type": library_type},
        }
        if profile.format == OutputFormat.UMD:
            output["library"]["name"] = config.defines.get("CAS_PLUGIN_ID", config.root.name).replace("-", "")
            output["globalObject"] = "this"

        compiler: Dict[str, Any] = {
            "name": profile.name,
            "mode": mode.value,
            "context": config.root,
            "target": "node" if profile.target == TargetEnvironment.NODE else "web",
            "devtool": ("source-map" if production else "eval-source-map") if config.output.sourcemap else False,
            "entry": module_entries(config) if profile.preserve_modules else dict(profile.entries),
            "output": output,
            "resolve": {
                "extensions": [".tsx", ".ts", ".jsx", ".js", ".json"],
                "alias": {"@": config.src_dir},
            },
            "module": {"rules": self._rules(config, profile)},
            "plugins": [JsCode(f"new webpack.DefinePlugin({to_js(self._defines(config, mode), 2)})")],
            "optimization": {
                "minimize": optimization.minify and production,
                "usedExports": optimization.treeshake,
                "splitChunks": self._split_chunks(config) if optimization.code_splitting else False,
            },
        }
        if profile.externals:
            compiler["externals"] = {name: name for name in profile.externals}
        if profile.format == OutputFormat.ESM:
            compiler["experiments"] = {"outputModule": True}
        if profile.preserve_modules:
            compiler["optimization"]["concatenateModules"] = False
            compiler["optimization"]["splitChunks"] = False
        return compiler

    def render_config(self, config: BuildConfig, profile: BundleProfile, mode: BuildMode) -> str:
        return (
            "// Generated by caskit. Do not edit.\n"
            "const webpack = require('webpack');\n\n"
            f"module.exports = {to_js(self.compiler_config(config, profile, mode))};\n"
        )

    def bundle_profile(self, config: BuildConfig, profile: BundleProfile, mode: BuildMode) -> BuildResult:
        """Run webpack for one profile.

        Raises:
            ProcessSpawnError: If webpack cannot be started
            BundlingError: If webpack succeeded but its stats are missing or unreadable
        """
        started = time.monotonic()
        scratch = work_dir(config)
        config_path = scratch / CONFIG_FILENAME.format(profile=profile.name)
        stats_path = scratch / STATS_FILENAME.format(profile=profile.name)
        config_path.write_text(self.render_config(config, profile, mode), encoding="utf-8")
        if stats_path.exists():
            stats_path.unlink()

        command = npx("webpack", "--config", str(config_path), f"--json={stats_path}", "--no-color")
        result = run_tool(command, cwd=config.root)

        try:
            stats_json = self._read_stats(stats_path)
        finally:
            if stats_path.exists():
                stats_path.unlink()

        exit_error = BundlingError(f"webpack exited with code {result.returncode}", returncode=result.returncode)
        if stats_json is None:
            if result.ok:
                raise BundlingError("webpack finished without writing stats", stats=str(stats_path))
            return BuildResult(
                success=False,
                errors=[Diagnostic.from_exception(exit_error)],
                duration=time.monotonic() - started,
            )

        parsed = parse_webpack_stats(stats_json)
        parsed.duration = time.monotonic() - started
        if not result.ok and parsed.success:
            parsed.success = False
            parsed.errors.append(Diagnostic.from_exception(exit_error))
        return parsed

    def _rules(self, config: BuildConfig, profile: BundleProfile) -> List[Dict[str, Any]]:
        rules: List[Dict[str, Any]] = [
            {
                "test": JsRegex(r"\.(ts|tsx|js|jsx)$"),
                "exclude": JsRegex(r"node_modules"),
                "use": {
                    "loader": "ts-loader",
                    "options": {
                        "transpileOnly": True,
                        "configFile": config.root / config.typescript.tsconfig,
                        "compilerOptions": {"jsx": "react-jsx"} if profile.jsx else {},
                    },
                },
            }
        ]
        if profile.styles:
            rules.append({"test": JsRegex(r"\.css$"), "exclude": JsRegex(r"\.module\.css$"), "use": self._css_loaders(config)})
            if config.css.modules:
                rules.append(
                    {
                        "test": JsRegex(r"\.module\.css$"),
                        "use": self._css_loaders(config, modules=True),
                    }
                )
            if "less" in config.css.preprocessors:
                rules.append(
                    {
                        "test": JsRegex(r"\.less$"),
                        "use": self._css_loaders(config)
                        + [{"loader": "less-loader", "options": {"lessOptions": {"javascriptEnabled": True}}}],
                    }
                )
            if "scss" in config.css.preprocessors or "sass" in config.css.preprocessors:
                rules.append({"test": JsRegex(r"\.s[ac]ss$"), "use": self._css_loaders(config) + ["sass-loader"]})
            rules.append(
                {
                    "test": JsRegex(r"\.(png|jpe?g|gif|svg|webp)$"),
                    "type": "asset/resource",
                    "generator": {"filename": "images/[name].[hash:8][ext]"},
                }
            )
            rules.append(
                {
                    "test": JsRegex(r"\.(woff|woff2|eot|ttf|otf)$"),
                    "type": "asset/resource",
                    "generator": {"filename": "fonts/[name].[hash:8][ext]"},
                }
            )
        return rules

    @staticmethod
    def _css_loaders(config: BuildConfig, modules: bool = False) -> List[Any]:
        css_loader: Any = "css-loader"
        if modules:
            css_loader = {
                "loader": "css-loader",
                "options": {"modules": {"localIdentName": "[name]__[local]___[hash:base64:5]"}},
            }
        loaders: List[Any] = ["style-loader", css_loader]
        if config.css.postcss:
            loaders.append("postcss-loader")
        return loaders

    @staticmethod
    def _split_chunks(config: BuildConfig) -> Dict[str, Any]:
        return {
            "chunks": "all",
            "cacheGroups": {
                "vendor": {
                    "test": JsRegex(r"[\\/]node_modules[\\/]"),
                    "name": "vendors",
                    "chunks": "all",
                    "priority": 10,
                },
                "common": {
                    "name": "common",
                    "minChunks": 2,
                    "chunks": "all",
                    "priority": 5,
                    "reuseExistingChunk": True,
                },
            },
        }

    @staticmethod
    def _defines(config: BuildConfig, mode: BuildMode) -> Dict[str, str]:
        defines = {"process.env.NODE_ENV": json.dumps(mode.value)}
        for key, value in sorted(config.defines.items()):
            defines[f"process.env.{key}"] = json.dumps(value)
        return defines

    @staticmethod
    def _read_stats(path: pathlib.Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise BundlingError(f"Failed to read webpack stats: {e}", stats=str(path)) from e


def _stats_message(entry: Any, code: str) -> Diagnostic:
    """Diagnostic from a webpack stats error/warning (string or object)."""
    if isinstance(entry, str):
        return Diagnostic(code=code, message=entry.strip().splitlines()[0] if entry.strip() else entry, stage=STAGE)
    message = str(entry.get("message", "")).strip()
    line: Optional[int] = None
    loc = entry.get("loc")
    if isinstance(loc, str) and loc.split(":")[0].isdigit():
        line = int(loc.split(":")[0])
    return Diagnostic(
        code=code,
        message=message.splitlines()[0] if message else "webpack reported a problem",
        stage=STAGE,
        file=entry.get("moduleName") or None,
        line=line,
    )


def parse_webpack_stats(stats: Dict[str, Any]) -> BuildResult:
    """Turn ``webpack --json`` output into a build result.

    Multi-compiler stats nest one entry per compiler under ``children``.
    """
    compilations: List[Dict[str, Any]] = stats.get("children") or [stats]
    errors: List[Diagnostic] = []
    warnings: List[Diagnostic] = []
    totals = BuildStats()

    for compilation in compilations:
        errors += [_stats_message(e, "WEBPACK_ERROR") for e in compilation.get("errors", [])]
        warnings += [_stats_message(w, "WEBPACK_WARNING") for w in compilation.get("warnings", [])]

        dependencies: List[str] = []
        for module in compilation.get("modules", []):
            name = package_name(str(module.get("name", "")))
            if name and name not in dependencies:
                dependencies.append(name)

        totals = totals.merge(
            BuildStats(
                chunks=len(compilation.get("chunks", [])),
                modules=len(compilation.get("modules", [])),
                assets=len(compilation.get("assets", [])),
                entrypoints=list(compilation.get("entrypoints", {}) or {}),
                dependencies=dependencies,
            )
        )

    success = not errors
    return BuildResult(
        success=success,
        errors=errors,
        warnings=warnings,
        stats=totals if success else BuildStats(),
    )
