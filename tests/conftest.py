"""Pytest configuration and fixtures for caskit tests."""

import json
from pathlib import Path
from typing import Any, Callable, Dict

import pytest

from caskit.build.context import ConfigLoader, PluginContext


@pytest.fixture
def manifest_data() -> Dict[str, Any]:
    """A valid plugin manifest."""
    return {
        "id": "hello-world",
        "name": "Hello World",
        "version": "1.0.0",
        "description": "Says hello from inside the CAS dashboard",
        "author": "CAS Team",
        "entry": "dist/main.js",
        "dependencies": [
            {"name": "@cas/core-api", "version": "^1.0.0", "type": "core"},
            {"name": "lodash", "version": "^4.17.21", "type": "external"},
        ],
        "permissions": ["storage.read", "api.request"],
        "casVersion": ">=1.0.0",
        "compatibility": {"minCasVersion": "1.0.0", "maxCasVersion": "2.0.0"},
    }


@pytest.fixture
def write_manifest(tmp_path: Path) -> Callable[[Dict[str, Any]], Path]:
    """Write a manifest into the temporary directory and return its path."""

    def write(data: Dict[str, Any]) -> Path:
        path = tmp_path / "plugin.json"
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        return path

    return write


@pytest.fixture
def plugin_root(tmp_path: Path, manifest_data: Dict[str, Any], write_manifest) -> Path:
    """Create a small UI plugin on disk."""
    write_manifest(manifest_data)

    src = tmp_path / "src"
    src.mkdir()
    (src / "index.tsx").write_text(
        "export default function Hello() {\n  return <div>Hello</div>;\n}\n", encoding="utf-8"
    )
    (src / "index.test.tsx").write_text("test('renders', () => {});\n", encoding="utf-8")

    package_json = {
        "name": "hello-world",
        "version": "1.0.0",
        "dependencies": {"lodash": "^4.17.21"},
        "devDependencies": {"jest": "^29.0.0"},
        "scripts": {"test": "jest"},
    }
    (tmp_path / "package.json").write_text(json.dumps(package_json), encoding="utf-8")
    (tmp_path / "README.md").write_text("# Hello World\n", encoding="utf-8")
    (tmp_path / "LICENSE").write_text("MIT\n", encoding="utf-8")
    return tmp_path


@pytest.fixture
def plugin_context(plugin_root: Path) -> PluginContext:
    """Loaded context of the ``plugin_root`` plugin."""
    return ConfigLoader().load(plugin_root)
