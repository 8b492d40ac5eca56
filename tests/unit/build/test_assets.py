"""Unit tests for the asset stage and bundle analysis."""

import gzip

from caskit.build.analyzer import BundleAnalyzer, format_size
from caskit.build.assets import AssetProcessor
from caskit.build.config import BuildConfigBuilder, BuildMode, PluginType


def _config(root, **overrides):
    return BuildConfigBuilder(root, PluginType.UI).with_overrides(overrides).build()


class TestAssetProcessor:
    """Tests for AssetProcessor.process."""

    def test_copies_assets_and_public(self, tmp_path):
        (tmp_path / "assets" / "icons").mkdir(parents=True)
        (tmp_path / "assets" / "icons" / "logo.svg").write_text("<svg/>", encoding="utf-8")
        (tmp_path / "public").mkdir()
        (tmp_path / "public" / "robots.txt").write_text("User-agent: *", encoding="utf-8")

        result = AssetProcessor().process(_config(tmp_path))

        assert result.success
        assert result.stage == "assets"
        assert result.stats.assets == 2
        assert (tmp_path / "dist" / "assets" / "icons" / "logo.svg").is_file()
        assert (tmp_path / "dist" / "robots.txt").is_file()

    def test_large_text_assets_are_compressed(self, tmp_path):
        (tmp_path / "assets").mkdir()
        content = "body { color: red; }\n" * 200
        (tmp_path / "assets" / "theme.css").write_text(content, encoding="utf-8")
        (tmp_path / "assets" / "small.css").write_text("a{}", encoding="utf-8")

        AssetProcessor().process(_config(tmp_path), BuildMode.PRODUCTION)

        compressed = tmp_path / "dist" / "assets" / "theme.css.gz"
        assert gzip.decompress(compressed.read_bytes()).decode("utf-8") == content
        assert not (tmp_path / "dist" / "assets" / "small.css.gz").exists()

    def test_development_mode_skips_compression(self, tmp_path):
        (tmp_path / "assets").mkdir()
        (tmp_path / "assets" / "theme.css").write_text("a{}\n" * 1000, encoding="utf-8")

        AssetProcessor().process(_config(tmp_path), BuildMode.DEVELOPMENT)

        assert not (tmp_path / "dist" / "assets" / "theme.css.gz").exists()

    def test_no_assets(self, tmp_path):
        result = AssetProcessor().process(_config(tmp_path))

        assert result.success
        assert result.stats.assets == 0


class TestBundleAnalyzer:
    """Tests for BundleAnalyzer."""

    def test_report(self, tmp_path):
        (tmp_path / "main.js").write_bytes(b"x" * 300 * 1024)
        (tmp_path / "main.js.map").write_bytes(b"m" * 10)
        (tmp_path / "main.css").write_bytes(b"c" * 20)

        report = BundleAnalyzer().analyze(tmp_path)

        assert report.total_size == 300 * 1024 + 30
        assert report.size_by_kind() == {"script": 300 * 1024, "sourcemap": 10, "style": 20}
        assert report.largest(1)[0].path == "main.js"
        assert any("code splitting" in s for s in report.suggestions)
        assert any("Source maps" in s for s in report.suggestions)

    def test_missing_output(self, tmp_path):
        report = BundleAnalyzer().analyze(tmp_path / "dist")

        assert report.total_size == 0
        assert report.files == []


def test_format_size():
    assert format_size(512) == "512 B"
    assert format_size(2048) == "2.0 KB"
    assert format_size(5 * 1024 * 1024) == "5.0 MB"
