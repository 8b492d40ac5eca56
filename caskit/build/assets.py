"""Static asset stage.

Copies ``assets/`` into ``<out>/assets`` and the contents of ``public/`` into
the output root. With ``optimization.compression`` on, text assets above a
small threshold also get a gzip sibling.
"""

from __future__ import annotations

import gzip
import pathlib
import shutil
import time
from typing import Callable, List, Optional

from caskit.build.config import BuildConfig, BuildMode
from caskit.build.result import BuildResult, BuildStats
from caskit.build.watcher import FileWatcher, ShutdownScope, watch_stage
from caskit.core.logging_manager import get_logger
from caskit.utils.exceptions import AssetProcessingError

logger = get_logger(__name__)

STAGE = "assets"

COMPRESSIBLE_SUFFIXES = {".css", ".js", ".mjs", ".json", ".svg", ".html", ".txt", ".xml", ".map"}
COMPRESSION_THRESHOLD = 1024


class AssetProcessor:
    """Copies static files into the build output."""

    def source_dirs(self, config: BuildConfig) -> List[pathlib.Path]:
        return [config.root / "assets", config.root / "public"]

    def process(self, config: BuildConfig, mode: BuildMode = BuildMode.PRODUCTION) -> BuildResult:
        """Copy and optionally compress the plugin's static assets.

        Raises:
            AssetProcessingError: If a file cannot be copied or compressed
        """
        started = time.monotonic()
        assets_dir, public_dir = self.source_dirs(config)
        output_dir = config.output_dir
        compress = config.optimization.compression and mode == BuildMode.PRODUCTION

        copied: List[pathlib.Path] = []
        try:
            if assets_dir.is_dir():
                copied += self._copy_tree(assets_dir, output_dir / "assets")
            if public_dir.is_dir():
                copied += self._copy_tree(public_dir, output_dir)
            compressed = [self._compress(path) for path in copied if compress and _should_compress(path)]
        except OSError as e:
            raise AssetProcessingError(f"Failed to process assets: {e}", file=getattr(e, "filename", None)) from e

        if not copied:
            logger.debug("No static assets to process", root=str(config.root))

        logger.info("Processed assets", copied=len(copied), compressed=len(compressed))
        return BuildResult(
            success=True,
            duration=time.monotonic() - started,
            stats=BuildStats(assets=len(copied)),
            stage=STAGE,
        )

    def watch(
        self,
        config: BuildConfig,
        on_result: Callable[[BuildResult], None],
        scope: ShutdownScope,
        on_start: Optional[Callable[[str], None]] = None,
        reload: Optional[Callable[[], BuildConfig]] = None,
    ) -> FileWatcher:
        """Re-copy assets whenever something under ``assets/`` or ``public/`` changes."""
        current = reload or (lambda: config)
        return watch_stage(
            STAGE,
            self.source_dirs(config),
            lambda: self.process(current(), BuildMode.DEVELOPMENT),
            on_result,
            scope,
            on_start=on_start,
        )

    @staticmethod
    def _copy_tree(source: pathlib.Path, destination: pathlib.Path) -> List[pathlib.Path]:
        copied: List[pathlib.Path] = []
        for path in sorted(source.rglob("*")):
            if not path.is_file():
                continue
            target = destination / path.relative_to(source)
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, target)
            copied.append(target)
        return copied

    @staticmethod
    def _compress(path: pathlib.Path) -> pathlib.Path:
        target = path.with_name(path.name + ".gz")
        with open(path, "rb") as source, gzip.open(target, "wb", compresslevel=9) as destination:
            shutil.copyfileobj(source, destination)
        return target


def _should_compress(path: pathlib.Path) -> bool:
    return path.suffix in COMPRESSIBLE_SUFFIXES and path.stat().st_size > COMPRESSION_THRESHOLD
