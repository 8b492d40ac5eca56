"""Source compile stage.

Type-checks the plugin with the TypeScript compiler. Transpilation itself is
left to the bundler; ``tsc`` only emits declaration files when
``typescript.declaration`` is set.
"""

from __future__ import annotations

import re
import time
from typing import Callable, List, Optional, Tuple

from caskit.build.config import BuildConfig, BuildMode
from caskit.build.process import npx, run_tool
from caskit.build.result import BuildResult, Diagnostic
from caskit.build.watcher import FileWatcher, ShutdownScope, watch_stage
from caskit.core.logging_manager import get_logger
from caskit.utils.exceptions import CompilationError

logger = get_logger(__name__)

STAGE = "compile"

# src/index.ts(12,5): error TS2322: Type 'string' is not assignable to type 'number'.
_DIAGNOSTIC_PATTERN = re.compile(
    r"^(?P<file>[^\s(][^(]*)\((?P<line>\d+),(?P<column>\d+)\):\s+"
    r"(?P<category>error|warning)\s+(?P<code>TS\d+):\s+(?P<message>.*)$"
)
# error TS5058: The specified path does not exist: 'tsconfig.json'.
_GLOBAL_PATTERN = re.compile(r"^(?P<category>error|warning)\s+(?P<code>TS\d+):\s+(?P<message>.*)$")


def parse_tsc_output(output: str) -> Tuple[List[Diagnostic], List[Diagnostic]]:
    """Parse ``tsc --pretty false`` output.

    Continuation lines of multi-line messages are appended to the message of
    the diagnostic they follow.

    Returns:
        Errors and warnings, each in output order
    """
    diagnostics: List[Tuple[str, Diagnostic]] = []
    for raw_line in output.splitlines():
        line = raw_line.rstrip()
        if not line:
            continue
        match = _DIAGNOSTIC_PATTERN.match(line)
        if match:
            diagnostics.append(
                (
                    match.group("category"),
                    Diagnostic(
                        code=match.group("code"),
                        message=match.group("message"),
                        stage=STAGE,
                        file=match.group("file").strip(),
                        line=int(match.group("line")),
                    ),
                )
            )
            continue
        match = _GLOBAL_PATTERN.match(line)
        if match:
            diagnostics.append(
                (match.group("category"), Diagnostic(code=match.group("code"), message=match.group("message"), stage=STAGE))
            )
            continue
        if diagnostics and raw_line.startswith(" "):
            category, last = diagnostics[-1]
            diagnostics[-1] = (
                category,
                Diagnostic(
                    code=last.code,
                    message=f"{last.message} {line.strip()}",
                    stage=last.stage,
                    file=last.file,
                    line=last.line,
                ),
            )

    errors = [d for category, d in diagnostics if category == "error"]
    warnings = [d for category, d in diagnostics if category == "warning"]
    return errors, warnings


class SourceCompiler:
    """Runs the TypeScript compiler over a plugin."""

    def build_command(self, config: BuildConfig) -> List[str]:
        ts = config.typescript
        args = ["-p", ts.tsconfig, "--pretty", "false"]
        if ts.strict:
            args.append("--strict")
        if ts.declaration:
            args += [
                "--declaration",
                "--emitDeclarationOnly",
                "--outDir",
                str(config.output_dir / "types"),
            ]
        else:
            args.append("--noEmit")
        return npx("tsc", *args)

    def compile(self, config: BuildConfig, mode: BuildMode = BuildMode.PRODUCTION) -> BuildResult:
        """Type-check the plugin sources.

        A plugin without a tsconfig is not type-checked; the result is a
        success carrying a warning.

        Raises:
            ProcessSpawnError: If ``npx`` cannot be started
        """
        started = time.monotonic()
        tsconfig = config.root / config.typescript.tsconfig
        if not tsconfig.exists():
            return BuildResult(
                success=True,
                warnings=[
                    Diagnostic(
                        code="TYPECHECK_SKIPPED",
                        message=f"No {config.typescript.tsconfig} found, skipping type check",
                        stage=STAGE,
                    )
                ],
                duration=time.monotonic() - started,
                stage=STAGE,
            )

        logger.info("Compiling sources", root=str(config.root), mode=mode.value)
        result = run_tool(self.build_command(config), cwd=config.root)
        errors, warnings = parse_tsc_output(result.output)

        if not result.ok and not errors:
            error = CompilationError(
                f"tsc exited with code {result.returncode}: {_tail(result.output)}",
                returncode=result.returncode,
            )
            errors = [Diagnostic.from_exception(error)]

        return BuildResult(
            success=result.ok and not errors,
            errors=errors,
            warnings=warnings,
            duration=time.monotonic() - started,
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
        """Re-run the type check whenever a source file or the tsconfig changes."""
        current = reload or (lambda: config)
        paths = [config.src_dir, config.root / config.typescript.tsconfig]
        return watch_stage(
            STAGE,
            paths,
            lambda: self.compile(current(), BuildMode.DEVELOPMENT),
            on_result,
            scope,
            on_start=on_start,
        )


def _tail(output: str, lines: int = 5) -> str:
    tail = [line for line in output.strip().splitlines() if line.strip()][-lines:]
    return " | ".join(tail) or "no output"
