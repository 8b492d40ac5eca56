"""External tool invocation.

Every JavaScript tool the pipeline drives (tsc, bundlers, test frameworks)
is started through :func:`run_tool`, which streams its output into the log
and blocks until the tool exits.
"""

from __future__ import annotations

import os
import pathlib
import shlex
import subprocess
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from caskit.core.logging_manager import get_logger
from caskit.utils.exceptions import ProcessSpawnError

logger = get_logger(__name__)


@dataclass(frozen=True)
class ToolResult:
    """Exit status and combined output of one tool run."""

    command: List[str]
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def command_line(self) -> str:
        return shlex.join(self.command)


def _tool_name(command: List[str]) -> str:
    if command[0] == "npx" and len(command) > 2:
        return command[2]
    return command[0]


def npx(tool: str, *args: str) -> List[str]:
    """Command line that runs a locally installed npm binary."""
    return ["npx", "--no-install", tool, *args]


def run_tool(
    command: Sequence[str],
    cwd: pathlib.Path,
    env: Optional[Dict[str, str]] = None,
    on_line: Optional[Callable[[str], None]] = None,
) -> ToolResult:
    """Run an external tool to completion.

    stderr is merged into stdout so diagnostics keep their order. There is
    no timeout: a hanging tool blocks the caller.

    Args:
        command: Executable and arguments
        cwd: Working directory
        env: Extra environment variables, layered over ``os.environ``
        on_line: Receives each output line as it arrives

    Returns:
        The tool's exit status and output

    Raises:
        ProcessSpawnError: If the executable cannot be started
    """
    command = list(command)
    process_env = {**os.environ, **(env or {})}
    logger.debug("Running tool", command=shlex.join(command), cwd=str(cwd))

    try:
        process = subprocess.Popen(
            command,
            cwd=str(cwd),
            env=process_env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
    except OSError as e:
        raise ProcessSpawnError(
            f"Failed to start {command[0]}: {e}", command=shlex.join(command)
        ) from e

    lines: List[str] = []
    with process:
        assert process.stdout is not None
        for line in process.stdout:
            lines.append(line)
            logger.debug(line.rstrip(), tool=_tool_name(command))
            if on_line is not None:
                on_line(line)
        returncode = process.wait()

    logger.debug("Tool finished", command=shlex.join(command), returncode=returncode)
    return ToolResult(command=command, returncode=returncode, output="".join(lines))
