"""Running external tools: executable lookup and bounded subprocess calls."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

import anyio

logger = logging.getLogger(__name__)

# npm-installed CLIs are shims with one of these suffixes on Windows
_WINDOWS_SUFFIXES = (".cmd", ".exe", ".bat")


def resolve_executable(name: str) -> str | None:
    """Absolute path of *name* on PATH (or as given), or None."""
    if os.sep in name or (os.altsep and os.altsep in name):
        return name if Path(name).is_file() else None
    found = shutil.which(name)
    if found:
        return found
    if sys.platform == "win32":
        for suffix in _WINDOWS_SUFFIXES:
            found = shutil.which(name + suffix)
            if found:
                return found
    return None


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


async def run_command(
    argv: list[str],
    *,
    input: str | None = None,
    cwd: str | Path | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run *argv* to completion and capture its output.

    Raises ``TimeoutError`` when *timeout* elapses (the child is killed)
    and ``OSError`` when the program cannot be started.
    """
    logger.debug("Running %s (cwd=%s, timeout=%s)", argv[0], cwd, timeout)
    with anyio.fail_after(timeout):
        completed = await anyio.run_process(
            argv,
            input=input.encode("utf-8") if input is not None else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=str(cwd) if cwd is not None else None,
            check=False,
        )
    return CommandResult(
        returncode=completed.returncode,
        stdout=completed.stdout.decode("utf-8", errors="replace"),
        stderr=completed.stderr.decode("utf-8", errors="replace"),
    )
