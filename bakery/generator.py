"""External generator invocation.

The generator is any command that reads a prompt and prints the change
files on stdout. ``{prompt}`` in the command template is replaced by the
prompt as a single argument; without it the prompt is written to stdin.
"""

from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Protocol

from .errors import ConfigurationError, GeneratorFailed, GeneratorUnavailable
from .process import resolve_executable, run_command

logger = logging.getLogger(__name__)

_PROMPT_VAR = "{prompt}"
_PROMPT_PLACEHOLDER = "__PROMPT_PLACEHOLDER__"
_STDERR_TAIL = 2000


class ArtifactGenerator(Protocol):
    async def generate(self, prompt: str, cwd: Path | None = None) -> str:
        """Return the raw generator output for *prompt*."""
        ...


def build_argv(command_template: str, prompt: str) -> tuple[list[str], str | None]:
    """Split *command_template* into argv and decide how the prompt travels.

    Returns ``(argv, stdin_input)``; ``stdin_input`` is None when the prompt
    was substituted as an argument.
    """
    via_stdin = _PROMPT_VAR not in command_template
    # Swap the variable out before lexing so prompt quoting can't break shlex
    template = command_template.replace(_PROMPT_VAR, _PROMPT_PLACEHOLDER)
    try:
        argv = shlex.split(template)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid generator command '{command_template}': {exc}") from exc
    if not argv:
        raise ConfigurationError("Generator command is empty")
    if via_stdin:
        return argv, prompt
    return [prompt if arg == _PROMPT_PLACEHOLDER else arg.replace(_PROMPT_PLACEHOLDER, prompt)
            for arg in argv], None


class CommandGenerator:
    """Runs a configured CLI (``claude -p`` by default) exactly once."""

    def __init__(self, command_template: str = "claude -p", timeout: float = 600.0):
        self.command_template = command_template
        self.timeout = timeout

    def is_available(self) -> bool:
        try:
            argv, _ = build_argv(self.command_template, "")
        except ConfigurationError:
            return False
        return resolve_executable(argv[0]) is not None

    async def generate(self, prompt: str, cwd: Path | None = None) -> str:
        argv, stdin_input = build_argv(self.command_template, prompt)
        executable = resolve_executable(argv[0])
        if executable is None:
            raise GeneratorUnavailable(
                f"Generator command '{argv[0]}' was not found on PATH. "
                "Install it or set generator.command in the config."
            )
        argv[0] = executable

        logger.info("Invoking generator %s (prompt %d chars)", argv[0], len(prompt))
        try:
            result = await run_command(argv, input=stdin_input, cwd=cwd, timeout=self.timeout)
        except TimeoutError as exc:
            raise GeneratorFailed(f"Generator timed out after {self.timeout:g}s") from exc
        except OSError as exc:
            raise GeneratorUnavailable(f"Could not start generator '{argv[0]}': {exc}") from exc

        if result.returncode != 0:
            stderr = result.stderr.strip()[-_STDERR_TAIL:]
            raise GeneratorFailed(
                f"Generator exited with code {result.returncode}"
                + (f": {stderr}" if stderr else ""),
                exit_code=result.returncode,
                stderr=stderr,
            )
        logger.debug("Generator produced %d chars", len(result.stdout))
        return result.stdout
