"""External validation of a written change directory (``openspec validate``)."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Protocol

from .errors import ValidatorUnavailable
from .models import ValidationOutcome, ValidationResult
from .process import resolve_executable, run_command

logger = logging.getLogger(__name__)

# issue markers openspec prints at the start of a line
_ISSUE_RE = re.compile(r"^(?:✗|\[(?:ERROR|WARNING|error|warning)\]|ERROR\b|WARNING\b)")
_COUNT_BEFORE_RE = re.compile(
    r"(\d+)\s+requirements?\s+(added|modified|removed|renamed)", re.IGNORECASE)
_COUNT_AFTER_RE = re.compile(r"\b(added|modified|removed|renamed)\s*:\s*(\d+)", re.IGNORECASE)
_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")


class ArtifactValidator(Protocol):
    async def prepare(self) -> None:
        """Make sure the project can hold a change before one is written."""
        ...

    async def validate(self, change_path: Path) -> ValidationResult:
        """Validate the change directory at *change_path*."""
        ...


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------

def parse_issues(output: str) -> list[str]:
    return [
        line.strip()
        for line in _ANSI_RE.sub("", output).splitlines()
        if _ISSUE_RE.match(line.strip())
    ]


def parse_counts(output: str) -> dict[str, int]:
    counts: dict[str, int] = {}
    text = _ANSI_RE.sub("", output)
    for number, kind in _COUNT_BEFORE_RE.findall(text):
        counts[kind.lower()] = int(number)
    for kind, number in _COUNT_AFTER_RE.findall(text):
        counts.setdefault(kind.lower(), int(number))
    return counts


def parse_validation_output(returncode: int, output: str) -> ValidationResult:
    issues = parse_issues(output)
    if returncode != 0 and not issues:
        tail = [line.strip() for line in output.strip().splitlines()[-3:] if line.strip()]
        issues = tail or [f"Validator exited with code {returncode}"]
    outcome = ValidationOutcome.PASSED if returncode == 0 and not issues else ValidationOutcome.ISSUES
    return ValidationResult(outcome=outcome, issues=issues, counts=parse_counts(output), output=output)


# ---------------------------------------------------------------------------
# openspec
# ---------------------------------------------------------------------------

class OpenSpecValidator:
    """Runs ``<tool> validate <change-id> [--strict]`` from the project root.

    *project_root* is the directory holding ``openspec/``. When it is not
    given it is derived from the change path
    (``{root}/openspec/changes/{slug}``).
    """

    def __init__(
        self,
        command: str = "openspec",
        strict: bool = True,
        timeout: float = 120.0,
        project_root: Path | None = None,
    ):
        self.command = command
        self.strict = strict
        self.timeout = timeout
        self.project_root = Path(project_root) if project_root is not None else None

    def _resolve(self) -> str:
        executable = resolve_executable(self.command)
        if executable is None:
            raise ValidatorUnavailable(
                f"Validator '{self.command}' not found on PATH; skipping validation. "
                "Install it with: npm install -g @fission-ai/openspec"
            )
        return executable

    async def prepare(self) -> None:
        """Run ``<tool> init`` when the project has no ``openspec/`` yet.

        Never raises: without the tool the caller creates the directory
        skeleton itself.
        """
        if self.project_root is None or (self.project_root / "openspec").exists():
            return
        executable = resolve_executable(self.command)
        if executable is None:
            logger.warning("Validator '%s' not found; creating openspec/ without 'init'", self.command)
            return
        self.project_root.mkdir(parents=True, exist_ok=True)
        logger.info("Initializing OpenSpec in %s", self.project_root)
        try:
            result = await run_command(
                [executable, "init"], input="", cwd=self.project_root, timeout=self.timeout,
            )
        except TimeoutError:
            logger.warning("'%s init' timed out after %gs", self.command, self.timeout)
            return
        except OSError as exc:
            logger.warning("Could not run '%s init': %s", self.command, exc)
            return
        if result.returncode != 0:
            logger.warning(
                "'%s init' exited with %d: %s", self.command, result.returncode, result.stderr.strip()[-2000:],
            )
            return
        logger.debug("'%s init' output: %s", self.command, result.stdout.strip())

    async def validate(self, change_path: Path) -> ValidationResult:
        change_path = Path(change_path)
        cwd = self.project_root or change_path.parents[2]
        argv = [self._resolve(), "validate", change_path.name]
        if self.strict:
            argv.append("--strict")

        try:
            result = await run_command(argv, cwd=cwd, timeout=self.timeout)
        except TimeoutError:
            logger.warning("Validator timed out after %gs", self.timeout)
            return ValidationResult(
                outcome=ValidationOutcome.ISSUES,
                issues=[f"Validator timed out after {self.timeout:g}s"],
            )
        except OSError as exc:
            raise ValidatorUnavailable(f"Could not start validator '{self.command}': {exc}") from exc

        output = "\n".join(part for part in (result.stdout, result.stderr) if part.strip())
        logger.debug("Validator exited with %d", result.returncode)
        return parse_validation_output(result.returncode, output)
