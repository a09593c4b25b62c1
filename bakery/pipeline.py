"""Ingestion-and-synthesis pipeline: one work item, start to finish."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .artifacts import parse_change, render_files, slug_for
from .builder import fetch_work_item
from .config import Config
from .errors import ConfigurationError, ValidatorUnavailable
from .generator import ArtifactGenerator, CommandGenerator
from .models import ChangeProposal, ValidationOutcome, ValidationResult, WorkItem
from .prompt import DEFAULT_TEMPLATE, build_prompt, validate_template
from .storage import ChangeStore, TicketStore
from .tracker import TrackerClient
from .validator import ArtifactValidator, OpenSpecValidator

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_SKIPPED = "skipped"
STATUS_ERROR = "error"


@dataclass
class BakeResult:
    work_item: WorkItem
    ticket_path: Path
    status: str = STATUS_SUCCESS
    change_path: Path | None = None
    proposal: ChangeProposal | None = None
    validation: ValidationResult | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def counts(self) -> dict[str, int]:
        if self.validation and self.validation.counts:
            return self.validation.counts
        return self.proposal.requirement_counts() if self.proposal else {}


def _create_generator(config: Config) -> ArtifactGenerator:
    return CommandGenerator(config.generator.command, timeout=config.generator.timeout_sec)


def _create_validator(config: Config) -> ArtifactValidator:
    v = config.validator
    return OpenSpecValidator(
        v.command, strict=v.strict, timeout=v.timeout_sec, project_root=config.openspec_root(),
    )


async def _validate(validator: ArtifactValidator, change_path: Path, result: BakeResult) -> None:
    try:
        validation = await validator.validate(change_path)
    except ValidatorUnavailable as exc:
        logger.warning("%s", exc)
        result.warnings.append(f"Validation skipped: {exc}")
        validation = ValidationResult(outcome=ValidationOutcome.SKIPPED)
    if validation.outcome == ValidationOutcome.ISSUES:
        logger.warning("Validator reported %d issue(s) for %s", len(validation.issues), change_path.name)
    result.validation = validation


async def run_bake(
    config: Config,
    work_item_id: int,
    *,
    generate: bool | None = None,
    client: TrackerClient | None = None,
    generator: ArtifactGenerator | None = None,
    validator: ArtifactValidator | None = None,
) -> BakeResult:
    """Fetch, persist, generate and validate a single work item.

    Fatal errors propagate as ``BakeryError`` subclasses. Nothing is
    written for a change unless the generator output parsed cleanly.
    """
    if work_item_id <= 0:
        raise ConfigurationError(f"Work item id must be a positive integer, got {work_item_id}")
    config.require_tracker()
    if generate is None:
        generate = config.generator.auto_generate
    template = config.generator.prompt_template or DEFAULT_TEMPLATE
    if generate:
        validate_template(template)

    # -- fetch + persist ticket ----------------------------------------------
    if client is None:
        async with TrackerClient(config.tracker) as owned:
            work_item = await fetch_work_item(owned, work_item_id)
    else:
        work_item = await fetch_work_item(client, work_item_id)
    ticket_path = TicketStore(config.tickets_directory()).save(work_item)
    result = BakeResult(work_item=work_item, ticket_path=ticket_path)

    if not generate:
        logger.info("Generation disabled; stopping after ticket download")
        result.status = STATUS_SKIPPED
        return result

    # -- generate ------------------------------------------------------------
    prompt = build_prompt(work_item, template)
    generator = generator or _create_generator(config)
    base = config.base_directory()
    base.mkdir(parents=True, exist_ok=True)
    raw = await generator.generate(prompt, cwd=base)

    slug = slug_for(work_item)
    proposal = parse_change(raw, slug, fallback_title=work_item.title)
    result.proposal = proposal
    if config.validator.enabled:
        validator = validator or _create_validator(config)
        await validator.prepare()
    result.change_path = ChangeStore(config.openspec_directory()).save(slug, render_files(proposal))
    logger.info("Generated change %s with %d task(s)", slug, len(proposal.tasks))

    # -- validate ------------------------------------------------------------
    if not config.validator.enabled:
        result.validation = ValidationResult(outcome=ValidationOutcome.SKIPPED)
        return result
    await _validate(validator, result.change_path, result)
    return result
