"""Prompt synthesis: render a WorkItem into the generator request."""

from __future__ import annotations

from .errors import ConfigurationError
from .models import WorkItem

PLACEHOLDER = "{work_item}"

DEFAULT_TEMPLATE = """\
You are creating an OpenSpec change proposal for the following work item.
Use only the information below; do not invent requirements the work item
does not support.

{work_item}
"""

OUTPUT_CONTRACT = """\
## Output Format

Reply with the files of the change and nothing else. Start every file with
a marker line of the form `=== <relative path> ===`. Emit these files:

=== proposal.md ===
# Change: <brief description>

## Why
<1-2 sentences on the problem or opportunity>

## What Changes
- <bullet list of changes; mark breaking changes with **BREAKING**>

## Impact
- Affected specs: <capabilities>
- Affected code: <key files or systems>

=== tasks.md ===
## 1. Implementation
- [ ] 1.1 <specific task>
- [ ] 1.2 <specific task>

## 2. Verification
- [ ] 2.1 <test or check>

=== specs/<capability>/spec.md ===
## ADDED Requirements
### Requirement: <name>
The system SHALL <requirement>.

#### Scenario: <name>
- **WHEN** <condition or action>
- **THEN** <expected result>

Rules:
- Use `## ADDED|MODIFIED|REMOVED|RENAMED Requirements` headers for deltas.
- Every ADDED or MODIFIED requirement MUST have at least one
  `#### Scenario:` with a **WHEN** line and a **THEN** line.
- Use SHALL/MUST for normative wording.
- Use one `specs/<capability>/spec.md` file per affected capability, with
  a kebab-case capability name.
- Number tasks hierarchically (`1.1`, `1.2`, `2.1`) under `## N. Section`
  headers.
- Add `=== design.md ===` only for cross-cutting changes, new external
  dependencies, or security, performance or migration complexity.
"""


def _block(label: str, text: str, empty: str) -> list[str]:
    return [f"**{label}:**", text.strip() if text and text.strip() else empty, ""]


def render_work_item(wi: WorkItem) -> str:
    """Deterministic, human- and machine-readable rendering of *wi*."""
    parts: list[str] = [f"**Work Item #{wi.id}: {wi.title}**", ""]
    parts.append(f"- Type: {wi.work_item_type or 'Unknown'}")
    parts.append(f"- State: {wi.state or 'Unknown'}")
    if wi.priority is not None:
        parts.append(f"- Priority: {wi.priority}")
    if wi.tags:
        parts.append(f"- Tags: {', '.join(wi.tags)}")
    if wi.related_ids:
        parts.append("- Related work items: " + ", ".join(f"#{i}" for i in wi.related_ids))
    if wi.attachments:
        parts.append("- Attachments: " + ", ".join(a.filename for a in wi.attachments))
    parts.append("")

    parts += _block("Description", wi.description, "No description provided.")
    parts += _block(
        "Acceptance Criteria", wi.acceptance_criteria,
        "No explicit acceptance criteria specified.",
    )

    parts.append("**Comments:**")
    if not wi.comments:
        parts.append("No comments.")
    for i, c in enumerate(wi.comments, 1):
        stamp = c.created_at.strftime("%Y-%m-%d %H:%M UTC")
        parts.append(f"{i}. {c.author.display_name} ({stamp}):")
        parts.extend(f"   {line}" if line else "" for line in c.text.split("\n"))
    return "\n".join(parts).rstrip() + "\n"


def validate_template(template: str) -> None:
    count = template.count(PLACEHOLDER)
    if count != 1:
        raise ConfigurationError(
            f"Prompt template must contain the placeholder {PLACEHOLDER} exactly once "
            f"(found {count})."
        )


def build_prompt(wi: WorkItem, template: str | None = None) -> str:
    """Substitute the work item rendering and output contract into *template*."""
    template = template or DEFAULT_TEMPLATE
    validate_template(template)
    return template.replace(PLACEHOLDER, render_work_item(wi) + "\n" + OUTPUT_CONTRACT)
