"""Change proposal artifacts: slug derivation, output parsing and rendering."""

from __future__ import annotations

import logging
import re
import unicodedata

from .errors import MalformedArtifact
from .models import (
    ChangeProposal,
    DeltaKind,
    DeltaOperation,
    Scenario,
    SpecDelta,
    TaskEntry,
    WorkItem,
)

logger = logging.getLogger(__name__)

_SLUG_MAX_WORDS = 8
_SLUG_MAX_TITLE_LEN = 48


# -------------------------------------------------------------------
# Slug
# -------------------------------------------------------------------

def _ascii_words(text: str) -> list[str]:
    folded = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    return re.findall(r"[a-z0-9]+", folded.lower())


def make_slug(work_item_id: int, title: str, work_item_type: str = "") -> str:
    """Deterministic, verb-led change id, e.g. ``add-12345-add-user-authentication``."""
    verb = "fix" if work_item_type.strip().lower() == "bug" else "add"
    words = _ascii_words(title)[:_SLUG_MAX_WORDS]
    title_part = ""
    for word in words:
        candidate = f"{title_part}-{word}" if title_part else word
        if len(candidate) > _SLUG_MAX_TITLE_LEN:
            break
        title_part = candidate
    if not title_part and words:
        title_part = words[0][:_SLUG_MAX_TITLE_LEN]
    return f"{verb}-{work_item_id}-{title_part}" if title_part else f"{verb}-{work_item_id}"


def slug_for(wi: WorkItem) -> str:
    return make_slug(wi.id, wi.title, wi.work_item_type)


# -------------------------------------------------------------------
# Splitting raw generator output into files
# -------------------------------------------------------------------

_FILE_MARKER_RE = re.compile(r"^\s*={3,}\s*`?([^`=]+?)`?\s*={3,}\s*$")
_FENCE_RE = re.compile(r"^\s*```[\w-]*\s*$")
_CHANGE_PREFIX_RE = re.compile(r"^(?:openspec/)?changes/[^/]+/")


def _clean_path(path: str) -> str:
    path = path.strip().replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    path = _CHANGE_PREFIX_RE.sub("", path)
    if not path or path.startswith("/") or ".." in path.split("/"):
        raise MalformedArtifact(f"Generator emitted an unsafe file path: {path!r}")
    return path


def _unfence(lines: list[str]) -> list[str]:
    while lines and not lines[0].strip():
        lines = lines[1:]
    if lines and _FENCE_RE.match(lines[0]):
        body = lines[1:]
        for i, line in enumerate(body):
            if line.strip() == "```":
                return body[:i]
        return body
    while lines and not lines[-1].strip():
        lines = lines[:-1]
    if lines and lines[-1].strip() == "```":
        lines = lines[:-1]
    return lines


def split_files(raw: str) -> dict[str, str]:
    """Split ``=== path ===`` delimited output into {path: content}."""
    files: dict[str, list[str]] = {}
    current: str | None = None
    for line in raw.splitlines():
        m = _FILE_MARKER_RE.match(line)
        if m:
            current = _clean_path(m.group(1))
            files[current] = []
        elif current is not None:
            files[current].append(line)
    return {
        path: "\n".join(_unfence(lines)).strip() + "\n"
        for path, lines in files.items()
    }


# -------------------------------------------------------------------
# proposal.md
# -------------------------------------------------------------------

_TITLE_RE = re.compile(r"^#\s+(?:Change:\s*)?(.+?)\s*$")
_H2_RE = re.compile(r"^##\s+(.+?)\s*$")
_REQUIRED_SECTIONS = ("Why", "What Changes", "Impact")


def _sections(text: str) -> tuple[str, str, list[tuple[str, str]]]:
    title = ""
    preamble: list[str] = []
    sections: list[tuple[str, list[str]]] = []
    for line in text.splitlines():
        if not title and not sections:
            m = _TITLE_RE.match(line)
            if m and not line.startswith("##"):
                title = m.group(1)
                continue
        m = _H2_RE.match(line)
        if m:
            sections.append((m.group(1), []))
        elif sections:
            sections[-1][1].append(line)
        else:
            preamble.append(line)
    return (
        title,
        "\n".join(preamble).strip(),
        [(heading, "\n".join(body).strip()) for heading, body in sections],
    )


def parse_proposal(text: str) -> dict:
    """Split proposal.md into the ChangeProposal narrative fields.

    Sections other than Why, What Changes and Impact are kept, in file
    order, as ``extra_sections``.
    """
    title, preamble, sections = _sections(text)
    required: dict[str, str] = {}
    extra: list[tuple[str, str]] = []
    for heading, body in sections:
        key = next((s for s in _REQUIRED_SECTIONS if s.lower() == heading.lower()), None)
        if key is not None and key not in required:
            required[key] = body
        else:
            extra.append((heading, body))
    missing = [s for s in _REQUIRED_SECTIONS if not required.get(s)]
    if missing:
        raise MalformedArtifact(
            "proposal.md is missing required section(s): " + ", ".join(f"## {s}" for s in missing)
        )
    return {
        "title": title,
        "preamble": preamble,
        "why": required["Why"],
        "what_changes": required["What Changes"],
        "impact": required["Impact"],
        "extra_sections": extra,
    }


# -------------------------------------------------------------------
# tasks.md
# -------------------------------------------------------------------

_TASK_SECTION_RE = re.compile(r"^##\s+(\d+)\.?\s+(.+?)\s*$")
_TASK_RE = re.compile(r"^\s*[-*]\s+\[([ xX])\]\s+(?:(\d+(?:\.\d+)*)\.?\s+)?(.+?)\s*$")


def parse_tasks(text: str) -> list[TaskEntry]:
    """Checklist items with hierarchical numbers, in file order."""
    tasks: list[TaskEntry] = []
    section = ""
    section_no = ""
    counter = 0
    ignored = 0
    for line in text.splitlines():
        m = _TASK_SECTION_RE.match(line)
        if m:
            section_no, section, counter = m.group(1), f"{m.group(1)}. {m.group(2)}", 0
            continue
        m = _TASK_RE.match(line)
        if not m:
            if line.strip() and not line.lstrip().startswith("#"):
                ignored += 1
            continue
        counter += 1
        number = m.group(2) or (f"{section_no}.{counter}" if section_no else str(counter))
        tasks.append(TaskEntry(
            number=number,
            text=m.group(3),
            done=m.group(1).lower() == "x",
            section=section,
        ))
    if not tasks:
        raise MalformedArtifact("tasks.md contains no checklist items (- [ ] N.M ...)")
    if ignored:
        logger.warning("Ignoring %d non-checklist line(s) in tasks.md", ignored)
    return tasks


# -------------------------------------------------------------------
# specs/<capability>/spec.md
# -------------------------------------------------------------------

_OP_RE = re.compile(r"^##\s+(ADDED|MODIFIED|REMOVED|RENAMED)\s+Requirements\s*$", re.IGNORECASE)
_REQ_RE = re.compile(r"^###\s+Requirement:\s*(.+?)\s*$")
_SCENARIO_RE = re.compile(r"^####\s+Scenario:\s*(.+?)\s*$")
_STEP_RE = re.compile(r"^\s*[-*]\s+\*\*(WHEN|THEN|AND|GIVEN)\*\*:?\s*(.*)$", re.IGNORECASE)
_RENAME_TO_RE = re.compile(r"TO:\s*`?(?:###\s+Requirement:\s*)?([^`]+?)`?\s*$")
_SPEC_PATH_RE = re.compile(r"^specs/([^/]+)/spec\.md$")
_CHANGE_FILES = ("proposal.md", "tasks.md", "design.md")


def parse_spec_delta(capability: str, text: str) -> SpecDelta:
    delta = SpecDelta(capability=capability)
    kind: DeltaKind | None = None
    op: DeltaOperation | None = None
    scenario: Scenario | None = None
    body: list[str] = []
    last_step = ""
    gap = False
    # prose after a blank line in a scenario; kept only if more structure follows
    pending: list[str] = []

    def settle_pending():
        nonlocal pending
        while pending and not pending[-1]:
            pending.pop()
        if scenario is not None and pending:
            scenario.lines += [""] + pending
        pending = []

    def flush_op():
        nonlocal op, scenario, body
        settle_pending()
        if op is not None:
            op.body = "\n".join(body).strip()
            delta.operations.append(op)
        op, scenario, body = None, None, []

    for line in text.splitlines():
        m = _OP_RE.match(line)
        if m:
            flush_op()
            kind = DeltaKind(m.group(1).upper())
            continue
        if kind is None:
            continue
        m = _REQ_RE.match(line)
        if m:
            flush_op()
            op = DeltaOperation(kind=kind, requirement=m.group(1))
            continue
        if op is None:
            if kind == DeltaKind.RENAMED and line.strip():
                # FROM/TO bullets without a requirement header
                op = DeltaOperation(kind=kind, requirement="")
                body.append(line)
            continue
        m = _SCENARIO_RE.match(line)
        if m:
            settle_pending()
            scenario = Scenario(name=m.group(1))
            op.scenarios.append(scenario)
            last_step, gap = "", False
            continue
        if scenario is not None:
            stripped = line.strip()
            if pending:
                pending.append(line.rstrip())
                continue
            if not stripped:
                gap = bool(scenario.lines)
                continue
            m = _STEP_RE.match(line)
            is_bullet = m is not None or stripped.startswith(("- ", "* "))
            if gap:
                gap = False
                if not is_bullet:
                    pending.append(line.rstrip())
                    continue
                scenario.lines.append("")
            if m:
                step = m.group(1).upper()
                if step == "AND":
                    step = last_step
                if step == "WHEN":
                    scenario.when.append(m.group(2).strip())
                elif step == "THEN":
                    scenario.then.append(m.group(2).strip())
                last_step = step
            elif not is_bullet and last_step in ("WHEN", "THEN"):
                # wrapped step text
                steps = scenario.when if last_step == "WHEN" else scenario.then
                steps[-1] = f"{steps[-1]} {stripped}"
            elif is_bullet:
                last_step = ""
            scenario.lines.append(line.rstrip())
            continue
        body.append(line)
        if kind == DeltaKind.RENAMED and not op.requirement:
            to = _RENAME_TO_RE.search(line)
            if to:
                op.requirement = to.group(1).strip()
    if any(pending):
        logger.warning(
            "Ignoring %d trailing line(s) after the last scenario in specs/%s/spec.md",
            sum(1 for text_line in pending if text_line), capability,
        )
        pending.clear()
    flush_op()

    if not delta.operations:
        raise MalformedArtifact(f"specs/{capability}/spec.md contains no delta operations")
    for op in delta.operations:
        if op.kind not in (DeltaKind.ADDED, DeltaKind.MODIFIED):
            continue
        complete = [s for s in op.scenarios if s.when and s.then]
        if not complete:
            raise MalformedArtifact(
                f"Requirement '{op.requirement}' in specs/{capability}/spec.md "
                "needs at least one scenario with WHEN and THEN"
            )
    return delta


# -------------------------------------------------------------------
# Whole proposal
# -------------------------------------------------------------------

def parse_change(raw: str, slug: str, fallback_title: str = "") -> ChangeProposal:
    """Parse raw generator output; raises MalformedArtifact on missing parts."""
    files = split_files(raw)
    if "proposal.md" not in files:
        raise MalformedArtifact("Generator output has no '=== proposal.md ===' file")
    if "tasks.md" not in files:
        raise MalformedArtifact("Generator output has no '=== tasks.md ===' file")

    fields = parse_proposal(files["proposal.md"])
    fields["title"] = fields["title"] or fallback_title or slug
    proposal = ChangeProposal(
        slug=slug,
        tasks=parse_tasks(files["tasks.md"]),
        design=files.get("design.md", "").strip(),
        **fields,
    )
    for path in sorted(files):
        m = _SPEC_PATH_RE.match(path)
        if m:
            proposal.deltas.append(parse_spec_delta(m.group(1), files[path]))
        elif path not in _CHANGE_FILES:
            logger.warning("Dropping generated file %s: not part of an OpenSpec change", path)
    return proposal


def render_proposal_md(p: ChangeProposal) -> str:
    out = [f"# Change: {p.title}", ""]
    if p.preamble:
        out += [p.preamble, ""]
    sections = [("Why", p.why), ("What Changes", p.what_changes), ("Impact", p.impact)]
    for heading, body in sections + p.extra_sections:
        out.append(f"## {heading}")
        if body:
            out.append(body)
        out.append("")
    return "\n".join(out).rstrip() + "\n"


def render_tasks_md(p: ChangeProposal) -> str:
    out: list[str] = []
    section = None
    for task in p.tasks:
        if task.section != section:
            if out:
                out.append("")
            if task.section:
                out.append(f"## {task.section}")
            section = task.section
        out.append(f"- [{'x' if task.done else ' '}] {task.number} {task.text}")
    return "\n".join(out) + "\n"


def render_spec_md(delta: SpecDelta) -> str:
    out: list[str] = []
    kind = None
    for op in delta.operations:
        if op.kind != kind:
            if out:
                out.append("")
            out += [f"## {op.kind.value} Requirements", ""]
            kind = op.kind
        if op.kind == DeltaKind.RENAMED and "FROM:" in op.body:
            out += [op.body, ""]
            continue
        out.append(f"### Requirement: {op.requirement}")
        if op.body:
            out.append(op.body)
        for s in op.scenarios:
            out += ["", f"#### Scenario: {s.name}"]
            out += s.lines
        out.append("")
    return "\n".join(out).rstrip() + "\n"


def render_files(p: ChangeProposal) -> dict[str, str]:
    """Relative path → content for the change directory."""
    files = {
        "proposal.md": render_proposal_md(p),
        "tasks.md": render_tasks_md(p),
    }
    if p.design:
        files["design.md"] = p.design + "\n"
    for delta in p.deltas:
        files[f"specs/{delta.capability}/spec.md"] = render_spec_md(delta)
    return files
