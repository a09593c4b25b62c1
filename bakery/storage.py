"""On-disk layout and all-or-nothing directory writes.

    {base}/Tickets/{id}/work_item.json
    {base}/Tickets/{id}/attachments/*
    {base}/Tickets/{id}/images/*
    {base}/openspec/changes/{slug}/proposal.md, tasks.md, specs/{capability}/spec.md
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import uuid
from pathlib import Path

from .errors import StorageError
from .models import WorkItem

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"


# -------------------------------------------------------------------
# Atomic directory swap
# -------------------------------------------------------------------

def write_tree_atomic(target: Path, files: dict[str, str | bytes]) -> Path:
    """Materialize *files* (relative path → content) as directory *target*.

    Everything is written to a hidden temporary sibling first and then
    renamed into place, so *target* is either the previous complete tree
    or the new complete tree. An existing tree is replaced wholesale.
    """
    target = Path(target)
    parent = target.parent
    parent.mkdir(parents=True, exist_ok=True)
    token = uuid.uuid4().hex[:8]
    staging = parent / f".{target.name}.tmp-{token}"
    retired = parent / f".{target.name}.old-{token}"

    try:
        staging.mkdir()
        for rel, content in files.items():
            path = staging / rel
            if staging.resolve() not in path.resolve().parents:
                raise StorageError(f"Refusing to write outside {target}: {rel}")
            path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                path.write_bytes(content)
            else:
                path.write_text(content, encoding="utf-8", newline="\n")

        if target.exists():
            os.replace(target, retired)
        try:
            os.replace(staging, target)
        except OSError:
            if retired.exists() and not target.exists():
                os.replace(retired, target)
            raise
    except OSError as exc:
        raise StorageError(f"Failed to write {target}: {exc}") from exc
    finally:
        shutil.rmtree(staging, ignore_errors=True)
        shutil.rmtree(retired, ignore_errors=True)

    logger.debug("Wrote %d files to %s", len(files), target)
    return target


def remove_stale_staging(parent: Path) -> None:
    """Delete temporary trees left behind by an interrupted run."""
    if not parent.is_dir():
        return
    for entry in parent.iterdir():
        if entry.is_dir() and entry.name.startswith(".") and (".tmp-" in entry.name or ".old-" in entry.name):
            logger.debug("Removing stale staging directory %s", entry)
            shutil.rmtree(entry, ignore_errors=True)


# -------------------------------------------------------------------
# Ticket rendering
# -------------------------------------------------------------------

def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S UTC") if value else "unknown"


def render_description_md(wi: WorkItem) -> str:
    lines = [
        f"# {wi.title}",
        "",
        f"**Work Item ID**: {wi.id}",
        f"**Type**: {wi.work_item_type}",
        f"**State**: {wi.state}",
    ]
    if wi.priority is not None:
        lines.append(f"**Priority**: {wi.priority}")
    lines.append(f"**Created**: {_fmt_time(wi.created_at)}")
    if wi.created_by:
        lines.append(f"**Created By**: {wi.created_by.display_name}")
    if wi.related_ids:
        lines.append("**Related**: " + ", ".join(f"#{i}" for i in wi.related_ids))
    lines += ["", "---", "", "## Description", "", wi.description or "_No description._", ""]
    return "\n".join(lines)


def render_acceptance_md(wi: WorkItem) -> str:
    body = wi.acceptance_criteria or "No explicit acceptance criteria specified in the work item."
    return f"# Acceptance Criteria\n\n{body}\n"


def render_comments_md(wi: WorkItem) -> str:
    if not wi.comments:
        return "# Comments\n\nNo comments found for this work item.\n"
    parts = ["# Comments", ""]
    for c in wi.comments:
        parts += [f"## {c.author.display_name} - {_fmt_time(c.created_at)}", "", c.text, ""]
    return "\n".join(parts)


# -------------------------------------------------------------------
# Stores
# -------------------------------------------------------------------

class TicketStore:
    """Persists fetched work items under ``{base}/Tickets/{id}``."""

    def __init__(self, tickets_dir: Path):
        self.tickets_dir = Path(tickets_dir)

    def ticket_path(self, work_item_id: int) -> Path:
        return self.tickets_dir / str(work_item_id)

    def save(self, wi: WorkItem) -> Path:
        files: dict[str, str | bytes] = {
            "work_item.json": json.dumps(wi.to_dict(), indent=2, ensure_ascii=False) + "\n",
            "description.md": render_description_md(wi),
            "acceptance-criteria.md": render_acceptance_md(wi),
            "comments.md": render_comments_md(wi),
            f"attachments/{MANIFEST_NAME}": json.dumps(
                {"attachments": [a.to_dict() for a in wi.attachments]}, indent=2) + "\n",
            f"images/{MANIFEST_NAME}": json.dumps(
                {"images": [i.to_dict() for i in wi.images]}, indent=2) + "\n",
        }
        for att in wi.attachments:
            if att.filename == MANIFEST_NAME:
                raise StorageError(
                    f"Attachment name {att.filename!r} is reserved for the attachment manifest"
                )
            files[f"attachments/{att.filename}"] = att.content
        for img in wi.images:
            files[img.local_ref] = img.content

        remove_stale_staging(self.tickets_dir)
        path = write_tree_atomic(self.ticket_path(wi.id), files)
        logger.info("Saved work item %d to %s", wi.id, path)
        return path

    def load_json(self, work_item_id: int) -> dict:
        return json.loads((self.ticket_path(work_item_id) / "work_item.json").read_text(encoding="utf-8"))


class ChangeStore:
    """Persists generated change proposals under ``{base}/openspec/changes/{slug}``."""

    def __init__(self, openspec_dir: Path):
        self.openspec_dir = Path(openspec_dir)
        self.changes_dir = self.openspec_dir / "changes"

    def ensure_initialized(self) -> None:
        """Create the openspec skeleton if ``openspec init`` was never run."""
        for sub in ("changes", "specs"):
            (self.openspec_dir / sub).mkdir(parents=True, exist_ok=True)

    def change_path(self, slug: str) -> Path:
        return self.changes_dir / slug

    def save(self, slug: str, files: dict[str, str]) -> Path:
        self.ensure_initialized()
        remove_stale_staging(self.changes_dir)
        path = write_tree_atomic(self.change_path(slug), dict(files))
        logger.info("Saved change %s to %s", slug, path)
        return path
