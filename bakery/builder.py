"""Assemble a WorkItem graph from raw tracker responses."""

from __future__ import annotations

import html
import logging
import mimetypes
import re
from datetime import datetime, timezone

from .models import Attachment, Comment, ImageRef, User, WorkItem
from .normalize import extract_acceptance_criteria, extract_image_sources, normalize
from .storage import MANIFEST_NAME
from .tracker import TrackerClient

logger = logging.getLogger(__name__)

_RELATED_ID_RE = re.compile(r"/workItems/(\d+)$", re.IGNORECASE)
_UNSAFE_FILENAME_RE = re.compile(r"[^\w.\- ]")


# -------------------------------------------------------------------
# Field helpers
# -------------------------------------------------------------------

def parse_timestamp(value) -> datetime | None:
    """Parse an ISO-8601 tracker timestamp into an aware UTC datetime."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Tracker timestamps can carry 7 fractional digits
    text = re.sub(r"(\.\d{6})\d+", r"\1", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable timestamp %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_user(value) -> User | None:
    """Identity fields arrive as an object or as ``"Name <email>"`` text."""
    if not value:
        return None
    if isinstance(value, dict):
        return User(
            display_name=value.get("displayName", "") or value.get("uniqueName", ""),
            unique_name=value.get("uniqueName", ""),
        )
    text = str(value)
    match = re.match(r"^(.*?)\s*<([^>]+)>$", text)
    if match:
        return User(display_name=match.group(1) or match.group(2), unique_name=match.group(2))
    return User(display_name=text.split("@")[0], unique_name=text)


def _parse_priority(value) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def safe_filename(name: str, fallback: str) -> str:
    cleaned = _UNSAFE_FILENAME_RE.sub("_", name).strip(" .")
    return cleaned or fallback


# -------------------------------------------------------------------
# Relations
# -------------------------------------------------------------------

def attachment_relations(raw_item: dict) -> list[tuple[str, str]]:
    """(filename, url) for every ``AttachedFile`` relation, in order."""
    refs: list[tuple[str, str]] = []
    for i, rel in enumerate(raw_item.get("relations") or [], 1):
        if rel.get("rel") != "AttachedFile" or not rel.get("url"):
            continue
        name = (rel.get("attributes") or {}).get("name") or f"attachment-{i}"
        refs.append((name, rel["url"]))
    return refs


def related_ids(raw_item: dict) -> list[int]:
    """IDs of linked work items. References only; never fetched."""
    ids: list[int] = []
    for rel in raw_item.get("relations") or []:
        if not str(rel.get("rel", "")).startswith("System.LinkTypes."):
            continue
        match = _RELATED_ID_RE.search(rel.get("url", ""))
        if match:
            linked = int(match.group(1))
            if linked not in ids:
                ids.append(linked)
    return ids


# -------------------------------------------------------------------
# Images
# -------------------------------------------------------------------

def image_name(index: int, media_type: str) -> str:
    ext = mimetypes.guess_extension(media_type or "") or ".png"
    if ext == ".jpe":
        ext = ".jpg"
    return f"image{index:03d}{ext}"


def _alt_texts(raw: str) -> dict[str, str]:
    alts: dict[str, str] = {}
    for tag in re.findall(r"<img\b[^>]*>", raw or "", re.IGNORECASE):
        src = re.search(r"""\bsrc\s*=\s*["']([^"']+)["']""", tag, re.IGNORECASE)
        alt = re.search(r"""\balt\s*=\s*["']([^"']*)["']""", tag, re.IGNORECASE)
        if src and alt:
            alts.setdefault(html.unescape(src.group(1)).strip(), html.unescape(alt.group(1)))
    return alts


# -------------------------------------------------------------------
# Assembly
# -------------------------------------------------------------------

def build_work_item(
    raw_item: dict,
    raw_comments: list[dict] | None = None,
    attachments: list[Attachment] | None = None,
    images: list[ImageRef] | None = None,
) -> WorkItem:
    """Map raw tracker JSON into a normalized WorkItem."""
    fields = raw_item.get("fields") or {}
    images = images or []
    refs = {img.original_url: img.local_ref for img in images}

    work_item_type = fields.get("System.WorkItemType", "") or ""
    raw_description = fields.get("System.Description") or ""
    if not raw_description and work_item_type == "Bug":
        raw_description = fields.get("Microsoft.VSTS.TCM.ReproSteps") or ""
    description = normalize(raw_description, refs)

    acceptance = normalize(fields.get("Microsoft.VSTS.Common.AcceptanceCriteria"), refs)
    if not acceptance:
        acceptance = extract_acceptance_criteria(description)

    comments = []
    for rc in raw_comments or []:
        if rc.get("isDeleted"):
            continue
        created = parse_timestamp(rc.get("createdDate")) or datetime.fromtimestamp(0, timezone.utc)
        comments.append(Comment(
            id=int(rc.get("id", 0)),
            author=parse_user(rc.get("createdBy") or rc.get("author")) or User("Unknown"),
            text=normalize(rc.get("text", ""), refs),
            created_at=created,
            updated_at=parse_timestamp(rc.get("modifiedDate") or rc.get("updatedDate")),
        ))
    comments.sort(key=lambda c: (c.created_at, c.id))

    tags = [t.strip() for t in (fields.get("System.Tags") or "").split(";") if t.strip()]

    return WorkItem(
        id=int(raw_item["id"]),
        title=(fields.get("System.Title") or "").strip(),
        work_item_type=work_item_type,
        state=fields.get("System.State", "") or "",
        description=description,
        acceptance_criteria=acceptance,
        priority=_parse_priority(fields.get("Microsoft.VSTS.Common.Priority")),
        created_at=parse_timestamp(fields.get("System.CreatedDate")),
        updated_at=parse_timestamp(fields.get("System.ChangedDate")),
        created_by=parse_user(fields.get("System.CreatedBy")),
        assigned_to=parse_user(fields.get("System.AssignedTo")),
        area_path=fields.get("System.AreaPath", "") or "",
        iteration_path=fields.get("System.IterationPath", "") or "",
        tags=tags,
        comments=comments,
        attachments=list(attachments or []),
        images=images,
        related_ids=related_ids(raw_item),
    )


def _rich_text_sources(raw_item: dict, raw_comments: list[dict]) -> list[str]:
    fields = raw_item.get("fields") or {}
    sources = [
        fields.get("System.Description") or fields.get("Microsoft.VSTS.TCM.ReproSteps") or "",
        fields.get("Microsoft.VSTS.Common.AcceptanceCriteria") or "",
    ]
    sources.extend(rc.get("text", "") or "" for rc in raw_comments)
    return sources


async def fetch_work_item(client: TrackerClient, work_item_id: int) -> WorkItem:
    """Fetch item, comments, attachments and embedded images, then assemble.

    No retries happen here; any tracker failure aborts the whole fetch
    since a partial work item is not usable.
    """
    raw_item = await client.fetch_work_item(work_item_id)
    raw_comments = await client.fetch_comments(work_item_id)

    attachments: list[Attachment] = []
    used_names: set[str] = {MANIFEST_NAME}
    for name, url in attachment_relations(raw_item):
        content, media_type = await client.fetch_bytes(url)
        base = safe_filename(name, f"attachment-{len(attachments) + 1}")
        filename = base
        stem, dot, ext = base.rpartition(".")
        n = 1
        while filename in used_names:
            n += 1
            filename = f"{stem}-{n}.{ext}" if dot else f"{base}-{n}"
        used_names.add(filename)
        attachments.append(Attachment(filename=filename, url=url, media_type=media_type, content=content))

    images: list[ImageRef] = []
    seen: set[str] = set()
    for raw in _rich_text_sources(raw_item, raw_comments):
        alts = _alt_texts(raw)
        for src in extract_image_sources(raw):
            if src in seen or not client.is_tracker_url(src):
                continue
            seen.add(src)
            content, media_type = await client.fetch_bytes(src)
            images.append(ImageRef(
                name=image_name(len(images) + 1, media_type),
                original_url=src,
                alt_text=alts.get(src, ""),
                media_type=media_type,
                content=content,
            ))

    work_item = build_work_item(raw_item, raw_comments, attachments, images)
    logger.info(
        "Fetched work item %d with %d comments, %d attachments and %d images",
        work_item.id, len(work_item.comments), len(work_item.attachments), len(work_item.images),
    )
    return work_item
