"""Core data models for bakery."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------------
# Work item graph
# ---------------------------------------------------------------------------

@dataclass
class User:
    display_name: str
    unique_name: str = ""

    def to_dict(self) -> dict:
        return {"display_name": self.display_name, "unique_name": self.unique_name}


@dataclass(frozen=True)
class Comment:
    """A single comment; immutable once materialized."""

    id: int
    author: User
    text: str
    created_at: datetime
    updated_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "author": self.author.to_dict(),
            "text": self.text,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class Attachment:
    """A file attached to the work item. ``content`` is never serialized."""

    filename: str
    url: str
    media_type: str = "application/octet-stream"
    content: bytes = field(default=b"", repr=False)

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def is_image(self) -> bool:
        return self.media_type.startswith("image/")

    def to_dict(self) -> dict:
        return {
            "filename": self.filename,
            "url": self.url,
            "media_type": self.media_type,
            "size_bytes": self.size,
            "local_path": f"attachments/{self.filename}",
        }


@dataclass
class ImageRef:
    """An image embedded in rich text, downloaded under ``images/``."""

    name: str  # e.g. image001.png
    original_url: str
    alt_text: str = ""
    media_type: str = "image/png"
    content: bytes = field(default=b"", repr=False)

    @property
    def local_ref(self) -> str:
        return f"images/{self.name}"

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "original_url": self.original_url,
            "local_path": self.local_ref,
            "alt_text": self.alt_text,
            "media_type": self.media_type,
            "size_bytes": len(self.content),
        }


@dataclass
class WorkItem:
    """A normalized tracker work item plus the entities it owns."""

    id: int
    title: str
    work_item_type: str
    state: str
    description: str = ""
    acceptance_criteria: str = ""
    priority: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    created_by: User | None = None
    assigned_to: User | None = None
    area_path: str = ""
    iteration_path: str = ""
    tags: list[str] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)
    images: list[ImageRef] = field(default_factory=list)
    related_ids: list[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.id <= 0:
            raise ValueError(f"work item id must be positive, got {self.id}")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "work_item_type": self.work_item_type,
            "state": self.state,
            "priority": self.priority,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "created_by": self.created_by.to_dict() if self.created_by else None,
            "assigned_to": self.assigned_to.to_dict() if self.assigned_to else None,
            "area_path": self.area_path,
            "iteration_path": self.iteration_path,
            "tags": list(self.tags),
            "description": self.description,
            "acceptance_criteria": self.acceptance_criteria,
            "comments": [c.to_dict() for c in self.comments],
            "attachments": [a.to_dict() for a in self.attachments],
            "images": [i.to_dict() for i in self.images],
            "related_ids": list(self.related_ids),
        }


# ---------------------------------------------------------------------------
# Change proposal
# ---------------------------------------------------------------------------

class DeltaKind(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    REMOVED = "REMOVED"
    RENAMED = "RENAMED"


@dataclass
class Scenario:
    name: str
    when: list[str] = field(default_factory=list)
    then: list[str] = field(default_factory=list)
    lines: list[str] = field(default_factory=list)  # body as written, continuations included


@dataclass
class DeltaOperation:
    """One requirement under an ADDED/MODIFIED/REMOVED/RENAMED header."""

    kind: DeltaKind
    requirement: str
    body: str = ""
    scenarios: list[Scenario] = field(default_factory=list)


@dataclass
class SpecDelta:
    capability: str
    operations: list[DeltaOperation] = field(default_factory=list)

    def count(self, kind: DeltaKind) -> int:
        return sum(1 for op in self.operations if op.kind == kind)


@dataclass
class TaskEntry:
    number: str  # hierarchical, e.g. "2.1"
    text: str
    done: bool = False
    section: str = ""


@dataclass
class ChangeProposal:
    """Generated change: narrative, task checklist and spec deltas."""

    slug: str
    title: str
    why: str
    what_changes: str
    impact: str
    tasks: list[TaskEntry] = field(default_factory=list)
    deltas: list[SpecDelta] = field(default_factory=list)
    design: str = ""
    # text between the title and the first section
    preamble: str = ""
    # (heading, body) for sections beyond Why/What Changes/Impact, in file order
    extra_sections: list[tuple[str, str]] = field(default_factory=list)

    def requirement_counts(self) -> dict[str, int]:
        return {
            kind.value.lower(): sum(d.count(kind) for d in self.deltas)
            for kind in DeltaKind
        }


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationOutcome(str, Enum):
    PASSED = "passed"
    ISSUES = "issues"
    SKIPPED = "skipped"


@dataclass
class ValidationResult:
    """Ephemeral validator report for one run."""

    outcome: ValidationOutcome
    issues: list[str] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)
    output: str = ""

    @property
    def passed(self) -> bool:
        return self.outcome == ValidationOutcome.PASSED

    @property
    def skipped(self) -> bool:
        return self.outcome == ValidationOutcome.SKIPPED
