"""Tests for data models."""

from datetime import datetime, timezone

import pytest

from bakery.models import (
    Attachment,
    ChangeProposal,
    Comment,
    DeltaKind,
    DeltaOperation,
    SpecDelta,
    User,
    ValidationOutcome,
    ValidationResult,
    WorkItem,
)


def test_work_item_id_must_be_positive():
    with pytest.raises(ValueError):
        WorkItem(id=-1, title="x", work_item_type="Task", state="New")


def test_comment_is_immutable():
    c = Comment(1, User("A"), "text", datetime(2024, 1, 1, tzinfo=timezone.utc))
    with pytest.raises(AttributeError):
        c.text = "changed"


def test_attachment_properties():
    a = Attachment("shot.png", "https://x", "image/png", b"1234")
    assert a.size == 4
    assert a.is_image
    assert a.to_dict()["local_path"] == "attachments/shot.png"
    assert not Attachment("a.txt", "https://x", "text/plain").is_image


def test_work_item_to_dict_serializes_dates():
    wi = WorkItem(
        id=5, title="T", work_item_type="Bug", state="New",
        created_at=datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
        attachments=[Attachment("a.bin", "https://x", content=b"\x00")],
    )
    data = wi.to_dict()
    assert data["created_at"] == "2024-01-01T12:00:00+00:00"
    assert data["updated_at"] is None
    assert data["attachments"][0]["size_bytes"] == 1


def test_requirement_counts():
    proposal = ChangeProposal(
        slug="s", title="t", why="w", what_changes="c", impact="i",
        deltas=[
            SpecDelta("auth", [
                DeltaOperation(DeltaKind.ADDED, "A"),
                DeltaOperation(DeltaKind.ADDED, "B"),
                DeltaOperation(DeltaKind.REMOVED, "C"),
            ]),
            SpecDelta("billing", [DeltaOperation(DeltaKind.MODIFIED, "D")]),
        ],
    )
    assert proposal.requirement_counts() == {"added": 2, "modified": 1, "removed": 1, "renamed": 0}


def test_validation_result_flags():
    assert ValidationResult(ValidationOutcome.PASSED).passed
    assert ValidationResult(ValidationOutcome.SKIPPED).skipped
    issues = ValidationResult(ValidationOutcome.ISSUES, issues=["x"])
    assert not issues.passed and not issues.skipped
