"""Tests for all-or-nothing directory writes and the ticket/change stores."""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from bakery.errors import StorageError
from bakery.models import Attachment, Comment, ImageRef, User, WorkItem
from bakery.storage import ChangeStore, TicketStore, remove_stale_staging, write_tree_atomic


@pytest.fixture
def work_item():
    return WorkItem(
        id=42,
        title="Export report",
        work_item_type="Feature",
        state="Active",
        description="Export the monthly report as CSV.",
        created_at=datetime(2024, 2, 1, tzinfo=timezone.utc),
        created_by=User("Jane Doe", "jane@contoso.com"),
        comments=[Comment(1, User("Bob"), "Use UTF-8.", datetime(2024, 2, 2, tzinfo=timezone.utc))],
        attachments=[Attachment("sample.csv", "https://dev.azure.com/a/1", "text/csv", b"a,b\n")],
        images=[ImageRef("image001.png", "https://dev.azure.com/i/1", "chart", "image/png", b"\x89PNG")],
    )


def _hidden(parent: Path) -> list[str]:
    return [p.name for p in parent.iterdir() if p.name.startswith(".")]


# --- write_tree_atomic ---

def test_write_tree_creates_files(tmp_path):
    target = tmp_path / "out" / "change"
    write_tree_atomic(target, {"a.md": "A\n", "specs/x/spec.md": "X\n", "bin/data": b"\x00\x01"})
    assert (target / "a.md").read_text() == "A\n"
    assert (target / "specs" / "x" / "spec.md").read_text() == "X\n"
    assert (target / "bin" / "data").read_bytes() == b"\x00\x01"
    assert _hidden(target.parent) == []


def test_overwrite_replaces_whole_tree(tmp_path):
    """Regeneration wins wholesale: files absent from the new set disappear."""
    target = tmp_path / "change"
    write_tree_atomic(target, {"old.md": "old", "keep.md": "v1"})
    write_tree_atomic(target, {"keep.md": "v2"})
    assert sorted(p.name for p in target.iterdir()) == ["keep.md"]
    assert (target / "keep.md").read_text() == "v2"
    assert _hidden(tmp_path) == []


def test_path_escape_rejected(tmp_path):
    target = tmp_path / "change"
    with pytest.raises(StorageError):
        write_tree_atomic(target, {"../evil.md": "x"})
    assert not target.exists()
    assert not (tmp_path / "evil.md").exists()
    assert _hidden(tmp_path) == []


def test_failed_write_keeps_previous_tree(tmp_path, monkeypatch):
    target = tmp_path / "change"
    write_tree_atomic(target, {"proposal.md": "v1"})

    real_write_text = Path.write_text

    def failing_write_text(self, *args, **kwargs):
        if self.name == "tasks.md":
            raise OSError("disk full")
        return real_write_text(self, *args, **kwargs)

    monkeypatch.setattr(Path, "write_text", failing_write_text)
    with pytest.raises(StorageError, match="disk full"):
        write_tree_atomic(target, {"proposal.md": "v2", "tasks.md": "t"})

    assert (target / "proposal.md").read_text() == "v1"
    assert not (target / "tasks.md").exists()
    assert _hidden(tmp_path) == []


def test_failed_first_write_leaves_nothing(tmp_path, monkeypatch):
    def failing_write_bytes(self, data):
        raise OSError("io")

    monkeypatch.setattr(Path, "write_bytes", failing_write_bytes)
    with pytest.raises(StorageError):
        write_tree_atomic(tmp_path / "ticket", {"blob": b"1"})
    assert not (tmp_path / "ticket").exists()


def test_remove_stale_staging(tmp_path):
    (tmp_path / ".42.tmp-deadbeef").mkdir()
    (tmp_path / ".42.old-cafebabe").mkdir()
    (tmp_path / "42").mkdir()
    remove_stale_staging(tmp_path)
    assert sorted(p.name for p in tmp_path.iterdir()) == ["42"]


# --- TicketStore ---

def test_ticket_store_layout(tmp_path, work_item):
    store = TicketStore(tmp_path / "Tickets")
    path = store.save(work_item)

    assert path == tmp_path / "Tickets" / "42"
    for name in ("work_item.json", "description.md", "acceptance-criteria.md", "comments.md"):
        assert (path / name).is_file()
    assert (path / "attachments" / "sample.csv").read_bytes() == b"a,b\n"
    assert (path / "images" / "image001.png").read_bytes() == b"\x89PNG"

    manifest = json.loads((path / "images" / "manifest.json").read_text())
    assert manifest["images"][0]["local_path"] == "images/image001.png"
    assert manifest["images"][0]["alt_text"] == "chart"


def test_attachment_named_like_manifest_rejected(tmp_path, work_item):
    work_item.attachments.append(Attachment("manifest.json", "https://dev.azure.com/a/2", content=b"USER FILE"))
    with pytest.raises(StorageError, match="reserved"):
        TicketStore(tmp_path / "Tickets").save(work_item)
    assert not (tmp_path / "Tickets" / "42").exists()


def test_ticket_json_excludes_bytes(tmp_path, work_item):
    store = TicketStore(tmp_path)
    store.save(work_item)
    data = store.load_json(42)
    assert data["id"] == 42
    assert data["attachments"][0]["size_bytes"] == 4
    assert "content" not in data["attachments"][0]
    assert data["comments"][0]["author"]["display_name"] == "Bob"


def test_ticket_markdown(tmp_path, work_item):
    path = TicketStore(tmp_path).save(work_item)
    description = (path / "description.md").read_text()
    assert description.startswith("# Export report")
    assert "**Work Item ID**: 42" in description
    assert "Export the monthly report as CSV." in description
    assert "No explicit acceptance criteria" in (path / "acceptance-criteria.md").read_text()
    comments = (path / "comments.md").read_text()
    assert "## Bob - 2024-02-02 00:00:00 UTC" in comments
    assert "Use UTF-8." in comments


# --- ChangeStore ---

def test_change_store_initializes_skeleton(tmp_path):
    store = ChangeStore(tmp_path / "openspec")
    path = store.save("add-1-x", {"proposal.md": "# P\n"})
    assert path == tmp_path / "openspec" / "changes" / "add-1-x"
    assert (tmp_path / "openspec" / "specs").is_dir()
    assert (path / "proposal.md").read_text() == "# P\n"
