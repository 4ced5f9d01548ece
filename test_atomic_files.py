import errno
import os

import pytest

import atomic_files
from atomic_files import (
    is_queue_document,
    list_documents,
    read_document,
    relocate_file,
    write_atomically,
)
from plan_models import RelocationError


def test_write_creates_parent_and_leaves_no_temp_files(tmp_path):
    target = tmp_path / "pending" / "plan.md"
    write_atomically(target, "hello\n")

    assert target.read_text(encoding="utf-8") == "hello\n"
    assert sorted(p.name for p in target.parent.iterdir()) == ["plan.md"]


def test_write_replaces_existing_content(tmp_path):
    target = tmp_path / "plan.md"
    target.write_text("old", encoding="utf-8")
    write_atomically(target, "new")

    assert target.read_text(encoding="utf-8") == "new"


def test_failed_rename_keeps_old_content_and_cleans_up(tmp_path, monkeypatch):
    target = tmp_path / "plan.md"
    target.write_text("old", encoding="utf-8")

    def boom(src, dst):
        raise OSError(errno.EACCES, "denied")

    monkeypatch.setattr(atomic_files.os, "replace", boom)
    with pytest.raises(OSError):
        write_atomically(target, "new")

    assert target.read_text(encoding="utf-8") == "old"
    assert [p.name for p in tmp_path.iterdir()] == ["plan.md"]


def test_crlf_survives_read_and_write(tmp_path):
    target = tmp_path / "plan.md"
    write_atomically(target, "a\r\nb\r\n")

    assert target.read_bytes() == b"a\r\nb\r\n"
    assert read_document(target) == "a\r\nb\r\n"


@pytest.mark.parametrize(
    "name, expected",
    [
        ("plan.md", True),
        ("2026-01-30-plan.md", True),
        (".hidden.md", False),
        (".tmp-abc123", False),
        ("plan.tmp-abc.md", False),
        ("notes.txt", False),
        ("plan.md.bak", False),
    ],
)
def test_is_queue_document(name, expected):
    assert is_queue_document(name) is expected


def test_list_documents_filters_and_sorts(tmp_path):
    for name in ["b.md", "a.md", ".tmp-x", "c.txt", ".d.md"]:
        (tmp_path / name).write_text("x", encoding="utf-8")
    (tmp_path / "dir.md").mkdir()

    assert [p.name for p in list_documents(tmp_path)] == ["a.md", "b.md"]
    assert list_documents(tmp_path / "missing") == []


def test_relocate_moves_file_into_new_folder(tmp_path):
    src = tmp_path / "pending" / "plan.md"
    src.parent.mkdir()
    src.write_text("content", encoding="utf-8")

    dest = relocate_file(src, tmp_path / "completed")

    assert dest == tmp_path / "completed" / "plan.md"
    assert dest.read_text(encoding="utf-8") == "content"
    assert not src.exists()


def test_relocate_refuses_to_overwrite(tmp_path):
    src = tmp_path / "pending" / "plan.md"
    src.parent.mkdir()
    src.write_text("new", encoding="utf-8")
    existing = tmp_path / "completed" / "plan.md"
    existing.parent.mkdir()
    existing.write_text("old", encoding="utf-8")

    with pytest.raises(RelocationError) as excinfo:
        relocate_file(src, existing.parent)

    assert "already exists" in excinfo.value.reason
    assert src.read_text(encoding="utf-8") == "new"
    assert existing.read_text(encoding="utf-8") == "old"


def test_relocate_reports_cross_device_moves(tmp_path, monkeypatch):
    src = tmp_path / "plan.md"
    src.write_text("x", encoding="utf-8")

    def cross_device(a, b):
        raise OSError(errno.EXDEV, os.strerror(errno.EXDEV))

    monkeypatch.setattr(atomic_files.os, "link", cross_device)
    with pytest.raises(RelocationError) as excinfo:
        relocate_file(src, tmp_path / "completed")

    assert excinfo.value.reason == "cross-device move not supported"
    assert src.exists()


def test_relocate_never_clobbers_a_file_that_appears_mid_move(tmp_path, monkeypatch):
    src = tmp_path / "pending" / "plan.md"
    src.parent.mkdir()
    src.write_text("new", encoding="utf-8")
    dest = tmp_path / "completed" / "plan.md"
    real_link = os.link

    def racing_link(a, b):
        dest.write_text("arrived first", encoding="utf-8")
        real_link(a, b)

    monkeypatch.setattr(atomic_files.os, "link", racing_link)
    with pytest.raises(RelocationError) as excinfo:
        relocate_file(src, dest.parent)

    assert "already exists" in excinfo.value.reason
    assert dest.read_text(encoding="utf-8") == "arrived first"
    assert src.read_text(encoding="utf-8") == "new"
