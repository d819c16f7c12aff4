"""End-to-end tests: scan, import with covers, export."""

import threading

import pytest

from conftest import ATOMIC_HABITS, SAPIENS, garble_member
from khi import covers
from khi.device import examine_volume, scan
from khi.errors import CoverArchiveError, CoverError, DeviceError
from khi.importer import export, import_books, select_books
from khi.models import ExportConfig


@pytest.mark.parametrize("workers", [1, 4])
def test_import_library(library_device, tmp_path, workers):
    device = scan([library_device.parent])
    progress = []

    result = import_books(device, tmp_path / "covers", on_progress=progress.append, workers=workers)

    assert [b.title for b in result.books] == ["Atomic Habits", "Sapiens"]
    assert [b.highlight_count for b in result.books] == [3, 0]
    assert [h.chapter_title for h in result.books[0].highlights] == ["Ch1", "Ch1", "Ch2"]
    assert result.failures == []
    assert not result.cancelled

    assert result.books[0].cover_path.endswith(".png")
    assert result.books[1].cover_path.endswith(".jpg")

    assert len(progress) == 2
    assert progress[-1].books_processed == 2
    assert progress[-1].total_books == 2
    assert progress[-1].highlights_found == 3
    assert progress[-1].percentage == 100.0


def test_export_sapiens_with_default_config(library_device, tmp_path):
    result = import_books(examine_volume(library_device), tmp_path / "covers")
    config = ExportConfig(export_path=str(tmp_path / "out"))

    exported = export(result.books, config, selected=[SAPIENS])

    assert [p.name for p in exported.written] == ["Sapiens - Yuval Noah Harari.md"]
    content = exported.written[0].read_text(encoding="utf-8")
    assert content == "# Sapiens\n"
    assert "---" not in content


def test_export_atomic_habits(library_device, tmp_path):
    result = import_books(examine_volume(library_device), tmp_path / "covers")
    exported = export(result.books, ExportConfig(export_path=str(tmp_path / "out")), selected=[ATOMIC_HABITS])

    content = exported.written[0].read_text(encoding="utf-8")
    assert content.index("## Ch1") < content.index("## Ch2")
    assert content.count("## Ch1") == 1
    assert content.count("\n---\n") == 3
    assert "Systems over goals" in content


def test_corrupt_cover_is_not_fatal(library_device, tmp_path):
    (library_device / "Books" / "Sapiens.epub").write_bytes(b"not a zip at all")

    result = import_books(examine_volume(library_device), tmp_path / "covers")

    assert [b.title for b in result.books] == ["Atomic Habits", "Sapiens"]
    assert result.books[1].cover_path is None
    assert [f.key for f in result.failures] == [SAPIENS]
    assert isinstance(result.failures[0].error, CoverArchiveError)


def test_missing_epub_file_is_not_fatal(library_device, tmp_path):
    (library_device / "Books" / "Atomic Habits.epub").unlink()
    result = import_books(examine_volume(library_device), tmp_path / "covers")
    assert result.books[0].cover_path is None
    assert result.failures == []


def test_import_without_database_raises(make_device, tmp_path):
    device = examine_volume(make_device(with_db=False))
    with pytest.raises(DeviceError):
        import_books(device, tmp_path / "covers")


def test_import_cancelled(library_device, tmp_path):
    cancel = threading.Event()
    cancel.set()

    result = import_books(examine_volume(library_device), tmp_path / "covers", cancel_event=cancel)

    assert result.cancelled
    assert result.books == []


def test_cancel_after_first_book(library_device, tmp_path):
    cancel = threading.Event()

    result = import_books(
        examine_volume(library_device),
        tmp_path / "covers",
        cancel_event=cancel,
        on_progress=lambda progress: cancel.set(),
        workers=1,
    )

    assert result.cancelled
    assert [b.title for b in result.books] == ["Atomic Habits"]


def test_select_books(library_device, tmp_path):
    books = import_books(examine_volume(library_device), tmp_path / "covers").books
    assert select_books(books, None) == books
    assert [b.title for b in select_books(books, [SAPIENS, "unknown"])] == ["Sapiens"]
    assert select_books(books, []) == []


def test_damaged_epub_member_is_not_fatal(library_device, tmp_path):
    garble_member(library_device / "Books" / "Sapiens.epub", "META-INF/container.xml")

    result = import_books(examine_volume(library_device), tmp_path / "covers", workers=1)

    assert [b.title for b in result.books] == ["Atomic Habits", "Sapiens"]
    assert result.books[0].cover_path.endswith(".png")
    assert result.books[1].cover_path is None
    assert [f.key for f in result.failures] == [SAPIENS]
    assert isinstance(result.failures[0].error, CoverArchiveError)


@pytest.mark.parametrize("workers", [1, 4])
def test_unexpected_cover_error_becomes_failure(library_device, tmp_path, monkeypatch, workers):
    def broken(self, epub_path, key):
        raise RuntimeError("cache exploded")

    monkeypatch.setattr(covers.CoverCache, "extract", broken)

    result = import_books(examine_volume(library_device), tmp_path / "covers", workers=workers)

    assert [b.title for b in result.books] == ["Atomic Habits", "Sapiens"]
    assert all(b.cover_path is None for b in result.books)
    assert sorted(f.key for f in result.failures) == sorted([ATOMIC_HABITS, SAPIENS])
    for failure in result.failures:
        assert isinstance(failure.error, CoverError)
        assert "RuntimeError" in str(failure.error)
