"""Tests for EPUB cover detection and the cover cache."""

import os
import zipfile

import pytest

from conftest import garble_member, image_bytes, write_epub
from khi import covers
from khi.archive import open_epub
from khi.covers import CoverCache, extract_cover, image_extension
from khi.errors import CoverArchiveError
from khi.opf import locate_cover, parse_container, resolve_href
from khi.utils import cache_key


@pytest.fixture
def open_spy(monkeypatch):
    """Count EPUB opens made by the cover extractor."""
    calls = []

    def spy(path):
        calls.append(path)
        return open_epub(path)

    monkeypatch.setattr(covers, "open_epub", spy)
    return calls


@pytest.mark.parametrize(
    "declared_by, expected_path",
    [
        ("properties", "OEBPS/images/cover.png"),
        ("meta", "OEBPS/images/cover.png"),
        ("guide-image", "OEBPS/images/cover.png"),
        ("guide-page", "OEBPS/images/cover.png"),
    ],
)
def test_locate_cover_declarations(tmp_path, declared_by, expected_path):
    epub = write_epub(tmp_path / "book.epub", declared_by=declared_by)
    with open_epub(epub) as archive:
        location = locate_cover(archive)
    assert location is not None
    assert location.path == expected_path
    assert location.declared_by == declared_by.split("-")[0]


def test_locate_cover_without_declaration(tmp_path):
    epub = write_epub(tmp_path / "book.epub", declared_by=None)
    with open_epub(epub) as archive:
        assert "OEBPS/images/cover.png" in archive.list_names()
        assert locate_cover(archive) is None


def test_extract_cover_writes_cache(tmp_path):
    epub = write_epub(tmp_path / "book.epub", declared_by="properties")
    cache_dir = tmp_path / "covers"

    path = extract_cover(epub, cache_dir, content_id="file:///mnt/onboard/book.epub")

    assert path == cache_dir / f"{cache_key('file:///mnt/onboard/book.epub')}.png"
    assert path.read_bytes() == image_bytes("PNG")
    assert path.stat().st_mtime_ns == epub.stat().st_mtime_ns
    assert [p.name for p in cache_dir.iterdir()] == [path.name]


def test_extract_cover_jpeg_extension(tmp_path):
    epub = write_epub(tmp_path / "book.epub", declared_by="meta", fmt="JPEG")
    path = extract_cover(epub, tmp_path / "covers", content_id="jpeg-book")
    assert path.suffix == ".jpg"


def test_extract_cover_reads_archive_once(tmp_path, open_spy):
    epub = write_epub(tmp_path / "book.epub")
    cache_dir = tmp_path / "covers"

    first = extract_cover(epub, cache_dir, content_id="book")
    second = extract_cover(epub, cache_dir, content_id="book")

    assert first == second
    assert len(open_spy) == 1


def test_changed_epub_is_extracted_again(tmp_path, open_spy):
    epub = write_epub(tmp_path / "book.epub", fmt="PNG")
    cache_dir = tmp_path / "covers"
    first = extract_cover(epub, cache_dir, content_id="book")

    write_epub(epub, fmt="JPEG", color="blue")
    stat = epub.stat()
    os.utime(epub, ns=(stat.st_atime_ns, first.stat().st_mtime_ns + 5_000_000_000))

    second = extract_cover(epub, cache_dir, content_id="book")

    assert len(open_spy) == 2
    assert second.suffix == ".jpg"
    assert not first.exists()
    assert second.read_bytes() == image_bytes("JPEG", color="blue")


def test_no_declared_cover_returns_none(tmp_path):
    epub = write_epub(tmp_path / "book.epub", declared_by=None)
    assert extract_cover(epub, tmp_path / "covers", content_id="book") is None
    assert not (tmp_path / "covers").exists()


def test_declared_cover_that_is_not_an_image(tmp_path):
    epub = write_epub(tmp_path / "book.epub", image=b"definitely not a png")
    assert extract_cover(epub, tmp_path / "covers", content_id="book") is None


def test_declared_cover_missing_from_archive(tmp_path):
    epub = tmp_path / "book.epub"
    write_epub(epub)
    with zipfile.ZipFile(epub) as zf:
        members = {n: zf.read(n) for n in zf.namelist() if not n.endswith(".png")}
    with zipfile.ZipFile(epub, "w") as zf:
        for name, data in members.items():
            zf.writestr(name, data)

    assert extract_cover(epub, tmp_path / "covers", content_id="book") is None


def test_corrupt_epub_raises_archive_error(tmp_path):
    epub = tmp_path / "broken.epub"
    epub.write_bytes(b"PK\x03\x04 this is not really a zip")
    with pytest.raises(CoverArchiveError):
        extract_cover(epub, tmp_path / "covers", content_id="broken")


def test_missing_epub_returns_none(tmp_path):
    assert extract_cover(tmp_path / "gone.epub", tmp_path / "covers", content_id="gone") is None


def test_cleanup_orphans_and_clear(tmp_path):
    cache_dir = tmp_path / "covers"
    keep = extract_cover(write_epub(tmp_path / "a.epub"), cache_dir, content_id="a")
    drop = extract_cover(write_epub(tmp_path / "b.epub"), cache_dir, content_id="b")
    cache = CoverCache(cache_dir)

    assert cache.cleanup_orphans(["a"]) == 1
    assert keep.exists()
    assert not drop.exists()

    assert cache.clear() == 1
    assert list(cache_dir.iterdir()) == []


def test_image_extension():
    assert image_extension(image_bytes("PNG")) == "png"
    assert image_extension(image_bytes("GIF")) == "gif"
    assert image_extension(b"<svg xmlns='http://www.w3.org/2000/svg'/>", "image/svg+xml") == "svg"
    assert image_extension(b"garbage") is None


def test_resolve_href():
    assert resolve_href("OEBPS/text/cover.xhtml", "../images/c%201.jpg#x") == "OEBPS/images/c 1.jpg"
    assert resolve_href("OEBPS/content.opf", "http://example.com/c.jpg") is None
    assert resolve_href("content.opf", "../../etc/passwd") is None


def test_parse_container_malformed():
    assert parse_container(b"<container><rootfiles>") is None


@pytest.mark.parametrize("member", ["META-INF/container.xml", "OEBPS/images/cover.png"])
def test_damaged_member_raises_archive_error(tmp_path, member):
    epub = garble_member(write_epub(tmp_path / "book.epub"), member)

    with pytest.raises(CoverArchiveError):
        extract_cover(epub, tmp_path / "covers", content_id="book")
    assert not (tmp_path / "covers").exists()
