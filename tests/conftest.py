"""Shared fixtures: throwaway Kobo volumes and EPUB files."""

import io
import sqlite3
import struct
import zipfile
from contextlib import closing
from pathlib import Path

import pytest
from PIL import Image


CONTENT_SCHEMA = """
CREATE TABLE content (
    ContentID TEXT,
    ContentType TEXT,
    Title TEXT,
    BookTitle TEXT,
    Attribution TEXT,
    ISBN TEXT,
    Publisher TEXT,
    Language TEXT,
    DateLastRead TEXT,
    Description TEXT,
    VolumeIndex INTEGER
)
"""

BOOKMARK_SCHEMA = """
CREATE TABLE Bookmark (
    BookmarkID TEXT,
    VolumeID TEXT,
    ContentID TEXT,
    Text TEXT,
    Annotation TEXT,
    StartContainerPath TEXT,
    ChapterProgress REAL,
    DateCreated TEXT,
    Color INTEGER
)
"""

ATOMIC_HABITS = "file:///mnt/onboard/Books/Atomic Habits.epub"
SAPIENS = "file:///mnt/onboard/Books/Sapiens.epub"


def _insert(conn, table, rows):
    for row in rows:
        columns = ", ".join(f'"{c}"' for c in row)
        marks = ", ".join("?" for _ in row)
        conn.execute(f'INSERT INTO "{table}" ({columns}) VALUES ({marks})', list(row.values()))


def write_kobo_db(path: Path, content=(), bookmarks=(), schema=(CONTENT_SCHEMA, BOOKMARK_SCHEMA)):
    path.parent.mkdir(parents=True, exist_ok=True)
    with closing(sqlite3.connect(path)) as conn:
        for statement in schema:
            conn.execute(statement)
        if content:
            _insert(conn, "content", content)
        if bookmarks:
            _insert(conn, "Bookmark", bookmarks)
        conn.commit()
    return path


def image_bytes(fmt: str = "PNG", color: str = "red") -> bytes:
    img = Image.new("RGB", (12, 18), color=color)
    buffer = io.BytesIO()
    img.save(buffer, format=fmt)
    return buffer.getvalue()


CONTAINER_XML = b"""<?xml version="1.0"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>"""

COVER_PAGE = """<?xml version="1.0" encoding="utf-8"?>
<html xmlns="http://www.w3.org/1999/xhtml">
  <head><title>Cover</title></head>
  <body><div><img src="{src}" alt="Cover"/></div></body>
</html>"""


def _package_document(declared_by, image_name, media_type):
    image_props = ' properties="cover-image"' if declared_by == "properties" else ""
    meta = '<meta name="cover" content="cover-img"/>' if declared_by == "meta" else ""
    guide = ""
    if declared_by == "guide-image":
        guide = f'<guide><reference type="cover" title="Cover" href="images/{image_name}"/></guide>'
    elif declared_by == "guide-page":
        guide = '<guide><reference type="cover" title="Cover" href="text/cover.xhtml"/></guide>'

    return f"""<?xml version="1.0" encoding="utf-8"?>
<package xmlns="http://www.idpf.org/2007/opf" version="3.0" unique-identifier="uid">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/">
    <dc:title>Test Book</dc:title>
    {meta}
  </metadata>
  <manifest>
    <item id="cover-img" href="images/{image_name}" media-type="{media_type}"{image_props}/>
    <item id="cover-page" href="text/cover.xhtml" media-type="application/xhtml+xml"/>
    <item id="ch01" href="text/ch01.xhtml" media-type="application/xhtml+xml"/>
  </manifest>
  <spine><itemref idref="cover-page"/><itemref idref="ch01"/></spine>
  {guide}
</package>""".encode("utf-8")


def write_epub(path: Path, declared_by="properties", fmt="PNG", color="red", image=None):
    """Write a small EPUB whose cover is declared by ``declared_by``.

    ``declared_by`` is one of properties, meta, guide-image, guide-page or None.
    The cover image is stored in the archive in every case.
    """
    extension = "jpg" if fmt == "JPEG" else fmt.lower()
    image_name = f"cover.{extension}"
    media_type = "image/jpeg" if fmt == "JPEG" else f"image/{extension}"
    data = image if image is not None else image_bytes(fmt, color)

    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("mimetype", "application/epub+zip", compress_type=zipfile.ZIP_STORED)
        zf.writestr("META-INF/container.xml", CONTAINER_XML)
        zf.writestr("OEBPS/content.opf", _package_document(declared_by, image_name, media_type))
        zf.writestr("OEBPS/text/cover.xhtml", COVER_PAGE.format(src=f"../images/{image_name}"))
        zf.writestr("OEBPS/text/ch01.xhtml", "<html><body><p>Chapter one</p></body></html>")
        zf.writestr(f"OEBPS/images/{image_name}", data)
    return path


def garble_member(path: Path, member: str) -> Path:
    """Rewrite an EPUB deflated, then overwrite the compressed bytes of ``member``.

    The central directory stays valid, so the archive opens but reading the
    member fails while inflating.
    """
    with zipfile.ZipFile(path) as zf:
        members = [(info.filename, zf.read(info.filename)) for info in zf.infolist()]
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, data in members:
            zf.writestr(name, data)
    with zipfile.ZipFile(path) as zf:
        info = zf.getinfo(member)

    with path.open("r+b") as handle:
        # Local file header: 30 fixed bytes, then the name and extra field
        handle.seek(info.header_offset + 26)
        name_len, extra_len = struct.unpack("<HH", handle.read(4))
        handle.seek(info.header_offset + 30 + name_len + extra_len)
        handle.write(b"\xff" * info.compress_size)
    return path


def library_content():
    """Atomic Habits (two chapters) and Sapiens, as `content` rows."""
    return [
        {
            "ContentID": ATOMIC_HABITS,
            "ContentType": "6",
            "Title": "Atomic Habits",
            "Attribution": "James Clear",
            "ISBN": "9780735211292",
            "Publisher": "Avery",
            "Language": "en",
            "DateLastRead": "2025-01-24T10:15:00Z",
        },
        {
            "ContentID": f"{ATOMIC_HABITS}!OEBPS!text/ch01.xhtml",
            "ContentType": "9",
            "Title": "Ch1",
            "BookTitle": "Atomic Habits",
            "VolumeIndex": 1,
        },
        {
            "ContentID": f"{ATOMIC_HABITS}!OEBPS!text/ch02.xhtml",
            "ContentType": "9",
            "Title": "Ch2",
            "BookTitle": "Atomic Habits",
            "VolumeIndex": 2,
        },
        {
            "ContentID": SAPIENS,
            "ContentType": "6",
            "Title": "Sapiens",
            "Attribution": "Yuval Noah Harari",
        },
    ]


def library_bookmarks():
    """Three highlights in Atomic Habits: Ch1, Ch1, Ch2."""
    ch1 = f"{ATOMIC_HABITS}!OEBPS!text/ch01.xhtml"
    ch2 = f"{ATOMIC_HABITS}!OEBPS!text/ch02.xhtml"
    return [
        {
            "BookmarkID": "hl-3",
            "VolumeID": ATOMIC_HABITS,
            "ContentID": ch2,
            "Text": "Habits are the compound interest of self-improvement.",
            "ChapterProgress": 0.25,
            "DateCreated": "2025-01-24T11:00:00.000",
            "Color": 2,
        },
        {
            "BookmarkID": "hl-2",
            "VolumeID": ATOMIC_HABITS,
            "ContentID": ch1,
            "Text": "You fall to the level of your systems.",
            "Annotation": "Systems over goals",
            "ChapterProgress": 0.5,
            "DateCreated": "2025-01-24T10:30:00.000",
            "Color": 0,
        },
        {
            "BookmarkID": "hl-1",
            "VolumeID": ATOMIC_HABITS,
            "ContentID": ch1,
            "Text": "You do not rise to the level of your goals.",
            "ChapterProgress": 0.1,
            "DateCreated": "2025-01-24T10:00:00.000",
        },
    ]


@pytest.fixture
def make_device(tmp_path):
    """Factory building a mounted Kobo volume under tmp_path/volumes."""

    def make(content=(), bookmarks=(), name="KOBOeReader", serial="N418000000001", with_db=True):
        root = tmp_path / "volumes" / name
        kobo_dir = root / ".kobo"
        kobo_dir.mkdir(parents=True)
        if serial:
            (kobo_dir / "version").write_text(f"{serial},4.1.15,4.38.21908,4.1.15,4.1.15,00000000-0000-0000-0000-000000000380")
        if with_db:
            write_kobo_db(kobo_dir / "KoboReader.sqlite", content, bookmarks)
        return root

    return make


@pytest.fixture
def library_device(make_device):
    """A Kobo holding Atomic Habits and Sapiens, with their EPUB files."""
    root = make_device(library_content(), library_bookmarks())
    write_epub(root / "Books" / "Atomic Habits.epub", declared_by="properties")
    write_epub(root / "Books" / "Sapiens.epub", declared_by="meta", fmt="JPEG")
    return root
