"""Reader for the Kobo content database (`.kobo/KoboReader.sqlite`).

Two tables matter:
- `content`: one row per book (ContentType 6), per chapter file (9) and per
  table-of-contents entry (899), among other asset types.
- `Bookmark`: highlights and notes; `VolumeID` points at the book row and
  `ContentID` at the chapter row the highlight sits in.

The schema drifts between firmware releases, so only `ContentID`/`ContentType`
and `BookmarkID`/`VolumeID`/`Text` are required; every other column is read
when present. Rows are validated one by one: a malformed row is skipped and
reported, it never aborts the import.
"""

from __future__ import annotations

import math
import sqlite3
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Tuple, Union

from bs4 import BeautifulSoup
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

from .device import database_path, read_only_uri
from .errors import DatabaseError, Failure, RowParseError
from .logging_config import get_logger
from .models import Book, Device, Highlight
from .utils import to_device_relative

logger = get_logger(__name__)


BOOK_CONTENT_TYPE = 6
CHAPTER_CONTENT_TYPE = 9
TOC_CONTENT_TYPE = 899

UNKNOWN_TITLE = "Unknown Title"
UNKNOWN_AUTHOR = "Unknown Author"

# Device column -> row model field
CONTENT_COLUMNS = {
    "ContentID": "content_id",
    "ContentType": "content_type",
    "Title": "title",
    "BookTitle": "book_title",
    "Attribution": "attribution",
    "ISBN": "isbn",
    "Publisher": "publisher",
    "Language": "language",
    "DateLastRead": "date_last_read",
    "Description": "description",
    "VolumeIndex": "volume_index",
}
BOOKMARK_COLUMNS = {
    "BookmarkID": "bookmark_id",
    "ContentID": "content_id",
    "VolumeID": "volume_id",
    "Text": "text",
    "Annotation": "annotation",
    "StartContainerPath": "container_path",
    "ChapterProgress": "chapter_progress",
    "DateCreated": "date_created",
    "Color": "color",
}
REQUIRED_CONTENT_COLUMNS = ("ContentID", "ContentType")
REQUIRED_BOOKMARK_COLUMNS = ("BookmarkID", "VolumeID", "Text")

# Chapter "titles" that are really file names inside the EPUB
FILENAME_MARKERS = (".xhtml", ".html", ".htm", "/")

# Kobo stores highlight colours as an index
COLOR_NAMES = {"0": "yellow", "1": "pink", "2": "blue", "3": "green"}


class _RowModel(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    @field_validator("*", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, bytes):
            try:
                value = value.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ValueError(f"not valid UTF-8 text ({exc.reason})") from exc
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value


class ContentRow(_RowModel):
    content_id: str
    content_type: int
    title: Optional[str] = None
    book_title: Optional[str] = None
    attribution: Optional[str] = None
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    language: Optional[str] = None
    date_last_read: Optional[str] = None
    description: Optional[str] = None
    volume_index: Optional[int] = None


class BookmarkRow(_RowModel):
    bookmark_id: str
    volume_id: str
    content_id: Optional[str] = None
    text: str
    annotation: Optional[str] = None
    container_path: Optional[str] = None
    chapter_progress: Optional[float] = None
    date_created: Optional[str] = None
    color: Optional[str] = None

    @field_validator("chapter_progress")
    @classmethod
    def _check_progress(cls, value: Optional[float]) -> Optional[float]:
        if value is None:
            return None
        if math.isnan(value):
            raise ValueError("chapter progress is NaN")
        return min(max(value, 0.0), 1.0)


class RowKind(str, Enum):
    BOOK = "book"
    OTHER = "other"
    MALFORMED = "malformed"


class MappedRow(NamedTuple):
    kind: RowKind
    row: Optional[ContentRow] = None
    error: Optional[RowParseError] = None


class ReadResult(NamedTuple):
    books: List[Book]
    failures: List[Failure]


def _row_key(raw: Mapping[str, Any], field: str) -> str:
    value = raw.get(field)
    return "<missing>" if value is None else str(value)


def classify_content_row(raw: Mapping[str, Any]) -> MappedRow:
    """Map a raw `content` row to a book row, another asset row, or an error."""
    try:
        row = ContentRow.model_validate(dict(raw))
    except ValidationError as exc:
        reason = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        return MappedRow(
            RowKind.MALFORMED,
            error=RowParseError("content", _row_key(raw, "content_id"), reason),
        )
    if row.content_type == BOOK_CONTENT_TYPE:
        return MappedRow(RowKind.BOOK, row=row)
    return MappedRow(RowKind.OTHER, row=row)


def parse_bookmark_row(raw: Mapping[str, Any]) -> Union[BookmarkRow, RowParseError]:
    try:
        return BookmarkRow.model_validate(dict(raw))
    except ValidationError as exc:
        reason = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        return RowParseError("Bookmark", _row_key(raw, "bookmark_id"), reason)


def is_filename_title(title: str) -> bool:
    lowered = title.lower()
    return any(marker in lowered for marker in FILENAME_MARKERS)


def _clean_description(value: Optional[str]) -> Optional[str]:
    """Descriptions from the store are HTML fragments; keep the text."""
    if not value:
        return None
    if "<" not in value:
        return value
    cleaned = BeautifulSoup(value, "html.parser").get_text(" ", strip=True)
    return cleaned or None


def _color_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return COLOR_NAMES.get(value, value)


def _book_from_row(row: ContentRow) -> Book:
    return Book(
        content_id=row.content_id,
        title=row.title or row.book_title or UNKNOWN_TITLE,
        author=row.attribution or UNKNOWN_AUTHOR,
        isbn=row.isbn,
        publisher=row.publisher,
        language=row.language,
        date_last_read=row.date_last_read,
        description=_clean_description(row.description),
        file_path=to_device_relative(row.content_id),
    )


def _toc_base(content_id: str) -> Optional[Tuple[str, int]]:
    """Split a TOC ContentID `<chapter id>-N` into (chapter id, N)."""
    base, sep, suffix = content_id.rpartition("-")
    if not sep or not suffix.isdigit():
        return None
    return base, int(suffix)


def _sort_part(value: Any) -> Tuple[int, Any]:
    # Missing values sort after present ones
    return (1, 0) if value is None else (0, value)


def _decode_text(value: bytes) -> Union[str, bytes]:
    """sqlite3 text factory that hands undecodable cells back as raw bytes."""
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        return value


def _connect(uri: str) -> sqlite3.Connection:
    connection = sqlite3.connect(uri, uri=True, check_same_thread=False)
    # Bad bytes in one cell must fail that row only, not the whole fetch
    connection.text_factory = _decode_text
    return connection


class KoboDatabase:
    """Read-only access to a Kobo content database."""

    def __init__(self, path: Path):
        self.path = Path(path)
        if not self.path.is_file():
            raise DatabaseError(f"Content database not found: {self.path}")
        uri = read_only_uri(self.path)
        self.engine = create_engine(
            "sqlite://",
            creator=lambda: _connect(uri),
            poolclass=NullPool,
        )

    def close(self) -> None:
        self.engine.dispose()

    def __enter__(self) -> "KoboDatabase":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _columns(self, inspector, table: str, required: Tuple[str, ...]) -> Tuple[str, Dict[str, str]]:
        """Return the table's actual name and {wanted column: actual column}."""
        tables = {name.lower(): name for name in inspector.get_table_names()}
        actual_table = tables.get(table.lower())
        if actual_table is None:
            raise DatabaseError(f"Table {table!r} missing from {self.path.name}")

        columns = {col["name"].lower(): col["name"] for col in inspector.get_columns(actual_table)}
        missing = [c for c in required if c.lower() not in columns]
        if missing:
            raise DatabaseError(
                f"Table {actual_table!r} lacks required columns: {', '.join(missing)}"
            )
        return actual_table, columns

    @staticmethod
    def _select(table: str, wanted: Mapping[str, str], present: Mapping[str, str]) -> str:
        parts = []
        for column, alias in wanted.items():
            actual = present.get(column.lower())
            if actual is None:
                parts.append(f"NULL AS {alias}")
            else:
                parts.append(f'"{actual}" AS {alias}')
        return f'SELECT {", ".join(parts)} FROM "{table}"'

    def read_books(self) -> ReadResult:
        """Return every book on the device with its highlights.

        Raises DatabaseError if the database cannot be read at all.
        """
        try:
            with self.engine.connect() as conn:
                inspector = inspect(conn)
                content_table, content_cols = self._columns(
                    inspector, "content", REQUIRED_CONTENT_COLUMNS
                )
                bookmark_table, bookmark_cols = self._columns(
                    inspector, "Bookmark", REQUIRED_BOOKMARK_COLUMNS
                )

                content_rows = conn.execute(
                    text(self._select(content_table, CONTENT_COLUMNS, content_cols))
                ).mappings().all()
                text_column = bookmark_cols["text"]
                bookmark_rows = conn.execute(
                    text(
                        self._select(bookmark_table, BOOKMARK_COLUMNS, bookmark_cols)
                        + f" WHERE \"{text_column}\" IS NOT NULL AND \"{text_column}\" != ''"
                    )
                ).mappings().all()
        except SQLAlchemyError as exc:
            raise DatabaseError(f"Cannot read {self.path}: {exc}") from exc

        logger.info(
            f"Read {len(content_rows)} content rows and {len(bookmark_rows)} bookmarks"
        )
        return self._assemble(content_rows, bookmark_rows)

    def _assemble(self, content_rows, bookmark_rows) -> ReadResult:
        failures: List[Failure] = []
        books: Dict[str, Book] = {}
        chapters: Dict[str, ContentRow] = {}
        toc_titles: Dict[str, Tuple[int, str]] = {}

        for raw in content_rows:
            mapped = classify_content_row(raw)
            if mapped.kind is RowKind.MALFORMED:
                logger.warning(f"Skipping malformed row: {mapped.error}")
                failures.append(Failure(str(mapped.error.key), mapped.error))
                continue

            row = mapped.row
            if mapped.kind is RowKind.BOOK:
                books[row.content_id] = _book_from_row(row)
            elif row.content_type == CHAPTER_CONTENT_TYPE:
                chapters[row.content_id] = row
            elif row.content_type == TOC_CONTENT_TYPE and row.title:
                split = _toc_base(row.content_id)
                if split is not None:
                    base, index = split
                    if base not in toc_titles or index < toc_titles[base][0]:
                        toc_titles[base] = (index, row.title)

        positioned: Dict[str, List[Tuple[tuple, Highlight]]] = {}
        for raw in bookmark_rows:
            parsed = parse_bookmark_row(raw)
            if isinstance(parsed, RowParseError):
                logger.warning(f"Skipping malformed row: {parsed}")
                failures.append(Failure(str(parsed.key), parsed))
                continue

            book = books.get(parsed.volume_id)
            if book is None:
                error = RowParseError(
                    "Bookmark", parsed.bookmark_id, f"no book with ContentID {parsed.volume_id!r}"
                )
                logger.debug(f"Skipping orphan highlight: {error}")
                failures.append(Failure(parsed.bookmark_id, error))
                continue

            chapter = chapters.get(parsed.content_id) if parsed.content_id else None
            highlight = Highlight(
                id=parsed.bookmark_id,
                text=parsed.text,
                annotation=parsed.annotation,
                chapter_title=self._chapter_title(parsed.content_id, chapter, toc_titles),
                chapter_progress=parsed.chapter_progress,
                container_path=parsed.container_path,
                date_created=parsed.date_created,
                color=_color_name(parsed.color),
            )
            position = (
                _sort_part(chapter.volume_index if chapter else None),
                _sort_part(parsed.chapter_progress),
                _sort_part(parsed.date_created),
                parsed.bookmark_id,
            )
            positioned.setdefault(book.content_id, []).append((position, highlight))

        for content_id, entries in positioned.items():
            entries.sort(key=lambda entry: entry[0])
            books[content_id].highlights = [highlight for _, highlight in entries]

        ordered = sorted(books.values(), key=lambda b: (b.title.casefold(), b.content_id))
        logger.info(
            f"Collected {len(ordered)} books, "
            f"{sum(b.highlight_count for b in ordered)} highlights, "
            f"{len(failures)} rows skipped"
        )
        return ReadResult(ordered, failures)

    @staticmethod
    def _chapter_title(
        content_id: Optional[str],
        chapter: Optional[ContentRow],
        toc_titles: Mapping[str, Tuple[int, str]],
    ) -> Optional[str]:
        if content_id and content_id in toc_titles:
            return toc_titles[content_id][1]
        if chapter is not None and chapter.title and not is_filename_title(chapter.title):
            return chapter.title
        return None


def read_books(source: Union[Device, Path]) -> ReadResult:
    """Read all books and highlights from a device or a database file."""
    if isinstance(source, Device):
        path = database_path(source)
        if path is None:
            raise DatabaseError(f"No content database on {source.name} ({source.path})")
    else:
        path = Path(source)

    with KoboDatabase(path) as db:
        return db.read_books()
