"""Markdown export for Khi.

Renders one Markdown document per book:

    # Title

    **Author**: ...

    ---

    ## Chapter

    > highlight text

    **Location**: Chapter · 25%
    **Date**: 24 January 2025

Rendering never fails; missing fields are left out. Files are written to a
temporary name in the destination and renamed into place, so an interrupted
export never leaves a half-written document behind.
"""

from __future__ import annotations

import os
import re
import threading
import unicodedata
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from .errors import DestinationError, ExportIoError, Failure
from .logging_config import get_logger
from .models import Book, DateFormat, ExportConfig, Highlight
from .utils import atomic_write_text

logger = get_logger(__name__)

MONTH_NAMES = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)

INVALID_FILENAME_CHARS = '/\\?*|"<>'
_INVALID_TRANSLATION = {ord(ch): "-" for ch in INVALID_FILENAME_CHARS}
_WHITESPACE_RE = re.compile(r"\s+")

SEPARATOR = "---"
UNTITLED = "Untitled"

LABELS = {
    "author": "Author",
    "isbn": "ISBN",
    "publisher": "Publisher",
    "language": "Language",
    "date_last_read": "Date last read",
    "location": "Location",
    "date": "Date",
}


@dataclass
class ExportResult:
    written: List[Path] = field(default_factory=list)
    failures: List[Failure] = field(default_factory=list)
    cancelled: bool = False


def parse_date(value: Union[str, date, None]) -> Optional[date]:
    """Parse the date part of an ISO date/datetime string. None if unparseable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    raw = str(value).strip()
    if not raw:
        return None
    candidate = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
    try:
        return datetime.fromisoformat(candidate).date()
    except ValueError:
        pass
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        return None


def format_date(value: Union[str, date, None], date_format: DateFormat) -> str:
    """Format a date for export; unparseable or missing dates become ''."""
    parsed = parse_date(value)
    if parsed is None:
        return ""

    date_format = DateFormat(date_format)
    if date_format is DateFormat.DD_MM_YYYY:
        return f"{parsed.day:02d}/{parsed.month:02d}/{parsed.year:04d}"
    if date_format is DateFormat.DD_MONTH_YYYY:
        return f"{parsed.day:02d} {MONTH_NAMES[parsed.month - 1]} {parsed.year:04d}"
    return f"{parsed.year:04d}-{parsed.month:02d}-{parsed.day:02d}"


def sanitize_filename(raw: Optional[str]) -> str:
    """Make a title or author safe to use in a file name.

    Idempotent, and the result never contains / \\ ? * | " < >.
    """
    value = (raw or "").strip()
    value = value.replace(":", " -").translate(_INVALID_TRANSLATION)
    value = "".join(
        ch for ch in value
        if ch.isspace() or unicodedata.category(ch) != "Cc"
    )
    value = _WHITESPACE_RE.sub(" ", value).strip()
    return value or UNTITLED


def generate_filename(book: Book) -> str:
    return f"{sanitize_filename(book.title)} - {sanitize_filename(book.author)}.md"


def _metadata_lines(book: Book, config: ExportConfig) -> List[str]:
    flags = config.metadata
    lines: List[str] = []

    if flags.author and book.author:
        lines.append(f"**{LABELS['author']}**: {book.author}")
    if flags.isbn and book.isbn:
        lines.append(f"**{LABELS['isbn']}**: {book.isbn}")
    if flags.publisher and book.publisher:
        lines.append(f"**{LABELS['publisher']}**: {book.publisher}")
    if flags.language and book.language:
        lines.append(f"**{LABELS['language']}**: {book.language}")
    if flags.date_last_read:
        read_date = format_date(book.date_last_read, config.date_format)
        if read_date:
            lines.append(f"**{LABELS['date_last_read']}**: {read_date}")
    if flags.description and book.description:
        if lines:
            lines.append("")
        lines.append(book.description)
    return lines


def location_text(highlight: Highlight) -> str:
    parts = []
    if highlight.chapter_title:
        parts.append(highlight.chapter_title)
    if highlight.chapter_progress is not None:
        parts.append(f"{int(highlight.chapter_progress * 100)}%")
    return " · ".join(parts)


def _blockquote(text: str) -> List[str]:
    return [f"> {line}" if line.strip() else ">" for line in text.strip().splitlines()] or [">"]


def render_highlight(highlight: Highlight, config: ExportConfig) -> List[str]:
    lines = _blockquote(highlight.text)
    lines.append("")

    location = location_text(highlight)
    if location:
        lines.append(f"**{LABELS['location']}**: {location}")

    created = format_date(highlight.date_created, config.date_format)
    if created:
        lines.append(f"**{LABELS['date']}**: {created}")

    if highlight.annotation:
        lines.append("")
        lines.append(highlight.annotation)

    # Drop the blank line after the quote when nothing followed it
    if lines[-1] == "":
        lines.pop()
    return lines


def group_by_chapter(highlights: Iterable[Highlight]) -> Dict[Optional[str], List[Highlight]]:
    """Group highlights by chapter, in order of each chapter's first appearance.

    Highlights without a chapter share the ``None`` group.
    """
    groups: Dict[Optional[str], List[Highlight]] = {}
    for highlight in highlights:
        groups.setdefault(highlight.chapter_title or None, []).append(highlight)
    return groups


def render(book: Book, config: ExportConfig) -> str:
    """Render a book as a Markdown document."""
    lines = [f"# {book.title}", ""]

    metadata = _metadata_lines(book, config)
    if metadata:
        lines.extend(metadata)
        lines.append("")

    if not book.highlights:
        return "\n".join(lines)

    lines.extend([SEPARATOR, ""])

    groups = list(group_by_chapter(book.highlights).items())
    for group_index, (chapter, highlights) in enumerate(groups):
        if chapter is not None:
            lines.extend([f"## {chapter}", ""])

        last_group = group_index == len(groups) - 1
        for index, highlight in enumerate(highlights):
            lines.extend(render_highlight(highlight, config))
            if not (last_group and index == len(highlights) - 1):
                lines.extend(["", SEPARATOR, ""])

    lines.append("")
    return "\n".join(lines)


def default_export_path() -> Path:
    return Path.home() / "Documents" / "Kobo Highlights"


def validate_export_path(path: Union[str, Path]) -> bool:
    """Return True if ``path`` is a writable directory or could be created."""
    path = Path(path).expanduser()
    if path.exists():
        return path.is_dir() and os.access(path, os.W_OK)
    parent = path.parent
    while not parent.exists() and parent != parent.parent:
        parent = parent.parent
    return parent.is_dir() and os.access(parent, os.W_OK)


def prepare_destination(config: ExportConfig) -> Path:
    """Create the export directory. Raises DestinationError if impossible."""
    destination = Path(config.export_path).expanduser()
    try:
        destination.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise DestinationError(f"Cannot create export directory {destination}: {exc}") from exc
    if not destination.is_dir():
        raise DestinationError(f"Export path is not a directory: {destination}")
    return destination


def write_book(
    book: Book,
    config: ExportConfig,
    destination: Optional[Path] = None,
    filename: Optional[str] = None,
) -> Path:
    """Render and write one book.

    Raises ExportIoError when the file cannot be written or the text cannot be
    encoded as UTF-8.
    """
    destination = destination or prepare_destination(config)
    target = destination / (filename or generate_filename(book))
    try:
        atomic_write_text(target, render(book, config))
    except (OSError, UnicodeError) as exc:
        raise ExportIoError(f"Failed to write {target.name}: {exc}") from exc
    return target


def _unique_filename(name: str, used: set) -> str:
    candidate = name
    counter = 2
    while candidate.lower() in used:
        candidate = f"{name[:-3]} ({counter}).md"
        counter += 1
    used.add(candidate.lower())
    return candidate


def export_books(
    books: Iterable[Book],
    config: ExportConfig,
    cancel_event: Optional[threading.Event] = None,
) -> ExportResult:
    """Export books to Markdown files, continuing past per-file failures.

    Raises DestinationError when the export directory cannot be used at all.
    Cancellation is honoured between files.
    """
    books = list(books)
    destination = prepare_destination(config)
    result = ExportResult()
    used: set = set()

    logger.info(f"Exporting {len(books)} book(s) to {destination}")
    for idx, book in enumerate(books, start=1):
        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"Export cancelled after {len(result.written)} file(s)")
            result.cancelled = True
            break

        filename = _unique_filename(generate_filename(book), used)
        try:
            path = write_book(book, config, destination, filename)
        except ExportIoError as exc:
            logger.error(f"✗ {book.title}: {exc}")
            result.failures.append(Failure(book.content_id, exc))
            continue

        logger.debug(f"[{idx}/{len(books)}] ✓ {path.name}")
        result.written.append(path)

    logger.info(
        f"Export complete: {len(result.written)} written, {len(result.failures)} failed"
    )
    return result
