"""Import orchestration for Khi.

Reads every book from the device database, then attaches cached covers.
Cover problems never fail an import: the book is kept without a cover and
the problem is reported in ``ImportResult.failures``.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from .covers import CoverCache
from .device import database_path
from .errors import CoverError, DeviceError, Failure
from .export import ExportResult, export_books
from .kobo_db import read_books
from .logging_config import get_logger
from .models import Book, Device, ExportConfig, ImportProgress
from .utils import cache_key, short_path, to_absolute

logger = get_logger(__name__)

ProgressCallback = Callable[[ImportProgress], None]


@dataclass
class ImportResult:
    books: List[Book] = field(default_factory=list)
    failures: List[Failure] = field(default_factory=list)
    cancelled: bool = False

    @property
    def highlight_count(self) -> int:
        return sum(book.highlight_count for book in self.books)


class _Progress:
    """Thread-safe progress counter feeding the optional callback."""

    def __init__(self, total: int, callback: Optional[ProgressCallback]):
        self.total = total
        self.callback = callback
        self.processed = 0
        self.highlights = 0
        self._lock = threading.Lock()

    def advance(self, book: Book) -> None:
        with self._lock:
            self.processed += 1
            self.highlights += book.highlight_count
            if self.callback is None:
                return
            self.callback(
                ImportProgress(
                    current_book=book.title,
                    books_processed=self.processed,
                    total_books=self.total,
                    highlights_found=self.highlights,
                    percentage=round(self.processed * 100.0 / self.total, 1) if self.total else 100.0,
                )
            )


def _attach_cover(
    book: Book,
    device_root: Path,
    cache: CoverCache,
) -> tuple[Book, Optional[Failure]]:
    """Return the book with its cover attached, plus the failure if extraction broke."""
    if not book.file_path:
        # Store books have no file on the device
        return book, None

    epub_path = to_absolute(book.file_path, device_root)
    try:
        cover = cache.extract(epub_path, cache_key(book.content_id))
    except (CoverError, OSError) as exc:
        logger.warning(f"✗ {short_path(epub_path)} - cover skipped: {exc}")
        error = exc if isinstance(exc, CoverError) else CoverError(str(exc))
        return book, Failure(book.content_id, error)
    except Exception as exc:
        logger.exception(f"✗ {short_path(epub_path)} - unexpected cover error")
        return book, Failure(book.content_id, CoverError(f"{type(exc).__name__}: {exc}"))

    if cover is None:
        return book, None
    return book.model_copy(update={"cover_path": str(cover)}), None


def import_books(
    device: Device,
    cache_dir: Path,
    *,
    cancel_event: Optional[threading.Event] = None,
    on_progress: Optional[ProgressCallback] = None,
    workers: int = 4,
) -> ImportResult:
    """Read books and highlights from ``device`` and cache their covers.

    :param device: A device returned by ``scan()``.
    :param cache_dir: Directory for cached cover images.
    :param cancel_event: Set it to stop before the next book is started.
    :param on_progress: Called after each book with an ImportProgress.
    :param workers: Cover extraction threads; 1 runs sequentially.
    :return: ImportResult with books ordered by title, then content id.
    """
    if database_path(device) is None:
        raise DeviceError(f"No content database on {device.name} ({device.path})")

    books, failures = read_books(device)
    cache = CoverCache(cache_dir)
    progress = _Progress(len(books), on_progress)
    logger.info(f"[IMPORT] {device.name}: {len(books)} book(s)")

    def process(book: Book) -> Optional[tuple[Book, Optional[Failure]]]:
        if cancel_event is not None and cancel_event.is_set():
            return None
        outcome = _attach_cover(book, device.root, cache)
        progress.advance(book)
        return outcome

    if workers > 1 and len(books) > 1:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="khi-cover") as pool:
            outcomes = list(pool.map(process, books))
    else:
        outcomes = [process(book) for book in books]

    result = ImportResult(failures=list(failures))
    for outcome in outcomes:
        if outcome is None:
            result.cancelled = True
            continue
        book, failure = outcome
        result.books.append(book)
        if failure is not None:
            result.failures.append(failure)

    if result.cancelled:
        logger.info(f"Import cancelled after {len(result.books)} of {len(books)} book(s)")
    logger.info(
        f"Import complete: {len(result.books)} books, {result.highlight_count} highlights, "
        f"{len(result.failures)} failure(s)"
    )
    return result


def select_books(books: Iterable[Book], selected: Optional[Iterable[str]]) -> List[Book]:
    """Keep the books whose content id is in ``selected`` (all when None)."""
    books = list(books)
    if selected is None:
        return books
    wanted = set(selected)
    return [book for book in books if book.content_id in wanted]


def export(
    books: Iterable[Book],
    config: ExportConfig,
    *,
    selected: Optional[Iterable[str]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> ExportResult:
    """Export the selected books (all when ``selected`` is None)."""
    return export_books(select_books(books, selected), config, cancel_event=cancel_event)
