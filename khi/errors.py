"""Exceptions raised by the Khi pipeline.

Errors that invalidate a whole operation (no database, unwritable destination)
propagate to the caller. Errors scoped to one row, one cover or one exported
file are caught by the batch operations and reported as ``Failure`` entries.
"""

from typing import NamedTuple


class KhiError(Exception):
    """Base exception for all Khi errors."""

    stage = "khi"


class DeviceNotFoundError(KhiError):
    """No mounted Kobo was found."""

    stage = "device"


class DeviceError(KhiError):
    """The device is mounted but its content database is missing."""

    stage = "device"


class DatabaseError(KhiError):
    """The content database cannot be opened or lacks the expected tables."""

    stage = "database"


class RowParseError(KhiError):
    """A single database row could not be mapped and was skipped."""

    stage = "database"

    def __init__(self, table: str, key: object, reason: str):
        super().__init__(f"{table} row {key!r}: {reason}")
        self.table = table
        self.key = key
        self.reason = reason


class BookDumpError(KhiError):
    """A JSON book dump cannot be read back."""

    stage = "input"


class CoverError(KhiError):
    """Base exception for cover extraction."""

    stage = "cover"


class CoverArchiveError(CoverError):
    """The EPUB is not a readable zip archive."""


class CoverNotDeclaredError(CoverError):
    """The package document declares no cover image."""


class ExportError(KhiError):
    """Base exception for Markdown export."""

    stage = "destination"


class DestinationError(ExportError):
    """The export directory cannot be created or is not a directory."""


class ExportIoError(ExportError):
    """Writing one exported file failed."""


class Failure(NamedTuple):
    """One item a batch operation skipped, keyed by row id, book id or file name."""

    key: str
    error: KhiError
