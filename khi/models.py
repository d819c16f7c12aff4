"""Pydantic models for Khi.

Books, highlights and devices cross the UI boundary with camelCase keys.
The export configuration keeps the lowercase-with-underscores vocabulary
(``date_last_read``, ``dd_month_yyyy``) on both sides.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Device(_CamelModel):
    """A mounted reader volume."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    name: str
    path: str
    is_valid: bool = False
    serial_number: Optional[str] = None

    @property
    def root(self) -> Path:
        return Path(self.path)


class Highlight(_CamelModel):
    id: str
    text: str
    annotation: Optional[str] = None
    chapter_title: Optional[str] = None
    chapter_progress: Optional[float] = None
    container_path: Optional[str] = None
    date_created: Optional[str] = None
    color: Optional[str] = None


class Book(_CamelModel):
    content_id: str
    title: str
    author: str
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    language: Optional[str] = None
    date_last_read: Optional[str] = None
    description: Optional[str] = None
    file_path: Optional[str] = None  # Relative to the device root
    cover_path: Optional[str] = None
    highlights: List[Highlight] = Field(default_factory=list)

    @property
    def highlight_count(self) -> int:
        return len(self.highlights)


class DateFormat(str, Enum):
    DD_MM_YYYY = "dd_mm_yyyy"
    DD_MONTH_YYYY = "dd_month_yyyy"
    ISO8601 = "iso8601"


class MetadataConfig(BaseModel):
    """Which book fields go into the metadata block of an export.

    Every flag is off unless the caller turns it on; the app settings
    (config.ini) carry the user's preferred selection.
    """

    model_config = ConfigDict(frozen=True)

    author: bool = False
    isbn: bool = False
    publisher: bool = False
    date_last_read: bool = False
    language: bool = False
    description: bool = False


def _default_export_path() -> str:
    return str(Path.home() / "Documents" / "Kobo Highlights")


class ExportConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    export_path: str = Field(default_factory=_default_export_path)
    metadata: MetadataConfig = Field(default_factory=MetadataConfig)
    date_format: DateFormat = DateFormat.DD_MONTH_YYYY


class ImportProgress(_CamelModel):
    current_book: str
    books_processed: int
    total_books: int
    highlights_found: int
    percentage: float
