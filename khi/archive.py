"""EPUB archive access for Khi.

An EPUB is a zip file. This wraps `zipfile.ZipFile` with the few reads the
cover extractor needs and turns "not a zip at all" into `CoverArchiveError`.
"""

from __future__ import annotations

import zipfile
from pathlib import Path
from typing import List, Optional

from .errors import CoverArchiveError


IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg"}


def is_image(filename: str) -> bool:
    return Path(filename).suffix.lower() in IMAGE_EXTENSIONS


class EpubArchive:
    def __init__(self, path: Path):
        self.path = path
        try:
            self.zf = zipfile.ZipFile(path, mode="r")
        except (zipfile.BadZipFile, zipfile.LargeZipFile) as exc:
            raise CoverArchiveError(f"{path.name} is not a readable EPUB: {exc}") from exc
        # Member names are case-sensitive, but some books reference them sloppily
        self._names = set(self.zf.namelist())
        self._by_lower = {name.lower(): name for name in self._names}

    def list_names(self) -> List[str]:
        return self.zf.namelist()

    def resolve(self, name: str) -> Optional[str]:
        """Return the stored member name matching ``name``, or None."""
        if name in self._names:
            return name
        return self._by_lower.get(name.lower())

    def read(self, name: str) -> bytes:
        member = self.resolve(name)
        if member is None:
            raise KeyError(f"There is no item named {name!r} in {self.path.name}")
        return self.zf.read(member)

    def close(self) -> None:
        self.zf.close()

    def __enter__(self) -> "EpubArchive":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def open_epub(path: Path) -> EpubArchive:
    """Open an EPUB for reading.

    Raises FileNotFoundError/PermissionError when the file cannot be read and
    CoverArchiveError when it is not a zip archive.
    """
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    return EpubArchive(path)
