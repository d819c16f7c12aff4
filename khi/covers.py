"""Cover extraction for Khi.

Extracts the declared cover image of an EPUB and stores it under
`{cache_dir}/{key}.{ext}`, where `key` is derived from the book's ContentID.
The cache file carries the EPUB's modification time, so an unchanged book is
never reopened and a replaced book is extracted again.
"""

from __future__ import annotations

import os
import zipfile
import zlib
from io import BytesIO
from pathlib import Path
from typing import Iterable, Optional

from PIL import Image, UnidentifiedImageError

from .archive import open_epub
from .errors import CoverArchiveError, CoverNotDeclaredError
from .logging_config import get_logger
from .opf import locate_cover
from .utils import atomic_write_bytes, cache_key, short_path

logger = get_logger(__name__)

# Pillow format name -> file extension
FORMAT_EXTENSIONS = {
    "JPEG": "jpg",
    "PNG": "png",
    "GIF": "gif",
    "WEBP": "webp",
    "BMP": "bmp",
    "TIFF": "tif",
}
SVG_MEDIA_TYPE = "image/svg+xml"


def image_extension(data: bytes, media_type: Optional[str] = None) -> Optional[str]:
    """Return the file extension for image bytes, or None if they are not an image."""
    if media_type == SVG_MEDIA_TYPE:
        return "svg" if b"<svg" in data[:4096] else None
    try:
        with Image.open(BytesIO(data)) as im:
            im.verify()
            fmt = im.format
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return None
    return FORMAT_EXTENSIONS.get(fmt or "", (fmt or "img").lower())


def _read_cover_bytes(epub_path: Path) -> tuple[bytes, Optional[str]]:
    """Open the EPUB once and return (cover bytes, media type).

    Raises CoverArchiveError if the file is not a zip archive or a member
    cannot be decompressed, and
    CoverNotDeclaredError if no cover is declared or it is missing.
    """
    with open_epub(epub_path) as archive:
        try:
            location = locate_cover(archive)
            if location is None:
                raise CoverNotDeclaredError(f"{epub_path.name} declares no cover image")
            data = archive.read(location.path)
        except KeyError as exc:
            raise CoverNotDeclaredError(
                f"{epub_path.name}: declared cover {location.path} is missing"
            ) from exc
        except (zipfile.BadZipFile, zlib.error, EOFError, NotImplementedError, RuntimeError) as exc:
            # Damaged or truncated member, unsupported compression or encryption
            raise CoverArchiveError(f"{epub_path.name}: {exc}") from exc
    logger.debug(f"{epub_path.name}: cover {location.path} (by {location.declared_by})")
    return data, location.media_type


class CoverCache:
    """Cover images extracted from EPUBs, one file per book."""

    def __init__(self, cache_dir: Path):
        self.cache_dir = Path(cache_dir)

    def cached_path(self, key: str) -> Optional[Path]:
        """Return the cache file for ``key`` if one exists."""
        if not self.cache_dir.is_dir():
            return None
        matches = sorted(self.cache_dir.glob(f"{key}.*"))
        return matches[0] if matches else None

    def extract(self, epub_path: Path, key: str) -> Optional[Path]:
        """Extract the cover of ``epub_path`` into the cache.

        Returns the cached image path, or None when the book has no usable
        cover. Raises CoverArchiveError only when the EPUB is not a zip or
        one of its members is damaged.
        """
        try:
            source_mtime_ns = epub_path.stat().st_mtime_ns
        except OSError as exc:
            logger.warning(f"Cannot read {short_path(epub_path)}: {exc}")
            return None

        cached = self.cached_path(key)
        if cached is not None:
            try:
                if cached.stat().st_mtime_ns == source_mtime_ns:
                    return cached
            except FileNotFoundError:
                cached = None

        try:
            data, media_type = _read_cover_bytes(epub_path)
        except CoverNotDeclaredError as exc:
            logger.debug(str(exc))
            return None
        except OSError as exc:
            logger.warning(f"Unable to read EPUB {short_path(epub_path)}: {exc}")
            return None

        extension = image_extension(data, media_type)
        if extension is None:
            logger.warning(f"{short_path(epub_path)}: declared cover is not an image")
            return None

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        target = self.cache_dir / f"{key}.{extension}"
        atomic_write_bytes(target, data)
        os.utime(target, ns=(source_mtime_ns, source_mtime_ns))

        # The format may have changed with the new edition
        if cached is not None and cached != target:
            cached.unlink(missing_ok=True)

        logger.debug(f"Cached cover for {short_path(epub_path)} -> {target.name}")
        return target

    def clear(self) -> int:
        """Delete every cached cover. Returns count of deleted files."""
        if not self.cache_dir.exists():
            return 0

        deleted = 0
        for path in self.cache_dir.iterdir():
            if path.is_file():
                try:
                    path.unlink()
                    deleted += 1
                except OSError as exc:
                    logger.error(f"Failed to delete cover {path.name}: {exc}")
        return deleted

    def cleanup_orphans(self, content_ids: Iterable[str]) -> int:
        """Remove cached covers that belong to none of ``content_ids``.

        Returns count of deleted orphaned covers.
        """
        if not self.cache_dir.exists():
            return 0

        valid_keys = {cache_key(content_id) for content_id in content_ids}
        deleted = 0
        for path in self.cache_dir.iterdir():
            if not path.is_file() or path.name.startswith("."):
                continue
            if path.stem not in valid_keys:
                try:
                    path.unlink()
                    deleted += 1
                except OSError as exc:
                    logger.error(f"Failed to process cover {path.name}: {exc}")
        return deleted


def extract_cover(
    epub_path: Path,
    cache_dir: Path,
    content_id: Optional[str] = None,
) -> Optional[Path]:
    """Extract (or reuse) the cached cover of one EPUB.

    The cache file is keyed by ``content_id``; without one the EPUB's own path
    is used as the identifier.
    """
    identifier = content_id or str(Path(epub_path).resolve())
    return CoverCache(cache_dir).extract(Path(epub_path), cache_key(identifier))
