"""Utility functions for Khi.

Paths of book files are stored relative to the device root, the same way the
device itself records them under its onboard mount point. This lets one
database be read from whatever path the volume happens to be mounted at.
"""

from __future__ import annotations

import hashlib
import os
import tempfile
from pathlib import Path
from typing import Optional

from .logging_config import get_logger

logger = get_logger(__name__)

# Where the reader mounts its own storage; ContentIDs of sideloaded books use it
ONBOARD_PREFIXES = ("file:///mnt/onboard/", "/mnt/onboard/")


def short_path(path: Path) -> str:
    """Return abbreviated path showing only parent folder + filename.

    Example: /Volumes/KOBOeReader/Books/Sapiens.epub -> Books/Sapiens.epub
    """
    return f"{path.parent.name}/{path.name}"


def to_device_relative(content_id: str) -> Optional[str]:
    """Convert a ContentID URI to a path relative to the device root.

    Returns None for entries that are not files on the device (store books).

    Example:
        >>> to_device_relative("file:///mnt/onboard/Books/Sapiens.epub")
        "Books/Sapiens.epub"
    """
    for prefix in ONBOARD_PREFIXES:
        if content_id.startswith(prefix):
            relative = content_id[len(prefix):].lstrip("/")
            return relative or None
    return None


def to_absolute(relative_path: str, device_root: Path) -> Path:
    """Convert a device-relative path to an absolute path on the live mount.

    Example:
        >>> to_absolute("Books/Sapiens.epub", Path("/Volumes/KOBOeReader"))
        Path("/Volumes/KOBOeReader/Books/Sapiens.epub")
    """
    return device_root / Path(*relative_path.split("/"))


def cache_key(identifier: str) -> str:
    """Return a filesystem-safe key for a stable identifier."""
    return hashlib.sha256(identifier.encode("utf-8")).hexdigest()[:16]


def atomic_write_bytes(path: Path, data: bytes) -> Path:
    """Write data next to ``path`` and rename it into place.

    A reader never sees a partially written file at ``path``. The temporary
    file is removed when writing fails.
    """
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp"
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        raise
    return path


def atomic_write_text(path: Path, text: str, encoding: str = "utf-8") -> Path:
    return atomic_write_bytes(path, text.encode(encoding))
