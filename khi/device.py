"""Kobo device discovery.

Looks for a mounted volume carrying `.kobo/KoboReader.sqlite`. Scanning is
read-only and never raises: an external poller calls `scan()` repeatedly and
interprets `None` as "no device connected".
"""

from __future__ import annotations

import os
import sqlite3
from pathlib import Path
from typing import Iterable, Iterator, Optional

from .config import default_mount_roots
from .logging_config import get_logger
from .models import Device

logger = get_logger(__name__)

KOBO_DIR = ".kobo"
DATABASE_NAME = "KoboReader.sqlite"
VERSION_FILE = "version"


def read_only_uri(path: Path) -> str:
    """SQLite URI that opens ``path`` read-only."""
    return f"{path.resolve().as_uri()}?mode=ro"


def validate_database(sqlite_path: Path) -> bool:
    """Return True if the SQLite file opens read-only and has a readable schema."""
    try:
        connection = sqlite3.connect(read_only_uri(sqlite_path), uri=True)
    except (sqlite3.Error, OSError, ValueError) as exc:
        logger.debug(f"Cannot open {sqlite_path}: {exc}")
        return False
    try:
        connection.execute("SELECT count(*) FROM sqlite_master").fetchone()
        return True
    except sqlite3.Error as exc:
        logger.debug(f"Unreadable database {sqlite_path}: {exc}")
        return False
    finally:
        connection.close()


def read_serial_number(kobo_dir: Path) -> Optional[str]:
    """Read the serial number from `.kobo/version`.

    The file is a comma-separated line whose first field is the serial.
    """
    version_path = kobo_dir / VERSION_FILE
    try:
        content = version_path.read_text(encoding="utf-8", errors="replace").strip()
    except OSError:
        return None
    if not content:
        return None
    serial = content.split(",", 1)[0].strip()
    return serial or None


def examine_volume(volume_path: Path) -> Optional[Device]:
    """Inspect one mounted volume.

    Returns a Device when the volume carries a `.kobo` directory, with
    ``is_valid`` telling whether its content database is usable, or None.
    """
    kobo_dir = volume_path / KOBO_DIR
    try:
        if not kobo_dir.is_dir():
            return None
    except OSError:
        return None

    sqlite_path = kobo_dir / DATABASE_NAME
    is_valid = sqlite_path.is_file() and validate_database(sqlite_path)

    return Device(
        name=volume_path.name or str(volume_path),
        path=str(volume_path),
        is_valid=is_valid,
        serial_number=read_serial_number(kobo_dir),
    )


def _iter_volumes(mount_roots: Iterable[Path]) -> Iterator[Path]:
    for root in mount_roots:
        # A mount root may itself be the device (e.g. a drive letter)
        yield root
        try:
            with os.scandir(root) as entries:
                children = sorted(entry.path for entry in entries if entry.is_dir())
        except OSError:
            continue
        for child in children:
            yield Path(child)


def scan(mount_roots: Optional[Iterable[Path]] = None) -> Optional[Device]:
    """Return the first mounted Kobo with a readable database, or None."""
    roots = tuple(mount_roots) if mount_roots is not None else default_mount_roots()
    try:
        for volume in _iter_volumes(roots):
            try:
                device = examine_volume(volume)
            except OSError as exc:
                logger.debug(f"Cannot inspect {volume}: {exc}")
                continue
            if device is None:
                continue
            if device.is_valid:
                logger.debug(f"Found Kobo at {volume}")
                return device
            logger.debug(f"Skipping {volume}: .kobo present but database unreadable")
    except OSError as exc:
        logger.debug(f"Volume enumeration failed: {exc}")
    return None


def database_path(device: Device) -> Optional[Path]:
    """Return the content database path of a device, if the file exists."""
    sqlite_path = device.root / KOBO_DIR / DATABASE_NAME
    return sqlite_path if sqlite_path.is_file() else None
