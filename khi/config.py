"""Config management for Khi.

Reads `config.ini` from the data directory (beside main.py by default).
When running as PyInstaller onefile, PROJECT_ROOT is the directory containing the executable.
"""

from __future__ import annotations

import configparser
import dataclasses
import os
import pathlib
import sys
from typing import Optional

from .logging_config import LOG_FILE_NAME, get_logger, resolve_log_file
from .models import DateFormat, ExportConfig, MetadataConfig

logger = get_logger(__name__)


def _get_project_root() -> pathlib.Path:
    if getattr(sys, "frozen", False):
        return pathlib.Path(sys.executable).resolve().parent
    return pathlib.Path(__file__).resolve().parents[1]


PROJECT_ROOT = _get_project_root()

# DATA_DIR holds all local state (config.ini, khi.log, covers/).
DATA_DIR = pathlib.Path(os.environ.get("KHI_DATA_DIR", str(PROJECT_ROOT)))
DEFAULT_CONFIG_PATH = DATA_DIR / "config.ini"

# Metadata selection a fresh install starts with
DEFAULT_METADATA = MetadataConfig(
    author=True,
    isbn=True,
    publisher=True,
    date_last_read=True,
    language=True,
    description=False,
)
METADATA_KEYS = ("author", "isbn", "publisher", "date_last_read", "language", "description")


def default_mount_roots() -> tuple[pathlib.Path, ...]:
    """Directories whose children are mounted volumes on this platform."""
    if sys.platform == "darwin":
        return (pathlib.Path("/Volumes"),)
    if sys.platform.startswith("win"):
        return tuple(pathlib.Path(f"{letter}:\\") for letter in "DEFGHIJKLMNOPQRSTUVWXYZ")
    user = os.environ.get("USER", "")
    roots = []
    if user:
        roots.append(pathlib.Path("/media") / user)
        roots.append(pathlib.Path("/run/media") / user)
    roots.extend([pathlib.Path("/media"), pathlib.Path("/mnt")])
    return tuple(roots)


@dataclasses.dataclass
class DeviceConfig:
    mount_roots: tuple[pathlib.Path, ...] = dataclasses.field(
        default_factory=default_mount_roots
    )


@dataclasses.dataclass
class CoversConfig:
    cache_dir: pathlib.Path = DATA_DIR / "covers"
    workers: int = 4


@dataclasses.dataclass
class ExportSection:
    path: pathlib.Path = pathlib.Path.home() / "Documents" / "Kobo Highlights"
    date_format: DateFormat = DateFormat.DD_MONTH_YYYY
    metadata: MetadataConfig = dataclasses.field(default_factory=lambda: DEFAULT_METADATA)


@dataclasses.dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[pathlib.Path] = DATA_DIR / LOG_FILE_NAME  # None disables the log file
    max_size_mb: int = 10
    backups: int = 5


@dataclasses.dataclass
class KhiConfig:
    device: DeviceConfig
    covers: CoversConfig
    export: ExportSection
    logging: LoggingConfig

    @property
    def cache_dir(self) -> pathlib.Path:
        return self.covers.cache_dir

    def export_config(
        self,
        export_path: Optional[pathlib.Path] = None,
        date_format: Optional[DateFormat] = None,
    ) -> ExportConfig:
        """Build the export value object, optionally overriding path/format."""
        return ExportConfig(
            export_path=str(export_path or self.export.path),
            metadata=self.export.metadata,
            date_format=date_format or self.export.date_format,
        )


def default_config() -> KhiConfig:
    return KhiConfig(
        device=DeviceConfig(),
        covers=CoversConfig(),
        export=ExportSection(),
        logging=LoggingConfig(),
    )


def _parse_bool(value: str, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_date_format(value: Optional[str]) -> DateFormat:
    """Map a config value to a DateFormat, falling back to dd_month_yyyy."""
    if not value:
        return DateFormat.DD_MONTH_YYYY
    try:
        return DateFormat(value.strip().lower())
    except ValueError:
        logger.warning(f"Unknown date_format {value!r}, using dd_month_yyyy")
        return DateFormat.DD_MONTH_YYYY


def _split_paths(value: str) -> tuple[pathlib.Path, ...]:
    return tuple(
        pathlib.Path(p.strip()).expanduser()
        for p in value.split(",")
        if p.strip()
    )


def load_config(config_path: Optional[pathlib.Path] = None) -> KhiConfig:
    """Load configuration from config.ini.

    Defaults to `config.ini` in the data directory.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    parser = configparser.ConfigParser()
    parser.read(path, encoding="utf-8")

    defaults = default_config()

    mount_roots = defaults.device.mount_roots
    raw_roots = parser.get("device", "mount_roots", fallback="").strip()
    if raw_roots:
        mount_roots = _split_paths(raw_roots)

    covers = CoversConfig(
        cache_dir=pathlib.Path(
            parser.get("covers", "cache_dir", fallback=str(defaults.covers.cache_dir))
        ).expanduser(),
        workers=max(1, parser.getint("covers", "workers", fallback=defaults.covers.workers)),
    )

    metadata = MetadataConfig(
        **{
            key: _parse_bool(
                parser.get("export", key, fallback=None),
                getattr(defaults.export.metadata, key),
            )
            for key in METADATA_KEYS
        }
    )
    export = ExportSection(
        path=pathlib.Path(
            parser.get("export", "path", fallback=str(defaults.export.path))
        ).expanduser(),
        date_format=parse_date_format(parser.get("export", "date_format", fallback=None)),
        metadata=metadata,
    )

    log_cfg = LoggingConfig(
        level=parser.get("logging", "level", fallback=defaults.logging.level).strip().upper(),
        file=resolve_log_file(parser.get("logging", "file", fallback=None)),
        max_size_mb=parser.getint("logging", "max_size_mb", fallback=defaults.logging.max_size_mb),
        backups=parser.getint("logging", "backups", fallback=defaults.logging.backups),
    )

    return KhiConfig(
        device=DeviceConfig(mount_roots=mount_roots),
        covers=covers,
        export=export,
        logging=log_cfg,
    )


def write_default_config(
    config_path: Optional[pathlib.Path] = None,
    export_path: Optional[pathlib.Path] = None,
    mount_roots: Optional[tuple[pathlib.Path, ...]] = None,
) -> pathlib.Path:
    """Write a config.ini populated with the defaults."""
    path = config_path or DEFAULT_CONFIG_PATH
    defaults = default_config()

    parser = configparser.ConfigParser()
    parser["device"] = {
        "mount_roots": ",".join(str(p) for p in (mount_roots or defaults.device.mount_roots)),
    }
    parser["covers"] = {
        "cache_dir": str(defaults.covers.cache_dir),
        "workers": str(defaults.covers.workers),
    }
    export_section = {
        "path": str(export_path or defaults.export.path),
        "date_format": defaults.export.date_format.value,
    }
    for key in METADATA_KEYS:
        export_section[key] = str(getattr(defaults.export.metadata, key)).lower()
    parser["export"] = export_section
    parser["logging"] = {
        "level": defaults.logging.level,
        "file": LOG_FILE_NAME,
        "max_size_mb": str(defaults.logging.max_size_mb),
        "backups": str(defaults.logging.backups),
    }

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        parser.write(handle)
    return path


_cached_config: Optional[KhiConfig] = None


def get_config() -> KhiConfig:
    """Return the cached config. Loads from disk on first call, defaults if absent."""
    global _cached_config
    if _cached_config is None:
        try:
            _cached_config = load_config()
        except FileNotFoundError:
            logger.debug("No config.ini found, using defaults")
            _cached_config = default_config()
    return _cached_config


def reset_config_cache() -> None:
    """Clear the cached config (useful for tests)."""
    global _cached_config
    _cached_config = None
