"""Khi CLI entry point."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import typer
from pydantic import TypeAdapter, ValidationError

from khi import __version__
from khi.config import DEFAULT_CONFIG_PATH, KhiConfig, get_config, parse_date_format, write_default_config
from khi.covers import CoverCache
from khi.device import scan as scan_devices
from khi.errors import BookDumpError, DeviceNotFoundError, KhiError
from khi.export import render, validate_export_path
from khi.importer import ImportResult, export, import_books
from khi.kobo_db import read_books
from khi.logging_config import setup_logging
from khi.models import Book, Device


app = typer.Typer(add_completion=False, help="Kobo highlights exporter")
logger = logging.getLogger("khi")

BOOKS_ADAPTER = TypeAdapter(List[Book])


def _fail(message: str) -> None:
    typer.echo(f"[ERROR] {message}")
    raise typer.Exit(code=1)


def _fail_error(exc: KhiError) -> None:
    _fail(f"{exc.stage}: {exc}")


def _setup(config: KhiConfig, verbose: bool = False) -> None:
    log = config.logging
    setup_logging(
        "DEBUG" if verbose else log.level,
        log_file=log.file,
        max_size_mb=log.max_size_mb,
        backups=log.backups,
    )


def _find_device(config: KhiConfig) -> Device:
    device = scan_devices(config.device.mount_roots)
    if device is None:
        roots = ", ".join(str(p) for p in config.device.mount_roots)
        raise DeviceNotFoundError(f"No Kobo found under {roots}. Is it connected?")
    return device


def _import(config: KhiConfig) -> ImportResult:
    device = _find_device(config)
    logger.info(f"Using {device.name} at {device.path}")
    return import_books(device, config.cache_dir, workers=config.covers.workers)


def _load_books(config: KhiConfig, from_json: Optional[Path]) -> List[Book]:
    if from_json is None:
        return _import(config).books
    try:
        return BOOKS_ADAPTER.validate_json(from_json.read_bytes())
    except OSError as exc:
        raise BookDumpError(f"Cannot read {from_json}: {exc}") from exc
    except ValidationError as exc:
        raise BookDumpError(f"{from_json} is not a Khi book dump: {exc.error_count()} error(s)") from exc


def _match_books(books: List[Book], patterns: Optional[List[str]]) -> Optional[List[str]]:
    """Content ids of books whose id equals, or title contains, one of ``patterns``."""
    if not patterns:
        return None
    lowered = [p.casefold() for p in patterns]
    return [
        book.content_id
        for book in books
        if book.content_id in patterns or any(p in book.title.casefold() for p in lowered)
    ]


@app.command()
def init(
    export_path: Optional[Path] = typer.Option(None, "--export-path", help="Folder for Markdown files"),
    mount_root: Optional[List[Path]] = typer.Option(
        None, "--mount-root", help="Where volumes are mounted (repeatable)"
    ),
) -> None:
    """Initialize config.ini with default settings."""
    path = write_default_config(
        DEFAULT_CONFIG_PATH,
        export_path=export_path.expanduser() if export_path else None,
        mount_roots=tuple(mount_root) if mount_root else None,
    )
    typer.echo(f"[OK] Config created at {path}")


@app.command()
def scan(verbose: bool = typer.Option(False, "--verbose", "-v")) -> None:
    """Look for a connected Kobo."""
    config = get_config()
    _setup(config, verbose)

    try:
        device = _find_device(config)
    except DeviceNotFoundError as exc:
        _fail_error(exc)

    typer.echo(f"✓ Found {device.name} at {device.path}")
    if device.serial_number:
        typer.echo(f"  Serial number: {device.serial_number}")


@app.command("import")
def import_command(
    json_path: Optional[Path] = typer.Option(None, "--json", help="Also dump the books as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Read books, highlights and covers from the connected Kobo."""
    config = get_config()
    _setup(config, verbose)

    try:
        result = _import(config)
    except KhiError as exc:
        _fail_error(exc)

    with_highlights = [book for book in result.books if book.highlights]
    typer.echo(
        "✓ Import completed: "
        f"{len(result.books)} books, "
        f"{len(with_highlights)} with highlights, "
        f"{result.highlight_count} highlights, "
        f"{len(result.failures)} skipped."
    )
    for book in with_highlights:
        typer.echo(f"  {book.title} - {book.author} ({book.highlight_count})")
    for failure in result.failures:
        typer.echo(f"  ✗ [{failure.error.stage}] {failure.key}: {failure.error}")

    if json_path is not None:
        json_path.write_bytes(BOOKS_ADAPTER.dump_json(result.books, by_alias=True, indent=2))
        typer.echo(f"[OK] Books written to {json_path}")


@app.command("export")
def export_command(
    dest: Optional[Path] = typer.Option(None, "--dest", help="Override the export folder"),
    book: Optional[List[str]] = typer.Option(
        None, "--book", help="Content id or title fragment (repeatable)"
    ),
    date_format: Optional[str] = typer.Option(
        None, "--date-format", help="dd_mm_yyyy, dd_month_yyyy or iso8601"
    ),
    from_json: Optional[Path] = typer.Option(None, "--from-json", help="Books dumped by 'import --json'"),
    include_empty: bool = typer.Option(False, "--include-empty", help="Also export books without highlights"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Export highlights as one Markdown file per book."""
    config = get_config()
    _setup(config, verbose)

    export_config = config.export_config(
        export_path=dest.expanduser() if dest else None,
        date_format=parse_date_format(date_format) if date_format else None,
    )
    if not validate_export_path(export_config.export_path):
        _fail(f"Export folder is not writable: {export_config.export_path}")

    try:
        books = _load_books(config, from_json)
        if not include_empty:
            books = [b for b in books if b.highlights]
        selected = _match_books(books, book)
        if selected is not None and not selected:
            _fail(f"No book matches {', '.join(book)}")
        result = export(books, export_config, selected=selected)
    except KhiError as exc:
        _fail_error(exc)

    typer.echo(
        f"✓ Export completed: {len(result.written)} files written, "
        f"{len(result.failures)} failed, to {export_config.export_path}"
    )
    for failure in result.failures:
        typer.echo(f"  ✗ [{failure.error.stage}] {failure.key}: {failure.error}")
    if result.failures:
        raise typer.Exit(code=1)


@app.command()
def preview(
    book: str = typer.Argument(..., help="Content id or title fragment"),
    date_format: Optional[str] = typer.Option(None, "--date-format"),
    from_json: Optional[Path] = typer.Option(None, "--from-json"),
) -> None:
    """Print the Markdown of one book without writing it."""
    config = get_config()
    _setup(config)

    try:
        if from_json is None:
            # Covers are not needed for a preview
            books = read_books(_find_device(config)).books
        else:
            books = _load_books(config, from_json)
    except KhiError as exc:
        _fail_error(exc)

    selected = _match_books(books, [book]) or []
    if not selected:
        _fail(f"No book matches {book!r}")

    chosen = next(b for b in books if b.content_id == selected[0])
    export_config = config.export_config(
        date_format=parse_date_format(date_format) if date_format else None
    )
    typer.echo(render(chosen, export_config))


@app.command()
def covers(
    clear: bool = typer.Option(False, "--clear", help="Delete every cached cover"),
    cleanup: bool = typer.Option(False, "--cleanup", help="Delete covers of books no longer on the Kobo"),
) -> None:
    """Manage the cover cache."""
    config = get_config()
    _setup(config)
    cache = CoverCache(config.cache_dir)

    if clear:
        deleted = cache.clear()
        typer.echo(f"[INFO] Removed {deleted} cached covers")
        return

    if cleanup:
        try:
            books = read_books(_find_device(config)).books
        except KhiError as exc:
            _fail_error(exc)
        deleted = cache.cleanup_orphans(b.content_id for b in books)
        typer.echo(f"[INFO] Removed {deleted} orphaned covers")
        return

    count = len([p for p in config.cache_dir.glob("*.*") if not p.name.startswith(".")]) if config.cache_dir.is_dir() else 0
    typer.echo(f"Cover cache: {config.cache_dir} ({count} files)")


@app.command()
def version() -> None:
    """Show the Khi version."""
    typer.echo(f"khi {__version__}")


if __name__ == "__main__":
    app()
