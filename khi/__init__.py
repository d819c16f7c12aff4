"""Khi core package.

Modules:
- device: locate a mounted Kobo and validate its content database
- kobo_db: read books and highlights from KoboReader.sqlite
- archive, opf: open EPUBs and find their declared cover image
- covers: extract and cache EPUB cover images
- export: Markdown rendering and file export
- importer: compose scan/read/covers/export into batch operations
- config: INI parsing and config object
"""

__version__ = "0.1.0"
