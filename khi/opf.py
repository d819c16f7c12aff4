"""EPUB package parsing for Khi.

Finds the cover image declared by an EPUB:
`META-INF/container.xml` names the OPF package document, whose manifest and
metadata say which item is the cover. Three declarations are understood, in
this order:

1. EPUB 3: a manifest item with `properties="cover-image"`.
2. EPUB 2: `<meta name="cover" content="ITEM-ID"/>` in the metadata.
3. Legacy guide: `<reference type="cover" href="..."/>`, pointing either at
   an image or at an XHTML page whose first image is the cover.

A book declaring none of these has no cover.
"""

from __future__ import annotations

import mimetypes
import posixpath
import xml.etree.ElementTree as ET
from typing import List, Optional
from urllib.parse import unquote

from bs4 import BeautifulSoup
from pydantic import BaseModel

from .archive import EpubArchive, is_image
from .logging_config import get_logger

logger = get_logger(__name__)

CONTAINER_PATH = "META-INF/container.xml"


class ManifestItem(BaseModel):
    id: str
    path: str  # Full path inside the archive
    media_type: Optional[str] = None
    properties: List[str] = []

    @property
    def is_image(self) -> bool:
        if self.media_type:
            return self.media_type.startswith("image/")
        return is_image(self.path)


class PackageDocument(BaseModel):
    path: str
    manifest: List[ManifestItem] = []
    cover_meta: Optional[str] = None
    guide_cover: Optional[str] = None  # Full path inside the archive

    def item_by_id(self, item_id: str) -> Optional[ManifestItem]:
        return next((item for item in self.manifest if item.id == item_id), None)

    def item_by_path(self, path: str) -> Optional[ManifestItem]:
        lowered = path.lower()
        return next((item for item in self.manifest if item.path.lower() == lowered), None)


class CoverLocation(BaseModel):
    path: str
    media_type: Optional[str] = None
    declared_by: str


def _local_name(tag: str) -> str:
    """Return tag without namespace (e.g. '{http://...}item' -> 'item')."""
    return tag.split("}")[-1].lower() if "}" in tag else tag.lower()


def _attr(elem: ET.Element, name: str) -> Optional[str]:
    """Attribute lookup ignoring namespace prefixes and case."""
    for key, value in elem.attrib.items():
        if _local_name(key) == name:
            value = value.strip()
            return value or None
    return None


def resolve_href(base_path: str, href: str) -> Optional[str]:
    """Resolve ``href`` relative to the archive member ``base_path``.

    Returns None when the reference is external or escapes the archive.
    """
    href = unquote(href.split("#", 1)[0]).strip()
    if not href or "://" in href or href.startswith("data:"):
        return None
    if href.startswith("/"):
        joined = href.lstrip("/")
    else:
        joined = posixpath.join(posixpath.dirname(base_path), href)
    resolved = posixpath.normpath(joined)
    if resolved.startswith("..") or resolved == ".":
        return None
    return resolved


def parse_container(xml_bytes: bytes) -> Optional[str]:
    """Return the path of the first package document in container.xml."""
    try:
        root = ET.fromstring(xml_bytes)
    except ET.ParseError:
        return None

    for elem in root.iter():
        if _local_name(elem.tag) == "rootfile":
            full_path = _attr(elem, "full-path")
            if full_path:
                return unquote(full_path).lstrip("/")
    return None


def parse_package(xml_bytes: bytes, opf_path: str) -> Optional[PackageDocument]:
    """Parse the OPF package document. Returns None on malformed XML."""
    try:
        root = ET.fromstring(xml_bytes)
    except ET.ParseError as exc:
        logger.debug(f"Malformed package document {opf_path}: {exc}")
        return None

    package = PackageDocument(path=opf_path)
    for elem in root.iter():
        name = _local_name(elem.tag)
        if name == "item":
            item_id = _attr(elem, "id")
            href = _attr(elem, "href")
            path = resolve_href(opf_path, href) if href else None
            if not item_id or not path:
                continue
            package.manifest.append(
                ManifestItem(
                    id=item_id,
                    path=path,
                    media_type=_attr(elem, "media-type"),
                    properties=(_attr(elem, "properties") or "").split(),
                )
            )
        elif name == "meta" and (_attr(elem, "name") or "").lower() == "cover":
            package.cover_meta = package.cover_meta or _attr(elem, "content")
        elif name == "reference" and (_attr(elem, "type") or "").lower() == "cover":
            href = _attr(elem, "href")
            if href and package.guide_cover is None:
                package.guide_cover = resolve_href(opf_path, href)
    return package


def find_page_image(xhtml_bytes: bytes, page_path: str) -> Optional[str]:
    """Return the archive path of the first image shown on an XHTML page."""
    soup = BeautifulSoup(xhtml_bytes, "html.parser")
    for tag in soup.find_all(["img", "image", "svg:image"]):
        src = tag.get("src") or tag.get("xlink:href") or tag.get("href")
        if src:
            resolved = resolve_href(page_path, src)
            if resolved:
                return resolved
    return None


def _guess_media_type(path: str) -> Optional[str]:
    media_type, _ = mimetypes.guess_type(path)
    return media_type


def _from_guide(archive: EpubArchive, package: PackageDocument) -> Optional[CoverLocation]:
    target = package.guide_cover
    if target is None:
        return None

    item = package.item_by_path(target)
    if (item is not None and item.is_image) or (item is None and is_image(target)):
        return CoverLocation(
            path=target,
            media_type=item.media_type if item else _guess_media_type(target),
            declared_by="guide",
        )

    try:
        page = archive.read(target)
    except KeyError:
        logger.debug(f"Guide cover page {target} missing from archive")
        return None

    image_path = find_page_image(page, target)
    if image_path is None:
        return None
    image_item = package.item_by_path(image_path)
    return CoverLocation(
        path=image_path,
        media_type=image_item.media_type if image_item else _guess_media_type(image_path),
        declared_by="guide",
    )


def find_cover(package: PackageDocument, archive: EpubArchive) -> Optional[CoverLocation]:
    """Apply the three cover declarations in order of precedence."""
    for item in package.manifest:
        if "cover-image" in item.properties:
            return CoverLocation(path=item.path, media_type=item.media_type, declared_by="properties")

    if package.cover_meta:
        item = package.item_by_id(package.cover_meta) or package.item_by_path(
            resolve_href(package.path, package.cover_meta) or ""
        )
        if item is not None and item.is_image:
            return CoverLocation(path=item.path, media_type=item.media_type, declared_by="meta")

    return _from_guide(archive, package)


def locate_cover(archive: EpubArchive) -> Optional[CoverLocation]:
    """Locate the declared cover of an open EPUB, or None."""
    try:
        container = archive.read(CONTAINER_PATH)
    except KeyError:
        logger.debug(f"{archive.path.name}: no {CONTAINER_PATH}")
        return None

    opf_path = parse_container(container)
    if opf_path is None:
        logger.debug(f"{archive.path.name}: container.xml names no package document")
        return None

    try:
        package = parse_package(archive.read(opf_path), opf_path)
    except KeyError:
        logger.debug(f"{archive.path.name}: package document {opf_path} missing")
        return None
    if package is None:
        return None

    return find_cover(package, archive)
