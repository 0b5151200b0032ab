"""EPUB container reading.

Responsibilities:
- Open a zipped EPUB package held in memory and locate its package document.
- Resolve book metadata, manifest, and reading-order spine.
- Provide chapter markup bytes and embedded images by package path.

Key types:
- `EpubContainer`: read-only view over one package's files.
"""

from __future__ import annotations

import asyncio
from io import BytesIO
from pathlib import PurePosixPath
import re
import zipfile

from bs4 import BeautifulSoup

from ..errors import ChapterSourceMissingError, ContainerError
from ..models.datatypes import ContainerMetadata, SpineEntry

_IMAGE_PATH_RE = re.compile(r"\.(jpg|jpeg|png|gif|webp)$", re.IGNORECASE)
_CONTAINER_XML_PATH = "META-INF/container.xml"


class EpubContainer:
    """In-memory EPUB package with lazily parsed package document."""

    def __init__(self, data: bytes) -> None:
        """Open container bytes as a zip archive.

        Raises:
            ContainerError: If bytes are not a zip archive or hold no package document.
        """

        try:
            self._zip = zipfile.ZipFile(BytesIO(data))
        except zipfile.BadZipFile as exc:
            raise ContainerError(f"Package is not a valid zip archive: {exc}") from exc
        self._names = [name for name in self._zip.namelist() if not name.endswith("/")]
        self.opf_path = self._locate_package_document()
        self.opf_dir = self.opf_path.rsplit("/", 1)[0] + "/" if "/" in self.opf_path else ""
        self._opf = BeautifulSoup(self._zip.read(self.opf_path), "xml")
        self.manifest = self._parse_manifest()

    @property
    def names(self) -> list[str]:
        """Return all file paths in the package."""

        return list(self._names)

    def _locate_package_document(self) -> str:
        """Return the OPF path from `container.xml`, or the first `.opf` file."""

        if _CONTAINER_XML_PATH in self._names:
            container = BeautifulSoup(self._zip.read(_CONTAINER_XML_PATH), "xml")
            rootfile = container.find("rootfile")
            full_path = rootfile.get("full-path") if rootfile is not None else None
            if full_path and full_path in self._names:
                return full_path
        for name in self._names:
            if name.endswith(".opf"):
                return name
        raise ContainerError("Invalid EPUB: no package document (.opf) found.")

    def _parse_manifest(self) -> dict[str, str]:
        """Map manifest item ids to hrefs."""

        manifest: dict[str, str] = {}
        for item in self._opf.find_all("item"):
            item_id = item.get("id")
            href = item.get("href")
            if item_id and href:
                manifest[item_id] = href
        return manifest

    def metadata(self) -> ContainerMetadata:
        """Return title, author, and cover image basename from the package document."""

        title_tag = self._opf.find("title")
        creator_tag = self._opf.find("creator")
        title = title_tag.get_text(strip=True) if title_tag is not None else ""
        author = creator_tag.get_text(strip=True) if creator_tag is not None else ""

        cover_filename: str | None = None
        cover_meta = self._opf.find("meta", attrs={"name": "cover"})
        cover_id = cover_meta.get("content") if cover_meta is not None else None
        if cover_id and cover_id in self.manifest:
            cover_filename = PurePosixPath(self.manifest[cover_id]).name
        return ContainerMetadata(title=title, author=author, cover_filename=cover_filename)

    def spine(self) -> list[SpineEntry]:
        """Return readable spine entries; idrefs missing from the manifest are skipped."""

        entries: list[SpineEntry] = []
        for itemref in self._opf.find_all("itemref"):
            idref = itemref.get("idref")
            href = self.manifest.get(idref) if idref else None
            if not href:
                continue
            entries.append(SpineEntry(spine_index=len(entries), idref=idref, href=href))
        return entries

    def image_paths(self) -> list[str]:
        """Return package paths of image files."""

        return [name for name in self._names if _IMAGE_PATH_RE.search(name)]

    def read_bytes(self, path: str) -> bytes:
        """Read one file from the package by exact path."""

        return self._zip.read(path)

    def resolve_href(self, href: str) -> str:
        """Resolve a manifest href to a package path, falling back to a basename match.

        Raises:
            ChapterSourceMissingError: If neither lookup finds the file.
        """

        full_path = self.opf_dir + href
        if full_path in self._names:
            return full_path
        basename = PurePosixPath(href).name
        for name in self._names:
            if name.endswith(basename):
                return name
        raise ChapterSourceMissingError(href)

    async def read_chapter_markup(self, href: str) -> bytes:
        """Return markup bytes for a spine href."""

        path = self.resolve_href(href)
        return await asyncio.to_thread(self._zip.read, path)


def image_mime_type(filename: str) -> str:
    """Return the MIME type for an image filename by extension."""

    extension = filename.rsplit(".", 1)[-1].lower()
    if extension in {"jpg", "jpeg"}:
        return "image/jpeg"
    return f"image/{extension}"
