"""In-memory EPUB builders for deterministic container and pipeline tests."""

from __future__ import annotations

from io import BytesIO
from typing import Mapping, Sequence
import zipfile

_CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="{opf_path}" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""


def chapter_markup(body: str, *, heading: str | None = None) -> str:
    """Wrap body HTML into a minimal XHTML chapter document."""

    heading_html = f"<h1>{heading}</h1>" if heading else ""
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<html xmlns="http://www.w3.org/1999/xhtml"><head><title>x</title></head>'
        f"<body>{heading_html}{body}</body></html>"
    )


def build_epub(
    chapters: Sequence[str],
    *,
    title: str | None = "Synthetic Book",
    author: str | None = "Test Author",
    images: Mapping[str, bytes] | None = None,
    cover: str | None = None,
    opf_dir: str = "OEBPS",
    include_container_xml: bool = True,
    missing_spine_idrefs: Sequence[str] = (),
    omit_chapter_files: Sequence[int] = (),
) -> bytes:
    """Build EPUB bytes with one manifest item and spine entry per chapter markup.

    Args:
        chapters: Full chapter markup strings in reading order.
        title: Optional `dc:title` value.
        author: Optional `dc:creator` value.
        images: Image filename to bytes, stored under `images/`.
        cover: Image filename referenced by `<meta name="cover">`.
        opf_dir: Directory holding the package document (empty for root).
        include_container_xml: Whether to write `META-INF/container.xml`.
        missing_spine_idrefs: Extra spine idrefs with no manifest item.
        omit_chapter_files: Chapter positions listed in the manifest but not stored.
    """

    prefix = f"{opf_dir}/" if opf_dir else ""
    opf_path = f"{prefix}content.opf"
    image_map = dict(images or {})

    manifest_items: list[str] = []
    spine_items: list[str] = []
    for position, _markup in enumerate(chapters):
        item_id = f"chap{position + 1}"
        manifest_items.append(
            f'<item id="{item_id}" href="text/chapter{position + 1}.xhtml" '
            'media-type="application/xhtml+xml"/>'
        )
        spine_items.append(f'<itemref idref="{item_id}"/>')
        if position == 0:
            spine_items.extend(f'<itemref idref="{idref}"/>' for idref in missing_spine_idrefs)
    for filename in image_map:
        item_id = "cover-image" if filename == cover else f"img-{filename}"
        manifest_items.append(
            f'<item id="{item_id}" href="images/{filename}" media-type="image/png"/>'
        )

    metadata: list[str] = []
    if title is not None:
        metadata.append(f"<dc:title>{title}</dc:title>")
    if author is not None:
        metadata.append(f"<dc:creator>{author}</dc:creator>")
    if cover is not None:
        metadata.append('<meta name="cover" content="cover-image"/>')

    opf = (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<package xmlns="http://www.idpf.org/2007/opf" version="3.0" unique-identifier="id">'
        '<metadata xmlns:dc="http://purl.org/dc/elements/1.1/">'
        f"{''.join(metadata)}</metadata>"
        f"<manifest>{''.join(manifest_items)}</manifest>"
        f"<spine>{''.join(spine_items)}</spine>"
        "</package>"
    )

    buffer = BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("mimetype", "application/epub+zip")
        if include_container_xml:
            archive.writestr("META-INF/container.xml", _CONTAINER_XML.format(opf_path=opf_path))
        archive.writestr(opf_path, opf)
        for position, markup in enumerate(chapters):
            if position in omit_chapter_files:
                continue
            archive.writestr(f"{prefix}text/chapter{position + 1}.xhtml", markup)
        for filename, data in image_map.items():
            archive.writestr(f"{prefix}images/{filename}", data)
    return buffer.getvalue()
