"""Chapter markup normalization into word streams.

Responsibilities:
- Extract block-level text from chapter markup in document order.
- Surface the first level-1 heading as a candidate chapter title.
- Apply boilerplate removal and tokenize on whitespace runs.
"""

from __future__ import annotations

from bs4 import BeautifulSoup, NavigableString, Tag

from ..models.datatypes import NormalizedChapter
from .cleaners import TextCleaner

BLOCK_TAGS = ("p", "h1", "h2", "h3", "h4", "h5", "h6", "div", "li", "blockquote")


def split_words(text: str) -> list[str]:
    """Split text into non-empty whitespace-delimited tokens."""

    return text.split()


def _is_container(node: Tag) -> bool:
    """Return whether a tag is a block or holds one."""

    return node.name in BLOCK_TAGS or node.find(BLOCK_TAGS) is not None


def _collect_paragraphs(node: Tag, paragraphs: list[str], *, in_block: bool) -> None:
    """Append block text under `node` in document order.

    Text sitting directly in a block that also holds nested blocks is kept as
    its own paragraph between them; text outside any block is ignored.
    """

    run: list[str] = []

    def _flush() -> None:
        text = " ".join(piece for piece in run if piece)
        if in_block and text:
            paragraphs.append(text)
        run.clear()

    for child in node.children:
        if isinstance(child, Tag):
            if _is_container(child):
                _flush()
                _collect_paragraphs(
                    child, paragraphs, in_block=in_block or child.name in BLOCK_TAGS
                )
            else:
                run.append(child.get_text(" ", strip=True))
        elif type(child) is NavigableString:
            run.append(child.strip())
    _flush()


def extract_block_text(markup: bytes | str) -> tuple[str, str | None]:
    """Return paragraph-joined block text and the first `h1` text, if any.

    Each nested block becomes its own paragraph, so containers are never read
    twice and text beside a nested block is not lost.
    """

    soup = BeautifulSoup(markup, "lxml")
    heading = soup.find("h1")
    title = heading.get_text(" ", strip=True) if heading is not None else ""

    for image in soup.find_all("img"):
        image.decompose()

    paragraphs: list[str] = []
    _collect_paragraphs(soup, paragraphs, in_block=False)
    raw_text = "\n\n".join(paragraphs)

    if not raw_text.strip():
        body = soup.body if soup.body is not None else soup
        raw_text = body.get_text("\n")
    return raw_text, title or None


class TextNormalizer:
    """Convert one chapter's markup into a normalized word stream."""

    def __init__(self, *, license_removal: bool = True, cleaner: TextCleaner | None = None) -> None:
        """Initialize with boilerplate removal toggle and optional custom cleaner."""

        self.license_removal = license_removal
        self.cleaner = cleaner or TextCleaner()

    def normalize_text(self, text: str) -> str:
        """Apply boilerplate removal when enabled."""

        if not self.license_removal:
            return text.strip()
        return self.cleaner.clean(text)

    def normalize(self, markup: bytes | str) -> NormalizedChapter:
        """Return words and candidate title for one chapter's markup."""

        raw_text, title = extract_block_text(markup)
        words = split_words(self.normalize_text(raw_text))
        return NormalizedChapter(words=tuple(words), title=title)
