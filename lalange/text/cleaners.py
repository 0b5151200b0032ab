"""Deterministic boilerplate removal rules.

Responsibilities:
- Strip e-book distribution license headers, footers, and metadata lines.
- Keep the transform order-sensitive and an identity on plain narrative text.
"""

from __future__ import annotations

import re
from typing import Protocol

_START_MARKER_RE = re.compile(
    r"\*\*\* START OF THIS PROJECT GUTENBERG EBOOK .* \*\*\*", re.IGNORECASE
)
_END_MARKER_RE = re.compile(
    r"\*\*\* END OF THIS PROJECT GUTENBERG EBOOK .* \*\*\*", re.IGNORECASE
)
_START_MARKER_WINDOW_CHARS = 10000

_LICENSE_LINE_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE | re.MULTILINE)
    for pattern in (
        r"^\s*The Project Gutenberg EBook of.*$",
        r"^\s*This eBook is for the use of anyone anywhere.*$",
        r"^\s*Copyright laws are changing all over the world.*$",
        r"^\s*Be sure to check the copyright laws for your country.*$",
        r"^\s*Title:.*$",
        r"^\s*Author:.*$",
        r"^\s*Release Date:.*$",
        r"^\s*Language:.*$",
        r"^\s*\*\*\* START OF THIS PROJECT GUTENBERG EBOOK .* \*\*\*$",
        r"^\s*\*\*\* END OF THIS PROJECT GUTENBERG EBOOK .* \*\*\*$",
        r"^\s*Produced by.*$",
        r"^\s*End of the Project Gutenberg EBook.*$",
        r"^\s*This is a publication of Standard Ebooks.*$",
        r"^\s*The Standard Ebooks project is a volunteer effort.*$",
    )
)


class CleanerRule(Protocol):
    """Protocol for text cleaning rules."""

    def apply(self, text: str) -> str:
        """Apply a single cleaning transformation."""


class DropBeforeStartMarker:
    """Discard everything up to a start-of-ebook marker near the beginning."""

    def apply(self, text: str) -> str:
        """Cut the header block when the marker appears in the leading window."""

        match = _START_MARKER_RE.search(text)
        if match is None or match.start() >= _START_MARKER_WINDOW_CHARS:
            return text
        return text[match.end():]


class DropFromEndMarker:
    """Discard an end-of-ebook marker and everything after it."""

    def apply(self, text: str) -> str:
        """Cut the footer block."""

        match = _END_MARKER_RE.search(text)
        if match is None:
            return text
        return text[: match.start()]


class RemoveLicenseLines:
    """Remove whole lines matching known license and metadata patterns."""

    def apply(self, text: str) -> str:
        """Apply every line pattern in order."""

        for pattern in _LICENSE_LINE_PATTERNS:
            text = pattern.sub("", text)
        return text


class CollapseBlankLines:
    """Collapse runs of three or more newlines into a paragraph break."""

    def apply(self, text: str) -> str:
        """Normalize blank-line runs."""

        return re.sub(r"\n{3,}", "\n\n", text)


class TextCleaner:
    """Apply a sequence of deterministic cleaner rules."""

    def __init__(self, rules: list[CleanerRule] | None = None) -> None:
        """Initialize with custom rules or the license-removal sequence."""

        self.rules = rules or [
            DropBeforeStartMarker(),
            DropFromEndMarker(),
            RemoveLicenseLines(),
            CollapseBlankLines(),
        ]

    def clean(self, text: str) -> str:
        """Apply all configured rules in order and trim the result."""

        current = text
        for rule in self.rules:
            current = rule.apply(current)
        return current.strip()


def remove_license_text(text: str) -> str:
    """Strip distribution boilerplate from extracted chapter text."""

    return TextCleaner().clean(text)
