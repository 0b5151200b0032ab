"""Word-stream segmentation into enrichment chunks.

Responsibilities:
- Split a chapter's word array into sentence-aligned chunks under a word budget.
- Split a chunk's word range into density analysis windows.
- Preserve contiguous, gap-free word index ranges for merge-back.
"""

from __future__ import annotations

import re
from typing import Sequence

from ..models.datatypes import ChunkDescriptor

SENTENCE_END_RE = re.compile(r"[.!?][\"']?$")

DEFAULT_CHUNK_WORDS = 2500
DEFAULT_WINDOW_WORDS = 200
DEFAULT_LOOKAHEAD_WORDS = 50


def ends_sentence(word: str) -> bool:
    """Return whether a word ends with terminal punctuation, optionally quoted."""

    return SENTENCE_END_RE.search(word) is not None


class Chunker:
    """Create sentence-aligned chunks from a chapter word array."""

    def __init__(self, max_words: int = DEFAULT_CHUNK_WORDS) -> None:
        """Initialize with the word budget a chunk must reach before it may end."""

        if max_words <= 0:
            raise ValueError("Chunk word budget must be positive.")
        self.max_words = max_words

    def boundaries(self, words: Sequence[str]) -> list[tuple[int, int]]:
        """Return half-open `(start, end)` ranges covering `words` without gaps.

        A chunk is cut after the first sentence-ending word once the budget is
        met; the trailing remainder is always emitted as the last range.
        """

        ranges: list[tuple[int, int]] = []
        start = 0
        for index, word in enumerate(words):
            if index + 1 - start >= self.max_words and ends_sentence(word):
                ranges.append((start, index + 1))
                start = index + 1
        if start < len(words):
            ranges.append((start, len(words)))
        return ranges

    def to_chunks(self, chapter_id: str, words: Sequence[str]) -> list[ChunkDescriptor]:
        """Split one chapter's words into chunk descriptors."""

        return [
            ChunkDescriptor(
                chapter_id=chapter_id,
                index=index,
                start_word_index=start,
                end_word_index=end,
                text=" ".join(words[start:end]),
            )
            for index, (start, end) in enumerate(self.boundaries(words))
        ]


def density_windows(
    words: Sequence[str],
    *,
    window_words: int = DEFAULT_WINDOW_WORDS,
    lookahead_words: int = DEFAULT_LOOKAHEAD_WORDS,
) -> list[tuple[int, int]]:
    """Split `words` into analysis windows relative to the sequence start.

    Each window holds `window_words` words and is extended forward by at most
    `lookahead_words` words to end on a sentence boundary when one is in reach.
    """

    if window_words <= 0:
        raise ValueError("Density window size must be positive.")
    windows: list[tuple[int, int]] = []
    total = len(words)
    start = 0
    while start < total:
        end = min(start + window_words, total)
        if end < total:
            for extension in range(lookahead_words + 1):
                candidate = end + extension
                if candidate > total:
                    break
                if ends_sentence(words[candidate - 1]):
                    end = candidate
                    break
        windows.append((start, end))
        start = end
    return windows
