"""Persistence merge layer for incremental chapter enrichment.

Responsibilities:
- Re-fetch before every write and retry writes rejected as stale.
- Append word ranges, splice density ranges, and upsert subchapters.
- Advance chapter status along allowed transitions and record metrics.

Every mutation goes through `update_with_retry`, so concurrent writers to the
same chapter converge instead of overwriting each other.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Sequence, TypeVar

from loguru import logger

from ..errors import DocumentNotFoundError, RevisionConflictError
from ..io.storage import Collection
from ..models.datatypes import Book, Chapter, ChapterStatus, Subchapter

EntityT = TypeVar("EntityT")

Mutator = Callable[[EntityT], "dict[str, Any] | None"]

DEFAULT_MAX_ATTEMPTS = 5

_ALLOWED_TRANSITIONS: dict[ChapterStatus, frozenset[ChapterStatus]] = {
    ChapterStatus.PENDING: frozenset({ChapterStatus.PROCESSING, ChapterStatus.ERROR}),
    ChapterStatus.PROCESSING: frozenset(
        {ChapterStatus.PROCESSING, ChapterStatus.READY, ChapterStatus.ERROR}
    ),
    ChapterStatus.ERROR: frozenset({ChapterStatus.PROCESSING, ChapterStatus.ERROR}),
    ChapterStatus.READY: frozenset({ChapterStatus.READY}),
}


class InvalidTransitionError(ValueError):
    """Raised when a chapter status change would violate its lifecycle."""


class ContentMismatchError(ValueError):
    """Raised when appended words disagree with content already stored."""


async def update_with_retry(
    collection: Collection[EntityT],
    doc_id: str,
    mutator: Mutator[EntityT],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> EntityT:
    """Apply `mutator` to the latest revision of a document, retrying on conflicts.

    The mutator receives the freshly fetched snapshot and returns the fields to
    change, or `None`/`{}` when no write is needed.

    Raises:
        DocumentNotFoundError: If the document does not exist.
        RevisionConflictError: If every attempt lost a race.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1.")
    conflict: RevisionConflictError | None = None
    for attempt in range(1, max_attempts + 1):
        current = await collection.find_one(doc_id)
        if current is None:
            raise DocumentNotFoundError(collection.name, doc_id)
        changes = mutator(current)
        if not changes:
            return current
        try:
            return await collection.patch(current, **changes)
        except KeyError as exc:
            raise DocumentNotFoundError(collection.name, doc_id) from exc
        except RevisionConflictError as exc:
            conflict = exc
            logger.debug(
                "Revision conflict on {}/{} (attempt {}/{}); re-fetching.",
                collection.name,
                doc_id,
                attempt,
                max_attempts,
            )
    assert conflict is not None
    raise conflict


def check_transition(current: ChapterStatus, target: ChapterStatus) -> None:
    """Raise when `current -> target` is not an allowed chapter transition."""

    if target not in _ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Chapter status cannot move from `{current.value}` to `{target.value}`."
        )


class ChapterMerger:
    """Convergent write operations on chapter and book documents."""

    def __init__(
        self,
        chapters: Collection[Chapter],
        books: Collection[Book],
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        """Initialize with target collections and the conflict retry budget."""

        self.chapters = chapters
        self.books = books
        self.max_attempts = max_attempts

    async def _update(self, chapter_id: str, mutator: Mutator[Chapter]) -> Chapter:
        """Run a chapter mutation through `update_with_retry`."""

        return await update_with_retry(
            self.chapters, chapter_id, mutator, max_attempts=self.max_attempts
        )

    async def advance_status(
        self,
        chapter_id: str,
        status: ChapterStatus,
        **changes: Any,
    ) -> Chapter:
        """Move a chapter to `status`, applying extra field changes in the same write."""

        def _mutate(chapter: Chapter) -> dict[str, Any]:
            check_transition(chapter.status, status)
            return {"status": status, **changes}

        return await self._update(chapter_id, _mutate)

    async def claim(self, chapter_id: str) -> Chapter:
        """Mark a chapter as being processed."""

        return await self.advance_status(chapter_id, ChapterStatus.PROCESSING)

    async def mark_error(self, chapter_id: str) -> Chapter:
        """Mark a chapter as failed; processing may resume it later."""

        return await self.advance_status(chapter_id, ChapterStatus.ERROR)

    async def append_words(
        self,
        chapter_id: str,
        start_word_index: int,
        words: Sequence[str],
    ) -> Chapter:
        """Append a word range with neutral densities; re-appending stored words is a no-op.

        Raises:
            ContentMismatchError: If the range leaves a gap or disagrees with stored words.
        """

        new_words = tuple(words)
        end_word_index = start_word_index + len(new_words)

        def _mutate(chapter: Chapter) -> dict[str, Any] | None:
            stored = len(chapter.content)
            if stored < start_word_index:
                raise ContentMismatchError(
                    f"Cannot append at word {start_word_index}; chapter `{chapter.id}` "
                    f"holds {stored} words."
                )
            overlap = chapter.content[start_word_index:end_word_index]
            if overlap != new_words[: len(overlap)]:
                raise ContentMismatchError(
                    f"Words {start_word_index}-{end_word_index} differ from stored "
                    f"content of chapter `{chapter.id}`."
                )
            missing = new_words[len(overlap):]
            if not missing:
                return None
            return {
                "content": chapter.content + missing,
                "densities": chapter.densities + (1.0,) * len(missing),
            }

        return await self._update(chapter_id, _mutate)

    async def splice_densities(
        self,
        chapter_id: str,
        start_word_index: int,
        densities: Sequence[float],
    ) -> Chapter:
        """Overwrite densities from `start_word_index`, clipped to the stored content."""

        values = tuple(float(value) for value in densities)

        def _mutate(chapter: Chapter) -> dict[str, Any] | None:
            end = min(start_word_index + len(values), len(chapter.densities))
            if end <= start_word_index:
                return None
            spliced = list(chapter.densities)
            spliced[start_word_index:end] = values[: end - start_word_index]
            return {"densities": tuple(spliced)}

        return await self._update(chapter_id, _mutate)

    async def upsert_subchapter(
        self,
        chapter_id: str,
        index: int,
        *,
        start_word_index: int,
        end_word_index: int,
        **changes: Any,
    ) -> Chapter:
        """Replace fields of subchapter `index`, or append it when it is the next one.

        Raises:
            ValueError: If `index` would leave a gap or overlap the previous range.
        """

        def _mutate(chapter: Chapter) -> dict[str, Any] | None:
            subchapters = list(chapter.subchapters)
            if index < len(subchapters):
                existing = subchapters[index]
                updated = replace(existing, **changes)
                if updated == existing:
                    return None
                subchapters[index] = updated
            elif index == len(subchapters):
                if subchapters and subchapters[-1].end_word_index > start_word_index:
                    raise ValueError(
                        f"Subchapter {index} of `{chapter.id}` overlaps the previous range."
                    )
                fields = {"title": f"Part {index + 1}", "summary": "", **changes}
                subchapters.append(
                    Subchapter(
                        start_word_index=start_word_index,
                        end_word_index=end_word_index,
                        **fields,
                    )
                )
            else:
                raise ValueError(
                    f"Subchapter {index} of `{chapter.id}` would leave a gap "
                    f"after {len(subchapters)} entries."
                )
            return {"subchapters": tuple(subchapters)}

        return await self._update(chapter_id, _mutate)

    async def update_fields(self, chapter_id: str, **changes: Any) -> Chapter:
        """Write plain field changes (metrics, title) to the latest revision."""

        return await self._update(chapter_id, lambda _chapter: dict(changes))

    async def add_book_words(self, book_id: str, word_count: int) -> Book:
        """Increment a book's total word count."""

        return await update_with_retry(
            self.books,
            book_id,
            lambda book: {"total_words": book.total_words + word_count} if word_count else None,
            max_attempts=self.max_attempts,
        )
