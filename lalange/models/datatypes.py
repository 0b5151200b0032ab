"""Core datatypes shared across lalange modules.

Responsibilities:
- Represent the persisted entities (books, chapters, reading state, assets).
- Represent ephemeral pipeline records (chunk descriptors, ingestion tasks,
  inference results) exchanged between ingestion stages.

Key types:
- `Book`, `Chapter`, `Subchapter`, `ReadingState`, `RawFile`, `ImageAsset`:
  immutable document snapshots; every store write produces a new revision.
- `ChunkDescriptor`, `IngestionTask`: enrichment work units.
- `CompletionResult`, `TokenLogprob`, `SummaryResult`: inference outputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class ChapterStatus(str, Enum):
    """Lifecycle of a chapter document."""

    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


class TaskType(str, Enum):
    """Kind of enrichment performed by an ingestion task."""

    DENSITY = "DENSITY"
    SUMMARY = "SUMMARY"


class TaskStatus(str, Enum):
    """Scheduler-side lifecycle of an ingestion task."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class PromptFragment:
    """Optional instruction fragment appended to a base prompt when enabled."""

    text: str
    enabled: bool = True


@dataclass(frozen=True, slots=True)
class Subchapter:
    """Persisted enrichment metadata for one chunk of a chapter.

    Attributes:
        title: Chunk title (placeholder `Part N` until summarized).
        summary: Chunk summary text.
        start_word_index: Inclusive word offset into chapter content.
        end_word_index: Exclusive word offset into chapter content.
        has_density: Whether density enrichment has been merged for the range.
        has_summary: Whether summary enrichment has been merged.
        junk: Whether the summarizer classified the chunk as non-narrative.
    """

    title: str
    summary: str
    start_word_index: int
    end_word_index: int
    has_density: bool = False
    has_summary: bool = False
    junk: bool = False


@dataclass(frozen=True, slots=True)
class Book:
    """Book-level document created once at ingest time.

    Attributes:
        id: Stable book identifier.
        title: Book title from package metadata.
        author: Author from package metadata.
        cover: Image id of the cover asset, when one was found.
        total_words: Sum of word counts of chapters that reached `ready`.
        chapter_ids: Chapter ids in reading order.
        revision: Store revision of this snapshot.
    """

    id: str
    title: str
    author: str
    cover: str | None = None
    total_words: int = 0
    chapter_ids: tuple[str, ...] = field(default_factory=tuple)
    revision: int = 0


@dataclass(frozen=True, slots=True)
class Chapter:
    """Chapter document accumulating words, densities, and subchapters.

    `content` and `densities` are parallel arrays: every stored snapshot keeps
    `len(densities) == len(content)`.
    """

    id: str
    book_id: str
    index: int
    title: str
    status: ChapterStatus = ChapterStatus.PENDING
    progress: int = 0
    content: tuple[str, ...] = field(default_factory=tuple)
    densities: tuple[float, ...] = field(default_factory=tuple)
    subchapters: tuple[Subchapter, ...] = field(default_factory=tuple)
    processing_speed: int = 0
    last_tpm: int = 0
    last_chunk_completed_at: int = 0
    revision: int = 0


@dataclass(frozen=True, slots=True)
class ReadingState:
    """Reader cursor and highlights for one book, keyed by `book_id`."""

    book_id: str
    current_chapter_id: str | None
    current_word_index: int = 0
    last_read: int = 0
    highlights: tuple[str, ...] = field(default_factory=tuple)
    revision: int = 0


@dataclass(frozen=True, slots=True)
class RawFile:
    """Original container bytes kept for background re-parsing."""

    id: str
    data: bytes
    revision: int = 0


@dataclass(frozen=True, slots=True)
class ImageAsset:
    """Image extracted from the package."""

    id: str
    book_id: str
    filename: str
    data: bytes
    mime_type: str
    revision: int = 0


@dataclass(frozen=True, slots=True)
class ContainerMetadata:
    """Book-level metadata resolved from the package document."""

    title: str
    author: str
    cover_filename: str | None


@dataclass(frozen=True, slots=True)
class SpineEntry:
    """One readable spine item resolved through the manifest."""

    spine_index: int
    idref: str
    href: str


@dataclass(frozen=True, slots=True)
class NormalizedChapter:
    """Word stream extracted from one chapter's markup."""

    words: tuple[str, ...]
    title: str | None


@dataclass(frozen=True, slots=True)
class ChunkDescriptor:
    """A sentence-aligned slice of a chapter's word stream.

    Attributes:
        chapter_id: Owning chapter id.
        index: 0-based chunk index within the chapter.
        start_word_index: Inclusive offset into the chapter word array.
        end_word_index: Exclusive offset into the chapter word array.
        text: Words of the slice joined by single spaces.
    """

    chapter_id: str
    index: int
    start_word_index: int
    end_word_index: int
    text: str

    @property
    def word_count(self) -> int:
        """Return number of words covered by this chunk."""

        return self.end_word_index - self.start_word_index


@dataclass(slots=True)
class IngestionTask:
    """Schedulable enrichment unit; `priority` and `status` are scheduler-owned."""

    id: str
    book_id: str
    chapter_id: str
    subchapter_index: int
    start_word_index: int
    end_word_index: int
    type: TaskType
    text: str
    priority: float = 0.0
    status: TaskStatus = TaskStatus.PENDING

    @staticmethod
    def make_id(book_id: str, chapter_id: str, subchapter_index: int, task_type: TaskType) -> str:
        """Build the unique task id for a book/chapter/subchapter/type tuple."""

        return f"{book_id}:{chapter_id}:{subchapter_index}:{task_type.value}"

    @property
    def dedup_key(self) -> tuple[str, str, int, TaskType]:
        """Return identity used for idempotent enqueue."""

        return (self.book_id, self.chapter_id, self.subchapter_index, self.type)


@dataclass(frozen=True, slots=True)
class CompletionResult:
    """Text completion returned by the inference backend."""

    text: str
    model: str
    usage: Mapping[str, Any] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def tokens_per_minute(self) -> int:
        """Return generated tokens per minute, or 0 when metrics are missing."""

        completion_tokens = self.usage.get("completion_tokens")
        if not isinstance(completion_tokens, (int, float)) or self.duration_seconds <= 0.0:
            return 0
        return round(completion_tokens / self.duration_seconds * 60)


@dataclass(frozen=True, slots=True)
class TokenLogprob:
    """One prompt token and its log probability."""

    token: str
    logprob: float


@dataclass(frozen=True, slots=True)
class SummaryResult:
    """Parsed summarizer reply for one chunk."""

    title: str
    summary: str
    is_junk: bool = False


@dataclass(frozen=True, slots=True)
class InitialIngestResult:
    """Documents produced by initial ingest, ready to be inserted."""

    book: Book
    chapters: tuple[Chapter, ...]
    images: tuple[ImageAsset, ...]
    raw_file: RawFile
