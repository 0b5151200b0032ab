"""Ingestion pipeline orchestration.

Responsibilities:
- Build book, chapter, image, and raw-file documents from an EPUB (initial ingest).
- Re-parse stored packages, pre-fill chapter words, and enqueue enrichment tasks.
- Finalize chapters once their tasks end, and support stop/resume.
- Re-estimate densities from token log probabilities and remove books.

Key types:
- `IngestionPipeline`: entry point used by the CLI and by reading front ends.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
import uuid

from loguru import logger

from ..config import LalangeConfig
from ..errors import ContainerError, DocumentNotFoundError, PipelineStageError
from ..io.container import EpubContainer, image_mime_type
from ..io.storage import DocumentStore
from ..llm.density import DensityAnalyzer, LogprobDensityEstimator
from ..llm.service import InferenceService
from ..llm.summarizer import Summarizer
from ..models.datatypes import (
    Book,
    Chapter,
    ChapterStatus,
    ChunkDescriptor,
    ImageAsset,
    IngestionTask,
    InitialIngestResult,
    RawFile,
    ReadingState,
    TaskStatus,
    TaskType,
)
from ..telemetry.logger import RunLogger
from ..text.chunking import Chunker, density_windows
from ..text.normalizer import TextNormalizer
from .enrichment import EnrichmentExecutor, now_ms
from .merge import ChapterMerger, ContentMismatchError
from .scheduler import IngestionScheduler

_CLAIMABLE_STATUSES = frozenset(
    {ChapterStatus.PENDING, ChapterStatus.PROCESSING, ChapterStatus.ERROR}
)


def chapter_id_for(book_id: str, spine_index: int) -> str:
    """Return the chapter id for a book's spine position."""

    return f"{book_id}_{spine_index}"


class IngestionPipeline:
    """Coordinate parsing, scheduling, enrichment, and persistence for books."""

    def __init__(
        self,
        *,
        store: DocumentStore,
        service: InferenceService,
        config: LalangeConfig | None = None,
        scheduler: IngestionScheduler | None = None,
        run_logger: RunLogger | None = None,
    ) -> None:
        """Wire analyzers, merge layer, and scheduler around a store and service."""

        self.store = store
        self.service = service
        self.config = config or LalangeConfig()
        self.run_logger = run_logger or RunLogger()
        self.scheduler = scheduler or IngestionScheduler(
            current_chunk_words=self.config.summary_chunk_words
        )
        self.normalizer = TextNormalizer(license_removal=self.config.license_removal)
        self.chunker = Chunker(self.config.summary_chunk_words)
        self.merger = ChapterMerger(
            store.chapters,
            store.books,
            max_attempts=self.config.merge_max_attempts,
        )
        self.executor = EnrichmentExecutor(
            density_analyzer=DensityAnalyzer(
                service,
                model_tier=self.config.librarian_model_tier,
                base_prompt=self.config.librarian_base_prompt,
                fragments=self.config.librarian_fragments,
            ),
            summarizer=Summarizer(
                service,
                model_tier=self.config.summarizer_model_tier,
                base_prompt=self.config.summarizer_base_prompt,
                fragments=self.config.summarizer_fragments,
                instruction=self.config.summary_prompt,
                junk_removal=self.config.enable_junk_removal,
                excerpt_chars=self.config.summary_excerpt_chars,
            ),
            merger=self.merger,
            window_words=self.config.density_window_words,
            lookahead_words=self.config.density_lookahead_words,
            run_logger=self.run_logger,
        )
        self.scheduler.set_executor(self.executor)
        self._runs: dict[str, asyncio.Task[None]] = {}
        self._stop_requested: set[str] = set()

    async def initial_ingest(self, data: bytes, filename: str) -> InitialIngestResult:
        """Parse package metadata and build placeholder documents for a new book.

        Raises:
            PipelineStageError: If the backend is unhealthy or the package is unreadable.
        """

        self.run_logger.log_stage_start("ingest", file=Path(filename).name)
        if not await self.service.check_health(self.config.librarian_model_tier):
            self.run_logger.log_stage_failure("health", "InferenceUnavailable")
            raise PipelineStageError(
                stage="health",
                detail=(
                    "Inference backend cannot serve model "
                    f"`{self.service.resolve_model(self.config.librarian_model_tier)}`."
                ),
                hint="Start the inference server or check `base_url` and `model_tiers`.",
            )
        try:
            container = EpubContainer(data)
        except ContainerError as exc:
            self.run_logger.log_stage_failure("parse", type(exc).__name__)
            raise PipelineStageError(
                stage="parse",
                detail=str(exc),
                hint="Provide a valid EPUB file.",
            ) from exc

        book_id = str(uuid.uuid4())
        metadata = container.metadata()

        images: list[ImageAsset] = []
        for path in container.image_paths():
            filename_only = path.rsplit("/", 1)[-1]
            images.append(
                ImageAsset(
                    id=f"{book_id}_img_{filename_only}",
                    book_id=book_id,
                    filename=filename_only,
                    data=container.read_bytes(path),
                    mime_type=image_mime_type(filename_only),
                )
            )
        cover = next(
            (image.id for image in images if image.filename == metadata.cover_filename),
            None,
        )

        chapters = tuple(
            Chapter(
                id=chapter_id_for(book_id, entry.spine_index),
                book_id=book_id,
                index=entry.spine_index,
                title=f"Chapter {entry.spine_index + 1}",
            )
            for entry in container.spine()
        )
        book = Book(
            id=book_id,
            title=metadata.title or Path(filename).stem,
            author=metadata.author or "Unknown",
            cover=cover,
            chapter_ids=tuple(chapter.id for chapter in chapters),
        )
        self.run_logger.log_stage_complete(
            "ingest", book_id=book_id, chapters=len(chapters), images=len(images)
        )
        return InitialIngestResult(
            book=book,
            chapters=chapters,
            images=tuple(images),
            raw_file=RawFile(id=book_id, data=data),
        )

    async def store_ingest_result(self, result: InitialIngestResult) -> Book:
        """Insert all documents produced by initial ingest plus a fresh reading state."""

        book = await self.store.books.insert(result.book)
        await self.store.chapters.bulk_insert(result.chapters)
        await self.store.images.bulk_insert(result.images)
        await self.store.raw_files.insert(result.raw_file)
        await self.store.reading_states.insert(
            ReadingState(
                book_id=book.id,
                current_chapter_id=result.chapters[0].id if result.chapters else None,
                last_read=now_ms(),
            )
        )
        return book

    async def ingest_file(self, path: Path) -> Book:
        """Run initial ingest for a file on disk and store the result."""

        data = await asyncio.to_thread(path.read_bytes)
        return await self.store_ingest_result(await self.initial_ingest(data, path.name))

    def set_cursor(self, book_id: str, chapter_id: str, word_index: int) -> None:
        """Forward the reader position to the scheduler."""

        self.scheduler.set_cursor(book_id, chapter_id, word_index)

    def process_chapters_in_background(self, book_id: str) -> asyncio.Task[None]:
        """Start (or return the running) background processing task for a book."""

        running = self._runs.get(book_id)
        if running is not None and not running.done():
            return running
        self._stop_requested.discard(book_id)
        run = asyncio.get_running_loop().create_task(self.process_book(book_id))
        self._runs[book_id] = run
        run.add_done_callback(lambda _task: self._forget_run(book_id, run))
        return run

    def _forget_run(self, book_id: str, run: asyncio.Task[None]) -> None:
        """Drop bookkeeping for a finished run."""

        if self._runs.get(book_id) is run:
            del self._runs[book_id]

    def is_processing(self, book_id: str) -> bool:
        """Return whether a background run is active for the book."""

        run = self._runs.get(book_id)
        return run is not None and not run.done()

    def stop_processing(self, book_id: str) -> int:
        """Stop claiming chapters for a book and withdraw its pending tasks."""

        self._stop_requested.add(book_id)
        cancelled = self.scheduler.cancel_book(book_id)
        self.run_logger.log_stage_complete("stop", book_id=book_id, cancelled=cancelled)
        return cancelled

    async def process_book(self, book_id: str) -> None:
        """Claim unfinished chapters, enqueue their tasks, and wait for finalization.

        Raises:
            PipelineStageError: If the book or its stored package is missing or unreadable.
        """

        book = await self.store.books.find_one(book_id)
        raw_file = await self.store.raw_files.find_one(book_id)
        if book is None or raw_file is None:
            raise PipelineStageError(
                stage="process",
                detail=f"Book `{book_id}` or its stored package was not found.",
                hint="Run `lalange ingest` first.",
            )
        try:
            container = EpubContainer(raw_file.data)
        except ContainerError as exc:
            raise PipelineStageError(stage="parse", detail=str(exc)) from exc

        self.run_logger.log_stage_start("process", book_id=book_id)
        finalizers: list[asyncio.Task[None]] = []
        for entry in container.spine():
            if book_id in self._stop_requested:
                break
            chapter_id = chapter_id_for(book_id, entry.spine_index)
            chapter = await self.store.chapters.find_one(chapter_id)
            if chapter is None or chapter.status not in _CLAIMABLE_STATUSES:
                continue
            finalizer = await self._enqueue_chapter(container, chapter, entry.href)
            if finalizer is not None:
                finalizers.append(finalizer)

        await asyncio.gather(*finalizers)
        self.run_logger.log_stage_complete(
            "process",
            book_id=book_id,
            chapters=len(finalizers),
            stopped=book_id in self._stop_requested,
        )

    async def _enqueue_chapter(
        self,
        container: EpubContainer,
        chapter: Chapter,
        href: str,
    ) -> asyncio.Task[None] | None:
        """Claim, pre-fill, and enqueue one chapter; return its finalizer task."""

        chapter_log = logger.bind(book_id=chapter.book_id, chapter_id=chapter.id)
        try:
            await self.merger.claim(chapter.id)
            markup = await container.read_chapter_markup(href)
            normalized = self.normalizer.normalize(markup)
            words = normalized.words
            chunks = self.chunker.to_chunks(chapter.id, words)
            for chunk in chunks:
                await self.merger.append_words(
                    chapter.id,
                    chunk.start_word_index,
                    words[chunk.start_word_index : chunk.end_word_index],
                )
                await self.merger.upsert_subchapter(
                    chapter.id,
                    chunk.index,
                    start_word_index=chunk.start_word_index,
                    end_word_index=chunk.end_word_index,
                )
        except DocumentNotFoundError:
            chapter_log.info("Chapter {} was removed before it was enqueued.", chapter.id)
            return None
        except (ContainerError, ContentMismatchError) as exc:
            chapter_log.error("Chapter {} failed: {}", chapter.id, exc)
            self.run_logger.log_stage_failure("parse", type(exc).__name__, chapter_id=chapter.id)
            await self.merger.mark_error(chapter.id)
            return None

        self.run_logger.log_stage_complete(
            "chunk", chapter_id=chapter.id, words=len(words), chunks=len(chunks)
        )
        tasks = await self._missing_tasks(chapter, chunks)
        if chapter.book_id in self._stop_requested:
            return None
        self.executor.start_chapter(chapter.id, len(tasks))
        futures: list[asyncio.Future[TaskStatus]] = []
        for task in tasks:
            self.scheduler.add_task(task)
            futures.append(self.scheduler.completion(task.id))
        return asyncio.get_running_loop().create_task(
            self._finalize_when_done(chapter.id, futures, normalized.title)
        )

    async def _missing_tasks(
        self,
        chapter: Chapter,
        chunks: list[ChunkDescriptor],
    ) -> list[IngestionTask]:
        """Build tasks for chunks whose density or summary has not been merged yet."""

        current = await self.store.chapters.find_one(chapter.id)
        subchapters = current.subchapters if current is not None else ()
        tasks: list[IngestionTask] = []
        for chunk in chunks:
            subchapter = subchapters[chunk.index] if chunk.index < len(subchapters) else None
            for task_type, done in (
                (TaskType.DENSITY, subchapter is not None and subchapter.has_density),
                (TaskType.SUMMARY, subchapter is not None and subchapter.has_summary),
            ):
                if done:
                    continue
                tasks.append(
                    IngestionTask(
                        id=IngestionTask.make_id(chapter.book_id, chapter.id, chunk.index, task_type),
                        book_id=chapter.book_id,
                        chapter_id=chapter.id,
                        subchapter_index=chunk.index,
                        start_word_index=chunk.start_word_index,
                        end_word_index=chunk.end_word_index,
                        type=task_type,
                        text=chunk.text,
                    )
                )
        return tasks

    async def _finalize_when_done(
        self,
        chapter_id: str,
        futures: list[asyncio.Future[TaskStatus]],
        title: str | None,
    ) -> None:
        """Mark a chapter ready once its tasks end, unless processing was stopped."""

        statuses = await asyncio.gather(*futures)
        self.executor.finish_chapter(chapter_id)
        if TaskStatus.CANCELLED in statuses:
            logger.info("Chapter {} left resumable after stop.", chapter_id)
            return
        changes: dict[str, object] = {"progress": 100}
        if title:
            changes["title"] = title
        try:
            chapter = await self.merger.advance_status(chapter_id, ChapterStatus.READY, **changes)
            await self.merger.add_book_words(chapter.book_id, len(chapter.content))
        except DocumentNotFoundError:
            logger.info("Chapter {} was removed before finalization.", chapter_id)
            return
        self.run_logger.log_stage_complete(
            "finalize",
            chapter_id=chapter_id,
            words=len(chapter.content),
            failed_tasks=statuses.count(TaskStatus.FAILED),
        )

    async def estimate_book_density(
        self,
        book_id: str,
        estimator: LogprobDensityEstimator | None = None,
    ) -> int:
        """Re-estimate densities of ready chapters from token log probabilities.

        Returns:
            Number of windows whose densities were replaced.
        """

        estimator = estimator or LogprobDensityEstimator(
            self.service, model_tier=self.config.estimator_model_tier
        )
        chapters = await self.store.chapters.find(
            lambda chapter: chapter.book_id == book_id and chapter.status is ChapterStatus.READY
        )
        updated = 0
        for chapter in sorted(chapters, key=lambda item: item.index):
            for start, end in density_windows(
                chapter.content,
                window_words=self.config.density_window_words,
                lookahead_words=self.config.density_lookahead_words,
            ):
                densities = await estimator.estimate(chapter.content[start:end])
                if densities is None:
                    continue
                await self.merger.splice_densities(chapter.id, start, densities)
                updated += 1
        self.run_logger.log_stage_complete("estimate", book_id=book_id, windows=updated)
        return updated

    async def remove_book(self, book_id: str) -> bool:
        """Delete a book with its chapters, images, package, and reading state."""

        self.stop_processing(book_id)
        book = await self.store.books.find_one(book_id)
        for chapter in await self.store.chapters.find(lambda item: item.book_id == book_id):
            await self.store.chapters.remove(chapter.id)
        for image in await self.store.images.find(lambda item: item.book_id == book_id):
            await self.store.images.remove(image.id)
        await self.store.raw_files.remove(book_id)
        await self.store.reading_states.remove(book_id)
        removed = await self.store.books.remove(book_id)
        self.run_logger.log_stage_complete("remove", book_id=book_id, found=book is not None)
        return removed
