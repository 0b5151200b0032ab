"""Integration tests for stopping, resuming, and removing books mid-enrichment."""

from __future__ import annotations

import asyncio

from lalange.ingest.pipeline import IngestionPipeline
from lalange.io.storage import DocumentStore
from lalange.llm.service import InferenceService
from lalange.models.datatypes import Book, Chapter, ChapterStatus
from tests.epub_factory import build_epub, chapter_markup
from tests.fakes import DENSITY_PROMPT_MARKER, ScriptedBackend, default_reply

CHAPTERS = [
    chapter_markup("<p>The first chapter opens quietly. Nothing happens yet.</p>"),
    chapter_markup("<p>The second chapter brings a storm. Everyone runs.</p>"),
]


def _sorted_chapters(store: DocumentStore) -> list[Chapter]:
    """Return stored chapters in reading order."""

    return sorted(store.chapters.snapshot(), key=lambda chapter: chapter.index)


def test_stop_leaves_chapters_resumable_and_resume_skips_finished_work(
    store: DocumentStore,
) -> None:
    """Stopping mid-run should keep merged results; resuming should only run what is missing."""

    control: dict[str, object] = {"pipeline": None, "book_id": None, "stopped": False}

    def _responder(prompt: str) -> str:
        """Request a stop while the first task is running."""

        if not control["stopped"]:
            control["stopped"] = True
            pipeline = control["pipeline"]
            assert isinstance(pipeline, IngestionPipeline)
            pipeline.stop_processing(str(control["book_id"]))
        return default_reply(prompt)

    backend = ScriptedBackend(_responder)
    pipeline = IngestionPipeline(store=store, service=InferenceService(backend))
    control["pipeline"] = pipeline

    async def _scenario() -> tuple[Book, list[Chapter], bool, bool]:
        result = await pipeline.initial_ingest(build_epub(CHAPTERS), "storm.epub")
        book = await pipeline.store_ingest_result(result)
        control["book_id"] = book.id

        first_run = pipeline.process_chapters_in_background(book.id)
        running = pipeline.is_processing(book.id)
        await first_run
        await pipeline.scheduler.wait_idle()
        after_stop = _sorted_chapters(store)

        await pipeline.process_chapters_in_background(book.id)
        await pipeline.scheduler.wait_idle()
        return book, after_stop, running, pipeline.is_processing(book.id)

    book, after_stop, running, still_running = asyncio.run(_scenario())

    first_after_stop = after_stop[0]
    assert running is True
    assert still_running is False
    assert first_after_stop.status is ChapterStatus.PROCESSING
    assert first_after_stop.subchapters[0].has_density is True
    assert first_after_stop.subchapters[0].has_summary is False
    assert all(chapter.status is not ChapterStatus.READY for chapter in after_stop)

    final = _sorted_chapters(store)
    assert [chapter.status for chapter in final] == [ChapterStatus.READY, ChapterStatus.READY]
    assert final[0].content == first_after_stop.content
    assert all(sub.has_density and sub.has_summary for chapter in final for sub in chapter.subchapters)
    density_prompts = [prompt for _model, prompt in backend.prompts if DENSITY_PROMPT_MARKER in prompt]
    assert len(density_prompts) == 2
    stored_book = asyncio.run(store.books.find_one(book.id))
    assert stored_book is not None
    assert stored_book.total_words == sum(len(chapter.content) for chapter in final)


def test_background_processing_returns_the_running_task(store: DocumentStore) -> None:
    """Starting processing twice should reuse the active run."""

    pipeline = IngestionPipeline(store=store, service=InferenceService(ScriptedBackend()))

    async def _scenario() -> bool:
        book = await pipeline.store_ingest_result(
            await pipeline.initial_ingest(build_epub(CHAPTERS), "storm.epub")
        )
        first = pipeline.process_chapters_in_background(book.id)
        second = pipeline.process_chapters_in_background(book.id)
        await first
        await pipeline.scheduler.wait_idle()
        return first is second

    assert asyncio.run(_scenario()) is True
    assert all(chapter.status is ChapterStatus.READY for chapter in store.chapters.snapshot())


def test_remove_book_cascades_to_every_collection(store: DocumentStore) -> None:
    """Removing a book should delete chapters, images, package, and reading state."""

    pipeline = IngestionPipeline(store=store, service=InferenceService(ScriptedBackend()))
    keep_data = build_epub([chapter_markup("<p>Keep me.</p>")], images={"keep.png": b"png"})
    drop_data = build_epub(CHAPTERS, images={"cover.png": b"png"}, cover="cover.png")

    async def _scenario() -> tuple[Book, Book, bool, bool]:
        keep = await pipeline.store_ingest_result(await pipeline.initial_ingest(keep_data, "keep.epub"))
        drop = await pipeline.store_ingest_result(await pipeline.initial_ingest(drop_data, "drop.epub"))
        await pipeline.process_book(drop.id)
        await pipeline.scheduler.wait_idle()
        removed = await pipeline.remove_book(drop.id)
        removed_again = await pipeline.remove_book(drop.id)
        return keep, drop, removed, removed_again

    keep, drop, removed, removed_again = asyncio.run(_scenario())

    assert removed is True
    assert removed_again is False
    for collection in store.collections():
        owners = {getattr(doc, "book_id", getattr(doc, "id", None)) for doc in collection.snapshot()}
        assert drop.id not in owners
    assert [book.id for book in store.books.snapshot()] == [keep.id]
    assert [chapter.book_id for chapter in store.chapters.snapshot()] == [keep.id]
    assert [image.book_id for image in store.images.snapshot()] == [keep.id]
    assert [raw.id for raw in store.raw_files.snapshot()] == [keep.id]


def test_remove_during_processing_does_not_resurrect_chapters(store: DocumentStore) -> None:
    """Finalizers must tolerate chapters deleted while their tasks were in flight."""

    control: dict[str, object] = {"pipeline": None, "book_id": None, "removal": None}

    def _responder(prompt: str) -> str:
        """Schedule removal of the book while the first task is running."""

        if control["removal"] is None and DENSITY_PROMPT_MARKER in prompt:
            pipeline = control["pipeline"]
            assert isinstance(pipeline, IngestionPipeline)
            control["removal"] = asyncio.get_running_loop().create_task(
                pipeline.remove_book(str(control["book_id"]))
            )
        return default_reply(prompt)

    pipeline = IngestionPipeline(store=store, service=InferenceService(ScriptedBackend(_responder)))
    control["pipeline"] = pipeline

    async def _scenario() -> None:
        book = await pipeline.store_ingest_result(
            await pipeline.initial_ingest(build_epub(CHAPTERS), "storm.epub")
        )
        control["book_id"] = book.id
        await pipeline.process_chapters_in_background(book.id)
        removal = control["removal"]
        assert isinstance(removal, asyncio.Task)
        await removal
        await pipeline.scheduler.wait_idle()

    asyncio.run(_scenario())

    assert store.books.snapshot() == []
    assert store.chapters.snapshot() == []
