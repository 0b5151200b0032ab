"""Execution of scheduled enrichment tasks.

Responsibilities:
- Route DENSITY tasks through windowed density analysis and SUMMARY tasks
  through the summarizer.
- Merge each result into the owning chapter as soon as it is available.
- Maintain per-chapter progress and throughput metrics.
"""

from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Callable

from ..errors import DocumentNotFoundError
from ..llm.density import DensityAnalyzer
from ..llm.summarizer import Summarizer
from ..models.datatypes import IngestionTask, TaskType
from ..telemetry.logger import RunLogger
from ..text.chunking import DEFAULT_LOOKAHEAD_WORDS, DEFAULT_WINDOW_WORDS, density_windows
from .merge import ChapterMerger


def now_ms() -> int:
    """Return wall-clock time in epoch milliseconds."""

    return int(time.time() * 1000)


@dataclass(slots=True)
class ChapterRun:
    """Progress of one chapter's scheduled tasks within a processing run."""

    chapter_id: str
    total_tasks: int
    started_at_ms: int
    finished_tasks: int = 0
    density_words: int = 0

    def progress_percent(self) -> int:
        """Return finished tasks as a percentage of scheduled tasks."""

        if self.total_tasks <= 0:
            return 100
        return round(self.finished_tasks / self.total_tasks * 100)

    def words_per_minute(self, at_ms: int) -> int:
        """Return density-enriched words per elapsed minute."""

        elapsed_minutes = (at_ms - self.started_at_ms) / 60000
        if elapsed_minutes <= 0:
            return 0
        return round(self.density_words / elapsed_minutes)


class EnrichmentExecutor:
    """Scheduler executor performing DENSITY and SUMMARY tasks."""

    def __init__(
        self,
        *,
        density_analyzer: DensityAnalyzer,
        summarizer: Summarizer,
        merger: ChapterMerger,
        window_words: int = DEFAULT_WINDOW_WORDS,
        lookahead_words: int = DEFAULT_LOOKAHEAD_WORDS,
        run_logger: RunLogger | None = None,
        clock_ms: Callable[[], int] = now_ms,
    ) -> None:
        """Initialize analyzers, merge layer, windowing, and metrics clock."""

        self.density_analyzer = density_analyzer
        self.summarizer = summarizer
        self.merger = merger
        self.window_words = window_words
        self.lookahead_words = lookahead_words
        self.run_logger = run_logger or RunLogger()
        self.clock_ms = clock_ms
        self.runs: dict[str, ChapterRun] = {}

    def start_chapter(self, chapter_id: str, total_tasks: int) -> ChapterRun:
        """Begin tracking metrics for a chapter's scheduled tasks."""

        run = ChapterRun(
            chapter_id=chapter_id,
            total_tasks=total_tasks,
            started_at_ms=self.clock_ms(),
        )
        self.runs[chapter_id] = run
        return run

    def finish_chapter(self, chapter_id: str) -> ChapterRun | None:
        """Stop tracking a chapter and return its final run state."""

        return self.runs.pop(chapter_id, None)

    async def __call__(self, task: IngestionTask) -> None:
        """Execute one task and record chapter metrics."""

        if task.type is TaskType.DENSITY:
            tokens_per_minute = await self._run_density(task)
        else:
            tokens_per_minute = await self._run_summary(task)
        await self._record_metrics(task, tokens_per_minute)

    async def _run_density(self, task: IngestionTask) -> int:
        """Analyze a chunk window by window, splicing each result immediately."""

        chapter = await self.merger.chapters.find_one(task.chapter_id)
        if chapter is None:
            raise DocumentNotFoundError(self.merger.chapters.name, task.chapter_id)
        subchapters = chapter.subchapters
        if task.subchapter_index < len(subchapters) and subchapters[task.subchapter_index].junk:
            self.run_logger.log_stage_complete(
                "density", chapter_id=task.chapter_id, chunk=task.subchapter_index, skipped="junk"
            )
            await self._mark_subchapter(task, has_density=True)
            return 0

        words = task.text.split()
        last_tpm = 0
        for window_start, window_end in density_windows(
            words,
            window_words=self.window_words,
            lookahead_words=self.lookahead_words,
        ):
            analysis = await self.density_analyzer.analyze(words[window_start:window_end])
            await self.merger.splice_densities(
                task.chapter_id,
                task.start_word_index + window_start,
                analysis.densities,
            )
            last_tpm = analysis.tokens_per_minute or last_tpm
        await self._mark_subchapter(task, has_density=True)
        run = self.runs.get(task.chapter_id)
        if run is not None:
            run.density_words += len(words)
        self.run_logger.log_stage_complete(
            "density", chapter_id=task.chapter_id, chunk=task.subchapter_index, words=len(words)
        )
        return last_tpm

    async def _run_summary(self, task: IngestionTask) -> int:
        """Summarize a chunk and upsert its subchapter entry."""

        analysis = await self.summarizer.summarize(task.text, task.subchapter_index)
        result = analysis.result
        await self._mark_subchapter(
            task,
            title=result.title,
            summary=result.summary,
            junk=result.is_junk,
            has_summary=True,
        )
        self.run_logger.log_stage_complete(
            "summary",
            chapter_id=task.chapter_id,
            chunk=task.subchapter_index,
            junk=result.is_junk,
        )
        return analysis.tokens_per_minute

    async def _mark_subchapter(self, task: IngestionTask, **changes: object) -> None:
        """Upsert the task's subchapter with `changes`."""

        await self.merger.upsert_subchapter(
            task.chapter_id,
            task.subchapter_index,
            start_word_index=task.start_word_index,
            end_word_index=task.end_word_index,
            **changes,
        )

    async def _record_metrics(self, task: IngestionTask, tokens_per_minute: int) -> None:
        """Write progress and throughput metrics after a finished task."""

        at_ms = self.clock_ms()
        changes: dict[str, object] = {"last_chunk_completed_at": at_ms}
        if tokens_per_minute > 0:
            changes["last_tpm"] = tokens_per_minute
        run = self.runs.get(task.chapter_id)
        if run is not None:
            run.finished_tasks += 1
            changes["progress"] = run.progress_percent()
            speed = run.words_per_minute(at_ms)
            if speed > 0:
                changes["processing_speed"] = speed
        await self.merger.update_fields(task.chapter_id, **changes)
        if run is not None:
            self.run_logger.log_stage_progress(
                "merge", chapter_id=task.chapter_id, progress=changes["progress"]
            )
