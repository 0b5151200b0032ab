"""Cursor-aware priority scheduler for enrichment tasks.

Responsibilities:
- Hold pending enrichment tasks and drop duplicate enqueues.
- Re-score pending tasks whenever a task is added or the reader cursor moves.
- Dispatch one task at a time, highest score first, to an injected executor.
- Resolve a completion future per task with its final status.

Priority policy (pending tasks only, recomputed only when a cursor is set):
- +10000 when the task belongs to the active book.
- Active chapter: +5000, then by `distance = start_word_index - cursor`:
  passed chunk +100, current chunk (distance below the chunk window) +2000,
  future chunk `1000 - distance / 100`.
- Any other chapter: +500.
- +50 for density tasks.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from loguru import logger

from ..models.datatypes import IngestionTask, TaskStatus, TaskType

TaskExecutor = Callable[[IngestionTask], Awaitable[None]]

DEFAULT_CURRENT_CHUNK_WORDS = 2500


class IngestionScheduler:
    """Dynamic priority queue feeding a single dispatcher coroutine.

    `add_task`, `set_cursor`, `cancel_book`, and `completion` are synchronous
    and must be called from inside the running event loop.
    """

    def __init__(
        self,
        executor: TaskExecutor | None = None,
        *,
        current_chunk_words: int = DEFAULT_CURRENT_CHUNK_WORDS,
    ) -> None:
        """Initialize an empty scheduler with an optional task executor."""

        self._executor = executor
        self.current_chunk_words = current_chunk_words
        self._tasks: list[IngestionTask] = []
        self._in_flight: IngestionTask | None = None
        self._futures: dict[str, asyncio.Future[TaskStatus]] = {}
        self._dispatcher: asyncio.Task[None] | None = None
        self.active_book_id: str | None = None
        self.active_chapter_id: str | None = None
        self.cursor_word_index = 0
        self.completed_count = 0
        self.failed_count = 0

    def set_executor(self, executor: TaskExecutor) -> None:
        """Install the coroutine function that performs a task."""

        self._executor = executor

    @property
    def in_flight(self) -> IngestionTask | None:
        """Return the task currently executing, if any."""

        return self._in_flight

    def pending_tasks(self) -> list[IngestionTask]:
        """Return pending tasks in dispatch order."""

        return list(self._tasks)

    def has_work(self, book_id: str | None = None) -> bool:
        """Return whether tasks (optionally for one book) are pending or running."""

        tasks = list(self._tasks)
        if self._in_flight is not None:
            tasks.append(self._in_flight)
        return any(book_id is None or task.book_id == book_id for task in tasks)

    def set_cursor(self, book_id: str, chapter_id: str, word_index: int) -> None:
        """Record the reader position and re-score pending tasks."""

        self.active_book_id = book_id
        self.active_chapter_id = chapter_id
        self.cursor_word_index = word_index
        self.rebalance_priorities()

    def add_task(self, task: IngestionTask) -> bool:
        """Enqueue a task unless an identical one is pending or running.

        Returns:
            `True` when the task was enqueued, `False` for a duplicate.
        """

        if self._executor is None:
            raise RuntimeError("IngestionScheduler has no executor installed.")
        key = task.dedup_key
        if any(existing.dedup_key == key for existing in self._tasks) or (
            self._in_flight is not None and self._in_flight.dedup_key == key
        ):
            return False
        task.status = TaskStatus.PENDING
        task.priority = 0.0
        self._tasks.append(task)
        self._futures[task.id] = asyncio.get_running_loop().create_future()
        self.rebalance_priorities()
        self._ensure_dispatcher()
        return True

    def completion(self, task_id: str) -> asyncio.Future[TaskStatus]:
        """Return the future resolving to the final status of `task_id`.

        Futures are only tracked until their task finishes, so callers must take
        the future while the task is pending or running.

        Raises:
            KeyError: If the task is unknown or has already finished.
        """

        return self._futures[task_id]

    def score(self, task: IngestionTask) -> float:
        """Return the dispatch score of one task for the current cursor."""

        score = 0.0
        if task.book_id == self.active_book_id:
            score += 10000
        if task.chapter_id == self.active_chapter_id:
            score += 5000
            distance = task.start_word_index - self.cursor_word_index
            if distance < 0:
                score += 100
            elif distance < self.current_chunk_words:
                score += 2000
            else:
                score += 1000 - distance / 100
        else:
            score += 500
        if task.type is TaskType.DENSITY:
            score += 50
        return score

    def rebalance_priorities(self) -> None:
        """Re-score pending tasks and sort them by descending score."""

        if self.active_book_id is None:
            return
        for task in self._tasks:
            task.priority = self.score(task)
        self._tasks.sort(key=lambda task: task.priority, reverse=True)

    def cancel_book(self, book_id: str) -> int:
        """Withdraw a book's pending tasks; the running task is left to finish."""

        cancelled = [task for task in self._tasks if task.book_id == book_id]
        if not cancelled:
            return 0
        self._tasks = [task for task in self._tasks if task.book_id != book_id]
        for task in cancelled:
            self._finish(task, TaskStatus.CANCELLED)
        logger.info("Cancelled {} pending task(s) for book {}.", len(cancelled), book_id)
        return len(cancelled)

    async def wait_idle(self) -> None:
        """Wait until no task is pending or running."""

        while self._dispatcher is not None and not self._dispatcher.done():
            await asyncio.shield(self._dispatcher)

    async def close(self) -> None:
        """Cancel all pending tasks and wait for the running one to finish."""

        for book_id in {task.book_id for task in self._tasks}:
            self.cancel_book(book_id)
        await self.wait_idle()

    def _ensure_dispatcher(self) -> None:
        """Start the dispatcher coroutine if it is not running."""

        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.get_running_loop().create_task(self._dispatch_loop())

    async def _dispatch_loop(self) -> None:
        """Run pending tasks one at a time until none remain."""

        while self._tasks:
            task = self._tasks.pop(0)
            await self._run_task(task)

    async def _run_task(self, task: IngestionTask) -> None:
        """Execute one task and resolve its completion future."""

        assert self._executor is not None
        task.status = TaskStatus.PROCESSING
        self._in_flight = task
        bound = logger.bind(task_id=task.id)
        bound.debug("Dispatching {} task (priority {:.1f}).", task.type.value, task.priority)
        try:
            await self._executor(task)
        except Exception as exc:
            self.failed_count += 1
            bound.error("Task {} failed and was dropped: {}", task.id, exc)
            self._finish(task, TaskStatus.FAILED)
        else:
            self.completed_count += 1
            self._finish(task, TaskStatus.COMPLETED)
        finally:
            self._in_flight = None

    def _finish(self, task: IngestionTask, status: TaskStatus) -> None:
        """Set the final status and resolve the task's future."""

        task.status = status
        future = self._futures.pop(task.id, None)
        if future is not None and not future.done():
            future.set_result(status)
