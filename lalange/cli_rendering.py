"""CLI output and error rendering helpers.

This module centralizes user-facing CLI presentation for command diagnostics,
book summaries, chapter status rows, and live processing progress.
"""

from __future__ import annotations

from typing import NoReturn

import typer

from .errors import PipelineStageError
from .models.datatypes import Book, Chapter, ChapterStatus
from .reading_time import estimate_reading_time, format_reading_time


def exit_with_command_error(command_name: str, exc: Exception) -> NoReturn:
    """Print concise diagnostics for command failures and exit with code 1."""

    if isinstance(exc, PipelineStageError):
        typer.secho(
            f"{command_name} failed at stage `{exc.stage}`: {exc.detail}",
            fg=typer.colors.RED,
            err=True,
        )
        if exc.hint:
            typer.secho(f"Hint: {exc.hint}", fg=typer.colors.YELLOW, err=True)
    else:
        typer.secho(f"{command_name} failed: {exc}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1) from exc


def echo_book_summary(book: Book) -> None:
    """Print book identity and aggregate word count."""

    typer.echo(f"Book id: {book.id}")
    typer.echo(f"Title: {book.title}")
    typer.echo(f"Author: {book.author}")
    typer.echo(f"Chapters: {len(book.chapter_ids)}")
    typer.echo(f"Words: {book.total_words}")


def echo_chapter_rows(chapters: list[Chapter], *, reading_wpm: int, now_ms: int) -> None:
    """Print one deterministic status row per chapter in reading order."""

    for chapter in sorted(chapters, key=lambda item: item.index):
        estimate = estimate_reading_time(chapter, reading_wpm, now_ms)
        typer.echo(
            f"{chapter.index + 1}. {chapter.title} "
            f"[{chapter.status.value} {chapter.progress}%] "
            f"words={len(chapter.content)} "
            f"time={format_reading_time(estimate.available_minutes)}"
        )


class ChapterProgressPrinter:
    """Print a progress line whenever a chapter's status or progress changes."""

    def __init__(self, command_name: str) -> None:
        """Initialize with the command name shown on each line."""

        self._command_name = command_name
        self._last_seen: dict[str, tuple[ChapterStatus, int]] = {}

    def __call__(self, event: str, chapter: Chapter) -> None:
        """Store subscription callback for chapter documents."""

        if event == "remove":
            self._last_seen.pop(chapter.id, None)
            return
        state = (chapter.status, chapter.progress)
        if self._last_seen.get(chapter.id) == state:
            return
        self._last_seen[chapter.id] = state
        typer.echo(
            f"[progress] command={self._command_name} chapter={chapter.index + 1} "
            f"status={chapter.status.value} progress={chapter.progress}%"
        )
