"""Reading-time estimates derived from chapter processing metrics.

Responsibilities:
- Report full reading time for chapters that finished processing.
- Project words already enriched but not yet reported for chapters in progress.
- Render minute counts as short human-readable labels.
"""

from __future__ import annotations

from dataclasses import dataclass
import math

from .models.datatypes import Chapter, ChapterStatus

DEFAULT_READING_WPM = 300


@dataclass(frozen=True, slots=True)
class ReadingTimeEstimate:
    """Reading-time figures for one chapter.

    Attributes:
        total_minutes: Full reading time; `0.0` until the chapter is ready.
        estimated_words: Reported words plus the projected backlog.
        available_minutes: Reading time covered by `estimated_words`.
        processing_wpm: Enrichment speed used for the projection.
        is_processing: Whether the chapter is still being processed.
    """

    total_minutes: float
    estimated_words: int
    available_minutes: float
    processing_wpm: int
    is_processing: bool


def estimate_reading_time(
    chapter: Chapter,
    reading_wpm: int = DEFAULT_READING_WPM,
    now_ms: int = 0,
) -> ReadingTimeEstimate:
    """Estimate reading time at `reading_wpm`, projecting progress for processing chapters."""

    if reading_wpm <= 0:
        raise ValueError("Reading speed must be a positive number of words per minute.")
    reported = len(chapter.content)
    if chapter.status is ChapterStatus.READY:
        minutes = reported / reading_wpm
        return ReadingTimeEstimate(
            total_minutes=minutes,
            estimated_words=reported,
            available_minutes=minutes,
            processing_wpm=0,
            is_processing=False,
        )

    is_processing = chapter.status is ChapterStatus.PROCESSING
    estimated = reported
    if is_processing and chapter.processing_speed > 0 and chapter.last_chunk_completed_at > 0:
        elapsed_minutes = max(0, now_ms - chapter.last_chunk_completed_at) / 60000
        estimated += math.floor(chapter.processing_speed * elapsed_minutes)
    return ReadingTimeEstimate(
        total_minutes=0.0,
        estimated_words=estimated,
        available_minutes=estimated / reading_wpm,
        processing_wpm=chapter.processing_speed,
        is_processing=is_processing,
    )


def format_reading_time(minutes: float) -> str:
    """Render minutes as `< 1 min`, `N min`, or `Hh Mm`."""

    if minutes < 1:
        return "< 1 min"
    if minutes < 60:
        return f"{round(minutes)} min"
    hours = math.floor(minutes / 60)
    remainder = round(minutes % 60)
    if remainder == 60:
        hours, remainder = hours + 1, 0
    return f"{hours}h {remainder}m" if remainder > 0 else f"{hours}h"
