"""Ingestion: scheduling, merge layer, enrichment execution, and orchestration."""

from .enrichment import ChapterRun, EnrichmentExecutor
from .merge import ChapterMerger, ContentMismatchError, InvalidTransitionError, update_with_retry
from .pipeline import IngestionPipeline, chapter_id_for
from .scheduler import IngestionScheduler

__all__ = [
    "ChapterMerger",
    "ChapterRun",
    "ContentMismatchError",
    "EnrichmentExecutor",
    "IngestionPipeline",
    "IngestionScheduler",
    "InvalidTransitionError",
    "chapter_id_for",
    "update_with_retry",
]
