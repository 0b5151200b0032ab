"""Shared typed data models for lalange.

This package contains dataclasses used across ingestion modules to avoid
cross-module coupling and circular imports.
"""

from .datatypes import (
    Book,
    Chapter,
    ChapterStatus,
    ChunkDescriptor,
    CompletionResult,
    ImageAsset,
    IngestionTask,
    InitialIngestResult,
    RawFile,
    ReadingState,
    Subchapter,
    SummaryResult,
    TaskStatus,
    TaskType,
    TokenLogprob,
)

__all__ = [
    "Book",
    "Chapter",
    "ChapterStatus",
    "ChunkDescriptor",
    "CompletionResult",
    "ImageAsset",
    "IngestionTask",
    "InitialIngestResult",
    "RawFile",
    "ReadingState",
    "Subchapter",
    "SummaryResult",
    "TaskStatus",
    "TaskType",
    "TokenLogprob",
]
