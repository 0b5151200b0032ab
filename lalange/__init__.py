"""Top-level package for lalange.

This package ingests EPUB books into per-chapter word streams and enriches
them with reading-density multipliers and chunk summaries from a local
inference server, prioritizing the text around the reader's cursor. The main
orchestration entry point is `IngestionPipeline`.
"""

from .ingest.pipeline import IngestionPipeline
from .ingest.scheduler import IngestionScheduler
from .io.storage import DocumentStore
from .llm.service import InferenceService

__all__ = [
    "DocumentStore",
    "InferenceService",
    "IngestionPipeline",
    "IngestionScheduler",
    "__version__",
]

__version__ = "0.1.0"
