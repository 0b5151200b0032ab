"""Chunk summarization with junk classification.

Responsibilities:
- Ask the model for a `{status, title, summary}` object for one chunk excerpt.
- Fall back to a placeholder title and empty summary on any failure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from loguru import logger

from ..models.datatypes import CompletionResult, PromptFragment, SummaryResult
from .lenient_json import LenientJSONError, parse_lenient_object
from .prompts import (
    DEFAULT_SUMMARIZER_BASE_PROMPT,
    DEFAULT_SUMMARY_INSTRUCTION,
    PromptLibrary,
    compose_system_prompt,
)
from .service import InferenceService

JUNK_TITLE = "SKIPPED (JUNK)"
JUNK_SUMMARY = "Content identified as non-narrative junk."


def default_title(chunk_index: int) -> str:
    """Return the placeholder title for a 0-based chunk index."""

    return f"Part {chunk_index + 1}"


def interpret_summary(
    parsed: Mapping[str, Any],
    chunk_index: int,
    *,
    junk_removal: bool,
) -> SummaryResult:
    """Convert a parsed reply object into a summary result."""

    status = str(parsed.get("status") or "CONTENT").strip().upper()
    if junk_removal and status == "JUNK":
        return SummaryResult(title=JUNK_TITLE, summary=JUNK_SUMMARY, is_junk=True)
    title = parsed.get("title")
    summary = parsed.get("summary")
    return SummaryResult(
        title=title.strip() if isinstance(title, str) and title.strip() else default_title(chunk_index),
        summary=summary.strip() if isinstance(summary, str) else "",
    )


@dataclass(frozen=True, slots=True)
class SummaryAnalysis:
    """Summary for one chunk plus the call's throughput metrics."""

    result: SummaryResult
    tokens_per_minute: int = 0
    degraded: bool = False


@dataclass(slots=True)
class Summarizer:
    """Chunk summarizer backed by the inference service."""

    service: InferenceService
    model_tier: str = "balanced"
    base_prompt: str = DEFAULT_SUMMARIZER_BASE_PROMPT
    fragments: tuple[PromptFragment, ...] = ()
    instruction: str = DEFAULT_SUMMARY_INSTRUCTION
    junk_removal: bool = True
    excerpt_chars: int = 3000
    prompts: PromptLibrary = field(default_factory=PromptLibrary)

    async def summarize(self, text: str, chunk_index: int) -> SummaryAnalysis:
        """Summarize one chunk; never raises on backend or parsing failure."""

        system_prompt = compose_system_prompt(self.base_prompt, self.fragments)
        prompt = self.prompts.summary_prompt(
            system_prompt,
            self.instruction,
            text[: self.excerpt_chars],
            junk_detection=self.junk_removal,
        )
        fallback = SummaryResult(title=default_title(chunk_index), summary="")
        try:
            completion: CompletionResult = await self.service.complete(prompt, self.model_tier)
        except Exception as exc:
            logger.warning("Summary for chunk {} failed: {}", chunk_index + 1, exc)
            return SummaryAnalysis(result=fallback, degraded=True)

        try:
            parsed = parse_lenient_object(completion.text)
        except LenientJSONError as exc:
            logger.warning("Could not parse summary reply for chunk {}: {}", chunk_index + 1, exc)
            return SummaryAnalysis(
                result=fallback,
                tokens_per_minute=completion.tokens_per_minute,
                degraded=True,
            )
        return SummaryAnalysis(
            result=interpret_summary(parsed, chunk_index, junk_removal=self.junk_removal),
            tokens_per_minute=completion.tokens_per_minute,
        )
