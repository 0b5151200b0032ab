"""Per-word reading density estimation.

Responsibilities:
- Score sentence complexity with a model and map scores onto words.
- Combine model scores with a structural punctuation/length multiplier.
- Estimate density from prompt token log probabilities as an alternative signal.
- Never fail outward: backend or parsing failures yield neutral densities.

Key types:
- `DensityAnalyzer`: sentence-scoring analyzer used by ingestion tasks.
- `LogprobDensityEstimator`: surprisal-based estimator used for re-estimation.
"""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass, field
import math
import re
from typing import Any, Mapping, Sequence

from loguru import logger

from ..errors import InferenceError
from ..models.datatypes import PromptFragment
from ..text.chunking import ends_sentence
from .lenient_json import LenientJSONError, clean_key, parse_lenient_object
from .prompts import DEFAULT_LIBRARIAN_BASE_PROMPT, PromptLibrary, compose_system_prompt
from .service import InferenceService

NEUTRAL_DENSITY = 1.0
NEUTRAL_SCORE = 5.0
MIN_DENSITY = 0.5
MAX_DENSITY = 5.0

_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]+[\"']?(?=\s|$)|[^.!?]+$")
_CLAUSE_END_RE = re.compile(r"[,;][\"']?$")
_SPECIAL_TOKEN_RE = re.compile(r"^(?:<\|[^|]*\|>|<s>|</s>|<bos>|<eos>)$")


def split_sentences(text: str) -> list[str]:
    """Split text into trimmed sentences, keeping terminal punctuation and quotes."""

    sentences = [match.strip() for match in _SENTENCE_RE.findall(text)]
    sentences = [sentence for sentence in sentences if sentence]
    if sentences:
        return sentences
    stripped = text.strip()
    return [stripped] if stripped else []


def structural_multiplier(word: str) -> float:
    """Return the punctuation/length pacing multiplier for one word."""

    if ends_sentence(word):
        return 3.0
    if _CLAUSE_END_RE.search(word):
        return 1.5
    if len(word) > 8:
        return 1.2
    return 1.0


def density_factor(score: float) -> float:
    """Convert a 0-10 complexity score to a multiplier; 0 stays an exact skip."""

    if score == 0:
        return 0.0
    return 1 + (score - 5) * 0.1


def clamp_density(value: float) -> float:
    """Clamp a non-zero density to the playable range; exact zero is preserved."""

    if value == 0:
        return 0.0
    return max(MIN_DENSITY, min(MAX_DENSITY, value))


def fit_length(densities: list[float], word_count: int) -> list[float]:
    """Pad with neutral density or truncate so the result has `word_count` entries."""

    if len(densities) < word_count:
        return densities + [NEUTRAL_DENSITY] * (word_count - len(densities))
    return densities[:word_count]


def normalize_scores(parsed: Mapping[str, Any]) -> dict[str, float]:
    """Normalize reply keys with `clean_key` and keep finite numeric values."""

    scores: dict[str, float] = {}
    for raw_key, raw_value in parsed.items():
        if isinstance(raw_value, bool):
            continue
        try:
            value = float(raw_value)
        except (TypeError, ValueError, OverflowError):
            continue
        if not math.isfinite(value):
            continue
        scores[clean_key(str(raw_key))] = value
    return scores


def parse_density_scores(reply: str) -> dict[str, float]:
    """Parse a scoring reply into `{cleaned first words: score}`; empty on failure."""

    try:
        parsed = parse_lenient_object(reply, loose_scores=True)
    except LenientJSONError as exc:
        logger.warning("Could not parse density reply: {}", exc)
        return {}
    return normalize_scores(parsed)


def lookup_score(scores: Mapping[str, float], sentence_words: Sequence[str]) -> float:
    """Find a sentence's score by first-five-words key, then by first-three-words prefix."""

    first_five = clean_key(" ".join(sentence_words[:5]))
    if first_five in scores:
        return scores[first_five]
    first_three = clean_key(" ".join(sentence_words[:3]))
    if first_three:
        for key, value in scores.items():
            if key.startswith(first_three):
                return value
    return NEUTRAL_SCORE


def map_scores_to_densities(
    words: Sequence[str],
    sentences: Sequence[str],
    scores: Mapping[str, float],
) -> list[float]:
    """Return one density per word from sentence scores and structural multipliers."""

    densities: list[float] = []
    for sentence in sentences:
        sentence_words = sentence.split()
        factor = density_factor(lookup_score(scores, sentence_words))
        for word in sentence_words:
            densities.append(clamp_density(structural_multiplier(word) * factor))
    return fit_length(densities, len(words))


@dataclass(frozen=True, slots=True)
class DensityAnalysis:
    """Densities for one word range plus the call's throughput metrics."""

    densities: tuple[float, ...]
    tokens_per_minute: int = 0
    degraded: bool = False


@dataclass(slots=True)
class DensityAnalyzer:
    """Sentence-scoring density analyzer backed by the inference service."""

    service: InferenceService
    model_tier: str = "balanced"
    base_prompt: str = DEFAULT_LIBRARIAN_BASE_PROMPT
    fragments: tuple[PromptFragment, ...] = ()
    prompts: PromptLibrary = field(default_factory=PromptLibrary)

    async def analyze(self, words: Sequence[str]) -> DensityAnalysis:
        """Return densities aligned 1:1 with `words`; never raises on backend failure."""

        if not words:
            return DensityAnalysis(densities=())
        sentences = split_sentences(" ".join(words))
        system_prompt = compose_system_prompt(self.base_prompt, self.fragments)
        prompt = self.prompts.density_prompt(system_prompt, sentences)
        try:
            completion = await self.service.complete(prompt, self.model_tier)
        except Exception as exc:
            logger.warning("Density analysis failed, using neutral densities: {}", exc)
            return DensityAnalysis(
                densities=tuple([NEUTRAL_DENSITY] * len(words)),
                degraded=True,
            )
        try:
            scores = parse_density_scores(completion.text)
            densities = map_scores_to_densities(words, sentences, scores)
        except (RecursionError, ArithmeticError) as exc:
            logger.warning("Density reply could not be mapped, using neutral densities: {}", exc)
            return DensityAnalysis(
                densities=tuple([NEUTRAL_DENSITY] * len(words)),
                tokens_per_minute=completion.tokens_per_minute,
                degraded=True,
            )
        return DensityAnalysis(
            densities=tuple(densities),
            tokens_per_minute=completion.tokens_per_minute,
        )

    async def analyze_density_range(self, words: Sequence[str]) -> list[float]:
        """Return only the densities for `words`."""

        return list((await self.analyze(words)).densities)


def align_tokens_to_words(
    words: Sequence[str],
    tokens: Sequence[tuple[str, float]],
) -> list[float | None]:
    """Sum token surprisal per word of `" ".join(words)` by character offsets.

    Special tokens and tokens that do not match the text at the running offset
    are skipped. Words with no aligned tokens get `None`.
    """

    text = " ".join(words)
    starts: list[int] = []
    position = 0
    for word in words:
        starts.append(position)
        position += len(word) + 1

    surprisal: list[float | None] = [None] * len(words)
    offset = 0
    for token, logprob in tokens:
        if not token or _SPECIAL_TOKEN_RE.match(token):
            continue
        if text.startswith(token, offset):
            token_start = offset
        else:
            found = text.find(token, offset)
            if found < 0 or text[offset:found].strip():
                continue
            token_start = found
        offset = token_start + len(token)
        anchor = token_start + (len(token) - len(token.lstrip()))
        if anchor >= len(text) or not starts:
            continue
        index = bisect_right(starts, anchor) - 1
        if index < 0:
            continue
        surprisal[index] = (surprisal[index] or 0.0) + max(0.0, -logprob)
    return surprisal


def surprisal_densities(words: Sequence[str], surprisal: Sequence[float | None]) -> list[float]:
    """Convert per-word surprisal into densities relative to the window mean."""

    known = [value for value in surprisal if value is not None]
    mean = sum(known) / len(known) if known else 0.0
    densities: list[float] = []
    for word, value in zip(words, surprisal):
        if value is None or mean <= 0.0:
            factor = 1.0
        else:
            factor = max(0.5, min(1.5, value / mean))
        densities.append(max(MIN_DENSITY, min(MAX_DENSITY, structural_multiplier(word) * factor)))
    return densities


@dataclass(slots=True)
class LogprobDensityEstimator:
    """Density estimator based on prompt token surprisal."""

    service: InferenceService
    model_tier: str = "tiny"

    async def estimate(self, words: Sequence[str]) -> list[float] | None:
        """Return densities for `words`, or `None` when scoring fails."""

        if not words:
            return []
        try:
            token_logprobs = await self.service.score_tokens(" ".join(words), self.model_tier)
        except InferenceError as exc:
            logger.warning("Token scoring failed, keeping existing densities: {}", exc)
            return None
        surprisal = align_tokens_to_words(
            words,
            [(item.token, item.logprob) for item in token_logprobs],
        )
        return surprisal_densities(words, surprisal)
