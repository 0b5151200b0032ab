"""Unit tests for sentence-scored and logprob-based density estimation."""

from __future__ import annotations

import asyncio

import pytest

from lalange.llm.density import (
    DensityAnalyzer,
    LogprobDensityEstimator,
    align_tokens_to_words,
    clamp_density,
    density_factor,
    fit_length,
    lookup_score,
    map_scores_to_densities,
    parse_density_scores,
    split_sentences,
    structural_multiplier,
    surprisal_densities,
)
from lalange.llm.service import InferenceService
from lalange.models.datatypes import TokenLogprob
from tests.fakes import ScriptedBackend


def test_split_sentences_keeps_terminators_quotes_and_remainder() -> None:
    """Sentences should keep punctuation and a trailing quote; leftovers form one sentence."""

    assert split_sentences("Hello there. How are you? Fine") == [
        "Hello there.",
        "How are you?",
        "Fine",
    ]
    assert split_sentences('He said "Stop." Then left.') == ['He said "Stop."', "Then left."]
    assert split_sentences("no punctuation here") == ["no punctuation here"]
    assert split_sentences("   ") == []


def test_structural_multiplier_follows_punctuation_and_length() -> None:
    """Sentence ends slow most, clause ends less, long words slightly."""

    assert structural_multiplier("end.") == 3.0
    assert structural_multiplier('quote."') == 3.0
    assert structural_multiplier("pause,") == 1.5
    assert structural_multiplier("extraordinary") == 1.2
    assert structural_multiplier("cat") == 1.0


def test_density_factor_and_clamp_preserve_exact_zero() -> None:
    """Score 0 is an exact skip; other values are clamped to the playable range."""

    assert density_factor(0) == 0.0
    assert density_factor(5) == 1.0
    assert density_factor(10) == pytest.approx(1.5)
    assert density_factor(2) == pytest.approx(0.7)
    assert clamp_density(0.0) == 0.0
    assert clamp_density(0.1) == 0.5
    assert clamp_density(9.0) == 5.0
    assert clamp_density(2.1) == 2.1


def test_map_scores_zero_score_skips_even_terminal_words() -> None:
    """Junk sentences should map to exact-zero densities regardless of punctuation."""

    words = ["Page", "12.", "Real", "text."]
    sentences = split_sentences(" ".join(words))

    densities = map_scores_to_densities(words, sentences, {"Page 12": 0, "Real text": 5})

    assert densities == [0.0, 0.0, 1.0, 3.0]


def test_lookup_score_uses_prefix_match_and_neutral_default() -> None:
    """Keys shorter than five words should still match by their first three words."""

    scores = {"The wealth of those": 9.0}

    assert lookup_score(scores, "The wealth of those societies in which".split()) == 9.0
    assert lookup_score(scores, "Completely different sentence here".split()) == 5.0
    assert lookup_score({"x": 1.0}, ["...", "!!"]) == 5.0


def test_parse_density_scores_returns_empty_mapping_on_garbage() -> None:
    """Unparseable replies should produce no scores rather than raising."""

    assert parse_density_scores("I refuse.") == {}
    assert parse_density_scores('{"A b": "7", "flag": true, "bad": "x"}') == {"A b": 7.0}


def test_fit_length_pads_and_truncates() -> None:
    """Density arrays should always match the word count."""

    assert fit_length([2.0], 3) == [2.0, 1.0, 1.0]
    assert fit_length([2.0, 3.0, 4.0], 2) == [2.0, 3.0]


def test_analyzer_handles_truncated_reply() -> None:
    """A reply missing its closing brace should still yield one density per word."""

    backend = ScriptedBackend(lambda _prompt: '{"a b c d e": 5, "f g h i j": 2')
    analyzer = DensityAnalyzer(InferenceService(backend))
    words = "a b c d e. f g h i j.".split()

    densities = asyncio.run(analyzer.analyze_density_range(words))

    assert len(densities) == 10
    assert densities[:5] == [1.0, 1.0, 1.0, 1.0, 3.0]
    assert densities[5:] == pytest.approx([0.7, 0.7, 0.7, 0.7, 2.1])
    assert all(late < early for early, late in zip(densities[:5], densities[5:]))


def test_analyzer_returns_neutral_densities_when_backend_fails() -> None:
    """Backend failures should degrade to 1.0 per word without raising."""

    analyzer = DensityAnalyzer(InferenceService(ScriptedBackend(fail_completions=True)))
    words = ["Hello", "there.", "Bye", "now."]

    analysis = asyncio.run(analyzer.analyze(words))

    assert analysis.degraded is True
    assert analysis.densities == (1.0, 1.0, 1.0, 1.0)


def test_analyzer_skips_scores_too_large_for_a_float() -> None:
    """An integer score beyond float range should count as a missing score."""

    reply = '{"This is fine": 1' + "0" * 400 + ', "And so is this": 2}'
    analyzer = DensityAnalyzer(InferenceService(ScriptedBackend(lambda _prompt: reply)))
    words = ["This", "is", "fine.", "And", "so", "is", "this."]

    densities = asyncio.run(analyzer.analyze_density_range(words))

    assert densities == pytest.approx([1.0, 1.0, 3.0, 0.7, 0.7, 0.7, 2.1])


def test_analyzer_returns_neutral_densities_for_deeply_nested_reply() -> None:
    """Replies too deeply nested to decode should degrade instead of raising."""

    reply = '{"x": ' + "[" * 100_000 + "]" * 100_000 + "}"
    analyzer = DensityAnalyzer(InferenceService(ScriptedBackend(lambda _prompt: reply)))

    analysis = asyncio.run(analyzer.analyze(["Hello", "there."]))

    assert analysis.degraded is True
    assert analysis.densities == (1.0, 1.0)


def test_analyzer_uses_structural_multipliers_when_reply_is_unparseable() -> None:
    """Garbage replies should fall back to neutral scores times structure."""

    backend = ScriptedBackend(lambda _prompt: "Sorry, I cannot score that.")
    analyzer = DensityAnalyzer(InferenceService(backend))

    analysis = asyncio.run(analyzer.analyze(["Hello", "there.", "Bye", "now."]))

    assert analysis.degraded is False
    assert analysis.densities == (1.0, 3.0, 1.0, 3.0)
    assert analysis.tokens_per_minute == 3600


def test_analyzer_sends_sentences_with_enabled_fragments_to_configured_tier() -> None:
    """Prompts should list sentences and include only enabled fragments."""

    from lalange.models.datatypes import PromptFragment

    backend = ScriptedBackend()
    analyzer = DensityAnalyzer(
        InferenceService(backend),
        model_tier="pro",
        base_prompt="BASE",
        fragments=(PromptFragment("KEEP"), PromptFragment("DROP", enabled=False)),
    )

    asyncio.run(analyzer.analyze(["One", "two.", "Three."]))

    model, prompt = backend.prompts[0]
    assert model == "mistral:7b"
    assert prompt.startswith("BASE\nKEEP")
    assert "DROP" not in prompt
    assert prompt.rstrip().endswith("One two.\nThree.")
    assert asyncio.run(analyzer.analyze([])).densities == ()


def test_align_tokens_to_words_skips_special_tokens_and_sums_subwords() -> None:
    """Sub-word tokens should accumulate surprisal on the word they start in."""

    tokens = [("<s>", 0.0), ("Hello", -1.0), (" world", -2.0), (".", -0.5), ("zzz", -9.0)]

    assert align_tokens_to_words(["Hello", "world."], tokens) == [1.0, 2.5]
    assert align_tokens_to_words(["Hello", "world."], []) == [None, None]


def test_surprisal_densities_scale_by_window_mean_and_structure() -> None:
    """Surprisal factors are clamped to [0.5, 1.5] before structure is applied."""

    densities = surprisal_densities(["Hello", "world."], [1.0, 2.5])

    assert densities == pytest.approx([1.0 / 1.75, 3.0 * 2.5 / 1.75])
    assert surprisal_densities(["odd", "word."], [None, None]) == [1.0, 3.0]
    assert surprisal_densities(["a", "b"], [0.1, 10.0]) == pytest.approx([0.5, 1.5])


def test_logprob_estimator_returns_none_when_scoring_fails() -> None:
    """Scoring failures should leave densities untouched by returning `None`."""

    failing = LogprobDensityEstimator(InferenceService(ScriptedBackend()))
    working = LogprobDensityEstimator(
        InferenceService(
            ScriptedBackend(
                token_logprobs=[TokenLogprob("Hi", -1.0), TokenLogprob(" there", -1.0)]
            )
        )
    )

    assert asyncio.run(failing.estimate(["Hi", "there."])) is None
    assert asyncio.run(working.estimate(["Hi", "there."])) == pytest.approx([1.0, 3.0])
