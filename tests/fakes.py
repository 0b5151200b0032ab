"""Deterministic inference backend doubles shared by unit and integration tests."""

from __future__ import annotations

import asyncio
from typing import Callable, Iterable

from lalange.config import LalangeConfig
from lalange.errors import InferenceProviderError, ModelUnavailableError
from lalange.llm.lenient_json import clean_key
from lalange.models.datatypes import CompletionResult, TokenLogprob

DENSITY_PROMPT_MARKER = "Analyze the literary density"
_DENSITY_TEXT_MARKER = "TEXT TO ANALYZE:\n"


def prompt_sentences(prompt: str) -> list[str]:
    """Return the sentence lines embedded in a density scoring prompt."""

    _, _, block = prompt.partition(_DENSITY_TEXT_MARKER)
    return [line.strip() for line in block.splitlines() if line.strip()]


def uniform_density_reply(prompt: str, score: int = 2) -> str:
    """Return a JSON reply assigning `score` to every sentence of a density prompt."""

    entries = [
        f'"{clean_key(" ".join(sentence.split()[:5]))}": {score}'
        for sentence in prompt_sentences(prompt)
    ]
    return "{" + ", ".join(entries) + "}"


def default_reply(prompt: str) -> str:
    """Return a plausible reply for density or summary prompts."""

    if DENSITY_PROMPT_MARKER in prompt:
        return uniform_density_reply(prompt)
    return '{"status": "CONTENT", "title": "Opening Scene", "summary": "Something happens."}'


class ScriptedBackend:
    """`InferenceBackend` double answering prompts through a responder function."""

    def __init__(
        self,
        responder: Callable[[str], str] = default_reply,
        *,
        available_models: Iterable[str] | None = None,
        token_logprobs: list[TokenLogprob] | None = None,
        fail_completions: bool = False,
        delay_seconds: float = 0.0,
    ) -> None:
        """Initialize canned behavior and call recording."""

        self.responder = responder
        self.available_models = set(available_models) if available_models is not None else None
        self.token_logprobs = token_logprobs
        self.fail_completions = fail_completions
        self.delay_seconds = delay_seconds
        self.loaded_models: list[str] = []
        self.prompts: list[tuple[str, str]] = []
        self.active_calls = 0
        self.max_active_calls = 0

    async def load_model(self, model: str) -> None:
        """Record the load, failing for models outside `available_models`."""

        if self.available_models is not None and model not in self.available_models:
            raise ModelUnavailableError(model, "Not installed.")
        self.loaded_models.append(model)

    async def complete(
        self,
        prompt: str,
        model: str,
        *,
        system_prompt: str | None = None,
    ) -> CompletionResult:
        """Return the responder's reply, tracking concurrent calls."""

        self.active_calls += 1
        self.max_active_calls = max(self.max_active_calls, self.active_calls)
        try:
            await asyncio.sleep(self.delay_seconds)
            self.prompts.append((model, prompt))
            if self.fail_completions:
                raise InferenceProviderError("backend offline", failure_kind="transport")
            return CompletionResult(
                text=self.responder(prompt),
                model=model,
                usage={"completion_tokens": 30},
                duration_seconds=0.5,
            )
        finally:
            self.active_calls -= 1

    async def score_tokens(self, prompt: str, model: str) -> list[TokenLogprob]:
        """Return canned token log probabilities, or fail when none are configured."""

        self.prompts.append((model, prompt))
        if self.token_logprobs is None:
            raise InferenceProviderError("logprobs unsupported", failure_kind="http_error")
        return list(self.token_logprobs)


class InMemoryCredentialStore:
    """Simple in-memory credential store used for CLI tests."""

    def __init__(self, initial_api_key: str | None = None) -> None:
        """Initialize the store with an optional pre-seeded API key."""

        self._api_key = initial_api_key

    def is_available(self) -> bool:
        """Report secure storage as available."""

        return True

    def get_api_key(self) -> str | None:
        """Return currently stored API key value."""

        return self._api_key

    def set_api_key(self, api_key: str) -> None:
        """Persist a normalized API key value."""

        self._api_key = api_key.strip()

    def clear_api_key(self) -> bool:
        """Clear API key and return whether one existed."""

        existed = self._api_key is not None
        self._api_key = None
        return existed


class BackendFactory:
    """Replacement for `lalange.cli.create_backend` recording resolved API keys."""

    def __init__(self) -> None:
        """Initialize with a default scripted backend."""

        self.backend = ScriptedBackend()
        self.api_keys: list[str | None] = []

    def __call__(self, config: LalangeConfig, api_key: str | None) -> ScriptedBackend:
        """Record the API key and return the shared backend."""

        _ = config
        self.api_keys.append(api_key)
        return self.backend
