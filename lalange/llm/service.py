"""Inference service owning the backend, the loaded model, and the gate.

Responsibilities:
- Resolve model tiers to backend model identifiers.
- Track which model is loaded and swap models only while holding the gate.
- Serialize every completion and token-scoring call through one gate.

Key types:
- `InferenceBackend`: protocol implemented by real and fake backends.
- `HttpInferenceBackend`: OpenAI-compatible HTTP backend running off the event loop.
- `InferenceService`: the object injected into analyzers and the pipeline.
"""

from __future__ import annotations

import asyncio
from typing import Mapping, Protocol

from loguru import logger

from ..errors import InferenceError, ModelUnavailableError
from ..models.datatypes import CompletionResult, TokenLogprob
from .client import InferenceHTTPClient
from .gate import SingleFlightGate

DEFAULT_MODEL_TIERS: dict[str, str] = {
    "tiny": "llama3.2:1b",
    "balanced": "llama3.2:3b",
    "pro": "mistral:7b",
    "creative": "gemma2:9b",
    "reliable": "llama3.1:8b",
}


class InferenceBackend(Protocol):
    """Protocol for inference backends."""

    async def load_model(self, model: str) -> None:
        """Make `model` ready to serve, raising `ModelUnavailableError` if it cannot be."""

    async def complete(
        self,
        prompt: str,
        model: str,
        *,
        system_prompt: str | None = None,
    ) -> CompletionResult:
        """Return a text completion for `prompt`."""

    async def score_tokens(self, prompt: str, model: str) -> list[TokenLogprob]:
        """Return per-token log probabilities for `prompt`."""


class HttpInferenceBackend:
    """Backend adapter running blocking HTTP calls in worker threads."""

    def __init__(self, client: InferenceHTTPClient) -> None:
        """Initialize with a configured HTTP client."""

        self.client = client

    async def load_model(self, model: str) -> None:
        """Verify that the server advertises `model`."""

        available = await asyncio.to_thread(self.client.list_models)
        if model in available or f"{model}:latest" in available:
            return
        raise ModelUnavailableError(model, f"Available: {', '.join(sorted(available)) or 'none'}.")

    async def complete(
        self,
        prompt: str,
        model: str,
        *,
        system_prompt: str | None = None,
    ) -> CompletionResult:
        """Run a chat completion in a worker thread."""

        return await asyncio.to_thread(
            lambda: self.client.chat_completion(
                model=model,
                prompt=prompt,
                system_prompt=system_prompt,
            )
        )

    async def score_tokens(self, prompt: str, model: str) -> list[TokenLogprob]:
        """Run a prompt-logprob request in a worker thread."""

        return await asyncio.to_thread(
            lambda: self.client.prompt_logprobs(model=model, prompt=prompt)
        )


class InferenceService:
    """Single shared entry point for all model calls."""

    def __init__(
        self,
        backend: InferenceBackend,
        *,
        model_tiers: Mapping[str, str] | None = None,
        gate: SingleFlightGate | None = None,
    ) -> None:
        """Initialize with a backend, tier mapping, and (optionally shared) gate."""

        self.backend = backend
        self.model_tiers = dict(model_tiers if model_tiers is not None else DEFAULT_MODEL_TIERS)
        self.gate = gate if gate is not None else SingleFlightGate()
        self._current_model: str | None = None

    @property
    def current_model(self) -> str | None:
        """Return the identifier of the loaded model, if any."""

        return self._current_model

    def resolve_model(self, tier: str) -> str:
        """Map a tier name to a model identifier; unknown names pass through."""

        return self.model_tiers.get(tier, tier)

    async def ensure_model(self, tier: str) -> str:
        """Load the model for `tier` if it is not already loaded."""

        model = self.resolve_model(tier)
        async with self.gate.hold(f"load:{model}"):
            await self._ensure_loaded(model)
        return model

    async def complete(
        self,
        prompt: str,
        tier: str,
        *,
        system_prompt: str | None = None,
    ) -> CompletionResult:
        """Run one completion while holding the gate."""

        model = self.resolve_model(tier)
        async with self.gate.hold(f"complete:{model}"):
            await self._ensure_loaded(model)
            return await self.backend.complete(prompt, model, system_prompt=system_prompt)

    async def score_tokens(self, prompt: str, tier: str) -> list[TokenLogprob]:
        """Score prompt tokens while holding the gate."""

        model = self.resolve_model(tier)
        async with self.gate.hold(f"score:{model}"):
            await self._ensure_loaded(model)
            return await self.backend.score_tokens(prompt, model)

    async def check_health(self, tier: str) -> bool:
        """Return whether the backend can serve the model for `tier`."""

        try:
            await self.ensure_model(tier)
        except InferenceError as exc:
            logger.warning("Inference health check failed for tier `{}`: {}", tier, exc)
            return False
        return True

    async def _ensure_loaded(self, model: str) -> None:
        """Swap the loaded model; caller must hold the gate."""

        if self._current_model == model:
            return
        logger.info("Loading model `{}` (previous: `{}`).", model, self._current_model)
        await self.backend.load_model(model)
        self._current_model = model
