"""HTTP client for OpenAI-compatible local inference servers.

Responsibilities:
- Send chat-completion, prompt-logprob, and model-listing requests.
- Retry transient failures with bounded exponential backoff.
- Raise classified provider exceptions with secrets redacted from details.
"""

from __future__ import annotations

import json
import re
import socket
import time
from typing import Any

import requests
from loguru import logger

from ..errors import InferenceProviderError
from ..models.datatypes import CompletionResult, TokenLogprob
from .rate_limiter import RateLimiter, pacing_key

DEFAULT_BASE_URL = "http://localhost:11434/v1"

_TRANSIENT_FAILURE_KINDS = frozenset({"timeout", "transport", "rate_limited", "server_error"})


class InferenceHTTPClient:
    """Minimal requests-based client for an OpenAI-compatible inference API."""

    _MAX_PROVIDER_MESSAGE_CHARS = 180

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        api_key: str | None = None,
        timeout_seconds: float = 120.0,
        max_retries: int = 2,
        retry_backoff_base_seconds: float = 0.5,
        retry_backoff_max_seconds: float = 8.0,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        """Initialize HTTP settings, retry budget, and request pacing."""

        self.base_url = base_url.rstrip("/")
        self.api_key = api_key.strip() if isinstance(api_key, str) else ""
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(0, int(max_retries))
        self.retry_backoff_base_seconds = retry_backoff_base_seconds
        self.retry_backoff_max_seconds = retry_backoff_max_seconds
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter()
        self.retry_attempt_count = 0

    def chat_completion(
        self,
        *,
        model: str,
        prompt: str,
        system_prompt: str | None = None,
        temperature: float = 0.0,
    ) -> CompletionResult:
        """Return the first assistant message of a chat completion with usage metrics."""

        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        payload = {"model": model, "messages": messages, "temperature": temperature}

        started = time.monotonic()
        body = self._request_json(
            "POST",
            "/chat/completions",
            payload=payload,
            key=pacing_key("chat", model),
        )
        duration = time.monotonic() - started

        text = self._extract_message_text(body)
        usage = body.get("usage") if isinstance(body.get("usage"), dict) else {}
        return CompletionResult(
            text=text,
            model=str(body.get("model") or model),
            usage=usage,
            duration_seconds=duration,
        )

    def prompt_logprobs(self, *, model: str, prompt: str) -> list[TokenLogprob]:
        """Return per-token log probabilities of `prompt` itself.

        Uses a legacy completions request with `echo` so the server scores the
        prompt tokens; the first token has no conditional probability and is
        reported with logprob `0.0`.
        """

        payload = {
            "model": model,
            "prompt": prompt,
            "max_tokens": 1,
            "echo": True,
            "logprobs": 1,
            "temperature": 0.0,
        }
        body = self._request_json(
            "POST",
            "/completions",
            payload=payload,
            key=pacing_key("logprobs", model),
        )
        choices = body.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise InferenceProviderError("Inference response missing non-empty `choices` list.")
        logprobs = choices[0].get("logprobs")
        if not isinstance(logprobs, dict):
            raise InferenceProviderError("Inference response missing `choices[0].logprobs`.")
        tokens = logprobs.get("tokens")
        values = logprobs.get("token_logprobs")
        if not isinstance(tokens, list) or not isinstance(values, list) or len(tokens) != len(values):
            raise InferenceProviderError("Inference response logprobs are malformed.")
        return [
            TokenLogprob(token=str(token), logprob=float(value) if value is not None else 0.0)
            for token, value in zip(tokens, values)
        ]

    def list_models(self) -> list[str]:
        """Return model identifiers advertised by the server."""

        body = self._request_json("GET", "/models", key=pacing_key("models", "*"))
        data = body.get("data")
        if not isinstance(data, list):
            raise InferenceProviderError("Inference response missing `data` model list.")
        return [str(item["id"]) for item in data if isinstance(item, dict) and "id" in item]

    def _headers(self) -> dict[str, str]:
        """Return request headers, with bearer auth only when a key is configured."""

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _request_json(
        self,
        method: str,
        endpoint_path: str,
        *,
        key: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute a request with pacing and retries, returning the decoded JSON object."""

        attempt = 0
        while True:
            self.rate_limiter.acquire(key)
            try:
                raw = self._execute_request(method, endpoint_path, payload)
            except InferenceProviderError as exc:
                if exc.failure_kind not in _TRANSIENT_FAILURE_KINDS or attempt >= self.max_retries:
                    raise
                delay = min(
                    self.retry_backoff_base_seconds * (2**attempt),
                    self.retry_backoff_max_seconds,
                )
                attempt += 1
                self.retry_attempt_count += 1
                logger.warning(
                    "Retrying {} {} after {} failure (attempt {}/{}, backoff {:.2f}s).",
                    method,
                    endpoint_path,
                    exc.failure_kind,
                    attempt,
                    self.max_retries,
                    delay,
                )
                time.sleep(delay)
                continue
            return self._decode_json_object(raw)

    def _execute_request(
        self,
        method: str,
        endpoint_path: str,
        payload: dict[str, Any] | None,
    ) -> bytes:
        """Execute one HTTP request and map failures to provider errors."""

        endpoint = f"{self.base_url}{endpoint_path}"
        try:
            if method == "GET":
                response = requests.get(
                    endpoint,
                    headers=self._headers(),
                    timeout=self.timeout_seconds,
                )
            else:
                response = requests.post(
                    endpoint,
                    headers=self._headers(),
                    json=payload,
                    timeout=self.timeout_seconds,
                )
            response.raise_for_status()
            return bytes(response.content)
        except requests.HTTPError as exc:
            raise self._http_error_to_provider_error(exc) from exc
        except requests.RequestException as exc:
            failure_kind = self._classify_transport_failure(exc)
            if failure_kind == "timeout":
                detail = "Inference request timed out."
            else:
                detail = f"Inference request transport error: {self._short_message(str(exc))}"
            raise InferenceProviderError(detail, failure_kind=failure_kind) from exc
        except TimeoutError as exc:
            raise InferenceProviderError(
                "Inference request timed out.",
                failure_kind="timeout",
            ) from exc

    @staticmethod
    def _decode_json_object(raw: bytes) -> dict[str, Any]:
        """Decode a response body that must be a JSON object."""

        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise InferenceProviderError("Inference server returned invalid JSON payload.") from exc
        if not isinstance(payload, dict):
            raise InferenceProviderError("Inference server returned a non-object JSON payload.")
        return payload

    @staticmethod
    def _extract_message_text(body: dict[str, Any]) -> str:
        """Extract the first assistant message text from a chat-completions payload."""

        choices = body.get("choices")
        if not isinstance(choices, list) or not choices:
            raise InferenceProviderError("Inference response missing non-empty `choices` list.")
        first_choice = choices[0]
        if not isinstance(first_choice, dict):
            raise InferenceProviderError("Inference response `choices[0]` is malformed.")
        message = first_choice.get("message")
        if not isinstance(message, dict):
            raise InferenceProviderError("Inference response missing `choices[0].message` object.")
        content = message.get("content")
        if isinstance(content, list):
            content = "".join(
                item["text"]
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            )
        if not isinstance(content, str):
            return ""
        return content.strip()

    @staticmethod
    def _decode_error_body(exc: requests.HTTPError) -> str:
        """Decode an HTTP error body into a best-effort UTF-8 payload string."""

        response = exc.response
        if response is None:
            return ""
        return bytes(response.content).decode("utf-8", errors="replace").strip()

    @classmethod
    def _redact_sensitive_tokens(cls, text: str) -> str:
        """Redact API-key-like tokens from provider error content."""

        redacted = re.sub(r"\bsk-[A-Za-z0-9_-]{8,}\b", "[redacted-key]", text)
        return re.sub(
            r"(?i)bearer\s+[A-Za-z0-9._-]{12,}",
            "Bearer [redacted-token]",
            redacted,
        )

    @classmethod
    def _short_message(cls, text: str) -> str:
        """Normalize and cap user-facing provider message length."""

        compact = " ".join(text.split())
        if len(compact) <= cls._MAX_PROVIDER_MESSAGE_CHARS:
            return compact
        return f"{compact[: cls._MAX_PROVIDER_MESSAGE_CHARS - 1]}..."

    @classmethod
    def _extract_provider_message(cls, body: str) -> tuple[str, str | None]:
        """Extract a concise provider message and optional provider error code."""

        if not body:
            return "", None
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            return cls._short_message(cls._redact_sensitive_tokens(body)), None

        provider_code: str | None = None
        message: str | None = None
        if isinstance(payload, dict):
            error_payload = payload.get("error")
            if isinstance(error_payload, dict):
                code_value = error_payload.get("code")
                if isinstance(code_value, str) and code_value.strip():
                    provider_code = code_value.strip()
                message_value = error_payload.get("message")
                if isinstance(message_value, str) and message_value.strip():
                    message = message_value.strip()
            elif isinstance(error_payload, str) and error_payload.strip():
                message = error_payload.strip()
        if message is None:
            message = body
        return cls._short_message(cls._redact_sensitive_tokens(message)), provider_code

    @staticmethod
    def _classify_http_failure(
        status_code: int,
        provider_message: str,
        provider_code: str | None,
    ) -> str:
        """Classify HTTP errors into diagnostic kinds used for retry decisions."""

        message_lower = provider_message.lower()
        normalized_code = provider_code.lower() if provider_code is not None else ""

        if status_code == 401 or "api key" in message_lower:
            return "invalid_api_key"
        if normalized_code == "model_not_found" or (
            "model" in message_lower
            and any(phrase in message_lower for phrase in ("not found", "does not exist", "invalid"))
        ):
            return "invalid_model"
        if status_code in {408, 504} or "timeout" in message_lower or "timed out" in message_lower:
            return "timeout"
        if status_code == 429:
            return "rate_limited"
        if status_code >= 500:
            return "server_error"
        return "http_error"

    @staticmethod
    def _classify_transport_failure(reason: object) -> str:
        """Classify network-layer failures into diagnostic kinds."""

        if isinstance(reason, (TimeoutError, socket.timeout, requests.Timeout)):
            return "timeout"
        return "transport"

    @classmethod
    def _http_error_to_provider_error(cls, exc: requests.HTTPError) -> InferenceProviderError:
        """Convert HTTP errors into normalized provider exceptions with metadata."""

        status_code = exc.response.status_code if exc.response is not None else 0
        provider_message, provider_code = cls._extract_provider_message(cls._decode_error_body(exc))
        failure_kind = cls._classify_http_failure(status_code, provider_message, provider_code)

        headline = {
            "invalid_api_key": "Inference server authentication failed",
            "invalid_model": "Inference server rejected the selected model",
            "timeout": "Inference request timed out",
            "rate_limited": "Inference server is rate limiting requests",
            "server_error": "Inference server failed",
        }.get(failure_kind, "Inference request failed")

        if provider_message:
            detail = f"{headline} (HTTP {status_code}): {provider_message}"
        else:
            detail = f"{headline} (HTTP {status_code})."
        return InferenceProviderError(
            detail,
            failure_kind=failure_kind,
            status_code=status_code,
            provider_code=provider_code,
        )
