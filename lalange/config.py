"""Configuration model and loaders for lalange.

Responsibilities:
- Define ingestion, inference, and prompt settings as a typed dataclass.
- Resolve the inference API key with deterministic source precedence.
- Provide loader entry points for YAML- and environment-based configuration.

Key types:
- `LalangeConfig`: normalized runtime settings.
- `RuntimeConfigSources`: optional value sources for precedence resolution.
- `ConfigLoader`: static construction helpers for `LalangeConfig`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, Mapping

import yaml

from .llm.client import DEFAULT_BASE_URL
from .llm.prompts import (
    DEFAULT_LIBRARIAN_BASE_PROMPT,
    DEFAULT_SUMMARIZER_BASE_PROMPT,
    DEFAULT_SUMMARY_INSTRUCTION,
)
from .llm.service import DEFAULT_MODEL_TIERS
from .models.datatypes import PromptFragment
from .parsing import normalize_optional_string, parse_permissive_boolean, parse_positive_number

_ENV_PREFIX = "LALANGE_"
_API_KEY_ENV = "LALANGE_API_KEY"


@dataclass(frozen=True, slots=True)
class RuntimeConfigSources:
    """Source mappings used for API key precedence.

    Attributes:
        cli: Values explicitly provided by CLI arguments.
        secure: Values loaded from secure local credential storage.
        env: Values loaded from environment variables.
    """

    cli: Mapping[str, str] = field(default_factory=dict)
    secure: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class LalangeConfig:
    """Runtime configuration for ingestion and enrichment.

    Attributes:
        db_path: Directory holding the persisted document store.
        base_url: OpenAI-compatible inference server base URL.
        api_key: Optional inference API key.
        model_tiers: Tier name to backend model identifier mapping.
        librarian_model_tier: Tier used for density scoring.
        summarizer_model_tier: Tier used for chunk summaries.
        estimator_model_tier: Tier used for token-logprob density estimation.
        enable_junk_removal: Whether summaries may classify chunks as junk.
        license_removal: Whether distribution boilerplate is stripped from text.
        summary_chunk_words: Word budget of one enrichment chunk.
        density_window_words: Words per density inference call.
        density_lookahead_words: Maximum window extension to a sentence end.
        summary_excerpt_chars: Characters of a chunk sent for summarization.
        inference_timeout_seconds: HTTP timeout for one inference call.
        max_retries: Retry budget for transient inference failures.
        min_request_interval_seconds: Minimum pacing between inference requests.
        merge_max_attempts: Attempts for a conflicting chapter write.
        reading_wpm: Reader speed used for reading-time estimates.
        extra: Additional metadata for future extensions.
    """

    db_path: Path = Path(".lalange")
    base_url: str = DEFAULT_BASE_URL
    api_key: str | None = None
    model_tiers: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MODEL_TIERS))
    librarian_model_tier: str = "balanced"
    summarizer_model_tier: str = "balanced"
    estimator_model_tier: str = "tiny"
    librarian_base_prompt: str = DEFAULT_LIBRARIAN_BASE_PROMPT
    librarian_fragments: tuple[PromptFragment, ...] = ()
    summarizer_base_prompt: str = DEFAULT_SUMMARIZER_BASE_PROMPT
    summarizer_fragments: tuple[PromptFragment, ...] = ()
    summary_prompt: str = DEFAULT_SUMMARY_INSTRUCTION
    enable_junk_removal: bool = True
    license_removal: bool = True
    summary_chunk_words: int = 2500
    density_window_words: int = 200
    density_lookahead_words: int = 50
    summary_excerpt_chars: int = 3000
    inference_timeout_seconds: float = 120.0
    max_retries: int = 2
    min_request_interval_seconds: float = 0.0
    merge_max_attempts: int = 5
    reading_wpm: int = 300
    extra: dict[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        """Validate configuration values before use."""

        if not normalize_optional_string(self.base_url):
            raise ValueError("`base_url` must be a non-empty string.")
        for field_name in (
            "summary_chunk_words",
            "density_window_words",
            "summary_excerpt_chars",
            "merge_max_attempts",
            "reading_wpm",
        ):
            if getattr(self, field_name) <= 0:
                raise ValueError(f"`{field_name}` must be a positive integer.")
        if self.density_lookahead_words < 0:
            raise ValueError("`density_lookahead_words` must be a non-negative integer.")
        if self.max_retries < 0:
            raise ValueError("`max_retries` must be a non-negative integer.")
        if self.inference_timeout_seconds <= 0:
            raise ValueError("`inference_timeout_seconds` must be a positive number.")
        if self.min_request_interval_seconds < 0:
            raise ValueError("`min_request_interval_seconds` must be a non-negative number.")
        for field_name in ("librarian_model_tier", "summarizer_model_tier", "estimator_model_tier"):
            tier = getattr(self, field_name)
            if tier not in self.model_tiers:
                supported = ", ".join(sorted(self.model_tiers))
                raise ValueError(
                    f"Unknown `{field_name}` value `{tier}`; supported: {supported}."
                )

    def resolved_api_key(self, sources: RuntimeConfigSources | None = None) -> str | None:
        """Resolve the API key with precedence `cli` > `secure` > `env` > config field."""

        resolved_sources = sources if sources is not None else RuntimeConfigSources()
        for mapping, key in (
            (resolved_sources.cli, "api_key"),
            (resolved_sources.secure, "api_key"),
            (resolved_sources.env, _API_KEY_ENV),
        ):
            value = normalize_optional_string(mapping.get(key)) if key in mapping else None
            if value is not None:
                return value
        return normalize_optional_string(self.api_key)


_INT_FIELDS = (
    "summary_chunk_words",
    "density_window_words",
    "density_lookahead_words",
    "summary_excerpt_chars",
    "max_retries",
    "merge_max_attempts",
    "reading_wpm",
)
_ZERO_ALLOWED_FIELDS = frozenset(
    {"density_lookahead_words", "max_retries", "min_request_interval_seconds"}
)
_FLOAT_FIELDS = ("inference_timeout_seconds", "min_request_interval_seconds")
_BOOL_FIELDS = ("enable_junk_removal", "license_removal")
_STRING_FIELDS = (
    "base_url",
    "api_key",
    "librarian_model_tier",
    "summarizer_model_tier",
    "estimator_model_tier",
    "librarian_base_prompt",
    "summarizer_base_prompt",
    "summary_prompt",
)


class ConfigLoader:
    """Factory methods for creating `LalangeConfig` from external sources."""

    _SUPPORTED_YAML_KEYS = frozenset(
        {
            "db_path",
            "model_tiers",
            "librarian_fragments",
            "summarizer_fragments",
            "extra",
            *_INT_FIELDS,
            *_FLOAT_FIELDS,
            *_BOOL_FIELDS,
            *_STRING_FIELDS,
        }
    )

    @staticmethod
    def from_yaml(path: Path) -> LalangeConfig:
        """Create a validated config from a YAML file."""

        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        if payload is None:
            payload = {}
        if not isinstance(payload, Mapping):
            raise ValueError(f"YAML config `{path}` must contain a top-level mapping/object.")
        return ConfigLoader._build_config_from_mapping(payload, source_label=f"YAML `{path}`")

    @staticmethod
    def from_env(env: Mapping[str, str] | None = None) -> LalangeConfig:
        """Create a validated config from `LALANGE_*` environment variables."""

        env_map: Mapping[str, str] = os.environ if env is None else env
        payload: dict[str, Any] = {}
        for key in ("db_path", *_INT_FIELDS, *_FLOAT_FIELDS, *_BOOL_FIELDS, *_STRING_FIELDS):
            env_key = f"{_ENV_PREFIX}{key.upper()}"
            value = normalize_optional_string(env_map.get(env_key)) if env_key in env_map else None
            if value is not None:
                payload[key] = value
        return ConfigLoader._build_config_from_mapping(payload, source_label="Environment")

    @staticmethod
    def _build_config_from_mapping(payload: Mapping[str, Any], source_label: str) -> LalangeConfig:
        """Build a validated config from a normalized mapping payload."""

        unknown = sorted(set(payload).difference(ConfigLoader._SUPPORTED_YAML_KEYS))
        if unknown:
            raise ValueError(f"{source_label} includes unsupported key(s): {', '.join(unknown)}.")

        values: dict[str, Any] = {}
        if "db_path" in payload:
            db_path = normalize_optional_string(payload["db_path"])
            if db_path is None:
                raise ValueError(f"{source_label} field `db_path` must be non-empty.")
            values["db_path"] = Path(db_path)
        for key in _STRING_FIELDS:
            if key in payload:
                value = normalize_optional_string(payload[key])
                if value is not None:
                    values[key] = value
        for key in _INT_FIELDS:
            if key in payload:
                values[key] = ConfigLoader._parse_int(payload[key], key, source_label)
        for key in _FLOAT_FIELDS:
            if key in payload:
                values[key] = ConfigLoader._parse_float(payload[key], key, source_label)
        for key in _BOOL_FIELDS:
            if key in payload:
                parsed = parse_permissive_boolean(payload[key])
                if parsed is None:
                    raise ValueError(
                        f"{source_label} field `{key}` must be a boolean value "
                        "(`true`/`false`, `1`/`0`, `yes`/`no`)."
                    )
                values[key] = parsed
        if "model_tiers" in payload:
            tiers = dict(DEFAULT_MODEL_TIERS)
            tiers.update(ConfigLoader._string_map(payload["model_tiers"], "model_tiers", source_label))
            values["model_tiers"] = tiers
        if "extra" in payload:
            values["extra"] = ConfigLoader._string_map(payload["extra"], "extra", source_label)
        for key in ("librarian_fragments", "summarizer_fragments"):
            if key in payload:
                values[key] = ConfigLoader._fragments(payload[key], key, source_label)

        config = LalangeConfig(**values)
        config.validate()
        return config

    @staticmethod
    def _parse_int(raw_value: Any, key: str, source_label: str) -> int:
        """Parse a positive (or, for some fields, non-negative) integer."""

        qualifier = "non-negative" if key in _ZERO_ALLOWED_FIELDS else "positive"
        message = f"{source_label} field `{key}` must be a {qualifier} integer."
        if isinstance(raw_value, bool):
            raise ValueError(message)
        try:
            parsed = int(str(raw_value).strip())
        except ValueError as exc:
            raise ValueError(message) from exc
        if parsed < 0 or (parsed == 0 and key not in _ZERO_ALLOWED_FIELDS):
            raise ValueError(message)
        return parsed

    @staticmethod
    def _parse_float(raw_value: Any, key: str, source_label: str) -> float:
        """Parse a positive (or, for some fields, non-negative) number."""

        try:
            return parse_positive_number(
                raw_value, key, allow_zero=key in _ZERO_ALLOWED_FIELDS
            )
        except ValueError as exc:
            raise ValueError(f"{source_label} field {exc}") from exc

    @staticmethod
    def _string_map(raw: Any, key: str, source_label: str) -> dict[str, str]:
        """Read a mapping with non-empty string keys and values."""

        if raw is None:
            return {}
        if not isinstance(raw, Mapping):
            raise ValueError(f"{source_label} field `{key}` must be a mapping/object.")
        normalized: dict[str, str] = {}
        for raw_key, raw_value in raw.items():
            key_value = normalize_optional_string(raw_key)
            value_value = normalize_optional_string(raw_value)
            if key_value is None:
                raise ValueError(f"{source_label} field `{key}` contains a blank key.")
            if value_value is None:
                raise ValueError(
                    f"{source_label} field `{key}` contains blank value for `{key_value}`."
                )
            normalized[key_value] = value_value
        return normalized

    @staticmethod
    def _fragments(raw: Any, key: str, source_label: str) -> tuple[PromptFragment, ...]:
        """Read prompt fragments given as strings or `{text, enabled}` mappings."""

        if raw is None:
            return ()
        if not isinstance(raw, list):
            raise ValueError(f"{source_label} field `{key}` must be a list.")
        fragments: list[PromptFragment] = []
        for item in raw:
            if isinstance(item, str):
                text = normalize_optional_string(item)
                enabled = True
            elif isinstance(item, Mapping):
                text = normalize_optional_string(item.get("text"))
                enabled = parse_permissive_boolean(item.get("enabled", True))
                if enabled is None:
                    raise ValueError(
                        f"{source_label} field `{key}` has a fragment with invalid `enabled`."
                    )
            else:
                raise ValueError(f"{source_label} field `{key}` has an invalid fragment entry.")
            if text is None:
                raise ValueError(f"{source_label} field `{key}` has a fragment with blank text.")
            fragments.append(PromptFragment(text=text, enabled=enabled))
        return tuple(fragments)
