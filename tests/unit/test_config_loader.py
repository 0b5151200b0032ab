"""Unit tests for YAML/environment configuration loader behavior."""

from __future__ import annotations

from pathlib import Path

import pytest

from lalange.config import ConfigLoader, LalangeConfig, RuntimeConfigSources
from lalange.models.datatypes import PromptFragment


def test_config_loader_from_yaml_loads_valid_config_and_normalizes_values(
    tmp_path: Path,
) -> None:
    """YAML loader should parse valid payloads and normalize typed/blank values."""

    config_path = tmp_path / "lalange.yml"
    config_path.write_text(
        """
db_path: " library "
base_url: " http://gpu-box:8080/v1 "
api_key: " test-key "
librarian_model_tier: " pro "
summarizer_model_tier: fast
model_tiers:
  fast: " qwen2.5:0.5b "
enable_junk_removal: " no "
license_removal: true
summary_chunk_words: " 1200 "
max_retries: 0
inference_timeout_seconds: " 30 "
min_request_interval_seconds: 0
librarian_fragments:
  - " Be strict about footnotes. "
  - text: Ignore dialogue tags.
    enabled: "off"
extra:
  profile: " nightly "
""".strip(),
        encoding="utf-8",
    )

    config = ConfigLoader.from_yaml(config_path)

    assert config.db_path == Path("library")
    assert config.base_url == "http://gpu-box:8080/v1"
    assert config.api_key == "test-key"
    assert config.librarian_model_tier == "pro"
    assert config.summarizer_model_tier == "fast"
    assert config.model_tiers["fast"] == "qwen2.5:0.5b"
    assert config.model_tiers["balanced"] == "llama3.2:3b"
    assert config.enable_junk_removal is False
    assert config.license_removal is True
    assert config.summary_chunk_words == 1200
    assert config.max_retries == 0
    assert config.inference_timeout_seconds == 30.0
    assert config.min_request_interval_seconds == 0.0
    assert config.librarian_fragments == (
        PromptFragment("Be strict about footnotes."),
        PromptFragment("Ignore dialogue tags.", enabled=False),
    )
    assert config.extra == {"profile": "nightly"}


def test_config_loader_from_yaml_accepts_empty_file(tmp_path: Path) -> None:
    """An empty YAML document should produce default settings."""

    config_path = tmp_path / "empty.yml"
    config_path.write_text("", encoding="utf-8")

    assert ConfigLoader.from_yaml(config_path) == LalangeConfig()


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("- just\n- a list\n", "top-level mapping"),
        ("unknown_option: 1\n", "unsupported key(s): unknown_option"),
        ("summary_chunk_words: 0\n", "`summary_chunk_words` must be a positive integer"),
        ("density_window_words: many\n", "`density_window_words` must be a positive integer"),
        ("enable_junk_removal: maybe\n", "`enable_junk_removal` must be a boolean"),
        ("inference_timeout_seconds: 0\n", "`inference_timeout_seconds` must be a positive number"),
        ("librarian_model_tier: giant\n", "Unknown `librarian_model_tier` value `giant`"),
        ("summarizer_fragments: [{enabled: true}]\n", "fragment with blank text"),
        ("model_tiers: [a]\n", "`model_tiers` must be a mapping"),
    ],
)
def test_config_loader_from_yaml_rejects_invalid_values(
    tmp_path: Path,
    content: str,
    message: str,
) -> None:
    """Invalid YAML values should raise descriptive validation errors."""

    config_path = tmp_path / "invalid.yml"
    config_path.write_text(content, encoding="utf-8")

    with pytest.raises(ValueError) as exc_info:
        ConfigLoader.from_yaml(config_path)

    assert message in str(exc_info.value)


def test_config_loader_from_env_reads_prefixed_variables() -> None:
    """Environment loader should read `LALANGE_*` variables and ignore blanks."""

    config = ConfigLoader.from_env(
        {
            "LALANGE_DB_PATH": "/var/lib/lalange",
            "LALANGE_BASE_URL": " http://localhost:1234/v1 ",
            "LALANGE_SUMMARY_CHUNK_WORDS": "800",
            "LALANGE_ENABLE_JUNK_REMOVAL": "0",
            "LALANGE_READING_WPM": "250",
            "LALANGE_API_KEY": "   ",
            "UNRELATED": "value",
        }
    )

    assert config.db_path == Path("/var/lib/lalange")
    assert config.base_url == "http://localhost:1234/v1"
    assert config.summary_chunk_words == 800
    assert config.enable_junk_removal is False
    assert config.reading_wpm == 250
    assert config.api_key is None


def test_config_loader_from_env_reports_invalid_values() -> None:
    """Environment validation errors should name the environment source."""

    with pytest.raises(ValueError, match="Environment field `reading_wpm`"):
        ConfigLoader.from_env({"LALANGE_READING_WPM": "-5"})


def test_resolved_api_key_prefers_cli_then_secure_then_env_then_config() -> None:
    """API key resolution should follow deterministic source precedence."""

    config = LalangeConfig(api_key=" from-config ")

    assert (
        config.resolved_api_key(
            RuntimeConfigSources(
                cli={"api_key": "from-cli"},
                secure={"api_key": "from-keyring"},
                env={"LALANGE_API_KEY": "from-env"},
            )
        )
        == "from-cli"
    )
    assert (
        config.resolved_api_key(
            RuntimeConfigSources(
                cli={"api_key": "  "},
                secure={"api_key": "from-keyring"},
                env={"LALANGE_API_KEY": "from-env"},
            )
        )
        == "from-keyring"
    )
    assert (
        config.resolved_api_key(RuntimeConfigSources(env={"LALANGE_API_KEY": "from-env"}))
        == "from-env"
    )
    assert config.resolved_api_key() == "from-config"
    assert LalangeConfig().resolved_api_key() is None
