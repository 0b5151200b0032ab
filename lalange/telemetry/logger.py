"""Structured run logging utilities.

Responsibilities:
- Install the single `loguru` sink used by the CLI.
- Emit concise, deterministic phase-level events for ingestion stages.
"""

from __future__ import annotations

import sys
from typing import TextIO

from loguru import logger


def configure_logging(sink: TextIO | None = None, *, level: str = "INFO") -> None:
    """Replace loguru handlers with one plain-message sink."""

    logger.remove()
    logger.add(sink or sys.stderr, format="{message}", level=level.upper(), colorize=False)


def _sanitize_context_value(value: object) -> str:
    """Convert context values into stable, shell-safe tokens."""

    raw = str(value).strip()
    if not raw:
        return "none"
    return "".join(
        character if character.isalnum() or character in {"-", "_", ".", ":", "/"} else "_"
        for character in raw
    )


def format_phase_line(level: str, stage: str, event: str, context: dict[str, object]) -> str:
    """Render one phase event as `[phase] level=.. stage=.. event=.. k=v ...`."""

    tokens = [f"{key}={_sanitize_context_value(context[key])}" for key in sorted(context)]
    suffix = f" {' '.join(tokens)}" if tokens else ""
    return f"[phase] level={level} stage={stage} event={event}{suffix}"


class RunLogger:
    """Emit deterministic phase logs for ingestion activity."""

    def _emit(self, level: str, event: str, stage: str, **context: object) -> None:
        """Emit one structured runtime log line."""

        logger.log(level, format_phase_line(level, stage, event, context))

    def log_stage_start(self, stage: str, **context: object) -> None:
        """Emit a stage-start runtime event."""

        self._emit("INFO", "start", stage, **context)

    def log_stage_complete(self, stage: str, **context: object) -> None:
        """Emit a stage-complete runtime event."""

        self._emit("INFO", "complete", stage, **context)

    def log_stage_progress(self, stage: str, **context: object) -> None:
        """Emit an intermediate progress event."""

        self._emit("INFO", "progress", stage, **context)

    def log_stage_failure(self, stage: str, error_type: str, **context: object) -> None:
        """Emit a stage-failure runtime event without sensitive payload details."""

        self._emit("ERROR", "failure", stage, error_type=error_type, **context)
