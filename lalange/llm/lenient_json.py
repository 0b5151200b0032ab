"""Tolerant JSON-object extraction for generative model replies.

Responsibilities:
- Locate the outermost `{...}` object in prose-wrapped or truncated replies.
- Repair common generation defects (smart quotes, trailing commas, missing brace).
- Fall back to line-oriented `key: number` scraping when strict parsing fails.
"""

from __future__ import annotations

import json
import re
from typing import Any

_SMART_DOUBLE_QUOTES_RE = re.compile("[“”]")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_LOOSE_LINE_RE = re.compile(r"^(.*):\s*(-?\d+(?:\.\d+)?)\s*,?\s*$")
_NON_KEY_CHARS_RE = re.compile(r"[^\w\s]|_")
_WHITESPACE_RE = re.compile(r"\s+")


class LenientJSONError(ValueError):
    """Raised when no JSON object can be recovered from a reply."""


def clean_key(text: str) -> str:
    """Drop everything but letters, digits, and whitespace, then collapse whitespace."""

    return _WHITESPACE_RE.sub(" ", _NON_KEY_CHARS_RE.sub("", text)).strip()


def extract_object_text(reply: str) -> str | None:
    """Return repaired object text from the first `{` to the last `}`.

    When no closing brace follows the opening one the reply is treated as a
    truncated generation and a closing brace is synthesized.
    """

    start = reply.find("{")
    if start < 0:
        return None
    end = reply.rfind("}")
    if end > start:
        candidate = reply[start : end + 1]
    else:
        candidate = reply[start:].strip()
        if not candidate.endswith("}"):
            candidate = f"{candidate}}}"
    candidate = _SMART_DOUBLE_QUOTES_RE.sub('"', candidate)
    return _TRAILING_COMMA_RE.sub(r"\1", candidate)


def parse_loose_scores(text: str) -> dict[str, float]:
    """Scrape `key: number` lines, splitting each line on its last colon.

    Keys may carry broken or unescaped quoting; quotes are stripped and keys
    normalized with `clean_key`.
    """

    scores: dict[str, float] = {}
    for line in text.splitlines():
        trimmed = line.strip()
        if not trimmed or trimmed in {"{", "}"}:
            continue
        match = _LOOSE_LINE_RE.match(trimmed)
        if match is None:
            continue
        raw_key = match.group(1).strip().lstrip('"').rstrip('"')
        raw_key = re.sub('["“”]', "", raw_key)
        key = clean_key(raw_key)
        if not key:
            continue
        scores[key] = float(match.group(2))
    return scores


def parse_lenient_object(reply: str, *, loose_scores: bool = False) -> dict[str, Any]:
    """Recover a JSON object from a model reply.

    Args:
        reply: Raw model output.
        loose_scores: Whether to fall back to `parse_loose_scores` on invalid JSON.

    Returns:
        Parsed object mapping.

    Raises:
        LenientJSONError: If no object can be recovered.
    """

    object_text = extract_object_text(reply)
    if object_text is None:
        raise LenientJSONError("No JSON object found in model reply.")
    try:
        parsed = json.loads(object_text)
    except json.JSONDecodeError as exc:
        if loose_scores:
            scores = parse_loose_scores(object_text)
            if scores:
                return dict(scores)
        raise LenientJSONError(f"Model reply is not valid JSON: {exc.msg}.") from exc
    if not isinstance(parsed, dict):
        raise LenientJSONError("Model reply JSON is not an object.")
    return parsed
