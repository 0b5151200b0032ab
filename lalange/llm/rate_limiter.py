"""Request pacing for inference backend calls.

Responsibilities:
- Enforce a minimum interval between requests that share a pacing key.
- Report how long a caller was held back so clients can log pacing stalls.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from time import monotonic, sleep
from typing import Callable


def pacing_key(operation: str, model: str) -> str:
    """Return the pacing key for one backend operation and model."""

    return f"inference:{operation}:{model}"


@dataclass(slots=True)
class RateLimiter:
    """Per-key minimum-interval limiter; runs on the HTTP worker thread."""

    min_interval_seconds: float = 0.0
    clock: Callable[[], float] = monotonic
    sleeper: Callable[[float], None] = sleep
    _next_allowed_at: dict[str, float] = field(default_factory=dict)

    def acquire(self, key: str) -> float:
        """Block until `key` may issue a request and return the seconds waited."""

        if self.min_interval_seconds <= 0.0:
            return 0.0
        now = self.clock()
        waited = max(0.0, self._next_allowed_at.get(key, 0.0) - now)
        if waited > 0.0:
            self.sleeper(waited)
            now = self.clock()
        self._next_allowed_at[key] = now + self.min_interval_seconds
        return waited

    def reset(self, key: str | None = None) -> None:
        """Forget pacing state for one key, or for all keys."""

        if key is None:
            self._next_allowed_at.clear()
        else:
            self._next_allowed_at.pop(key, None)
