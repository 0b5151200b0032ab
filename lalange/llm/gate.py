"""Single-flight admission gate for inference calls.

Responsibilities:
- Allow exactly one inference call to run at a time across the process.
- Queue later callers first-come-first-served behind the running call.
- Expose occupancy for status reporting.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from loguru import logger


class SingleFlightGate:
    """Concurrency-1 gate built on `asyncio.Lock`."""

    def __init__(self) -> None:
        """Initialize an open gate."""

        self._lock = asyncio.Lock()
        self._waiting = 0
        self._active_label: str | None = None
        self.completed_calls = 0

    @property
    def busy(self) -> bool:
        """Return whether a call currently holds the gate."""

        return self._lock.locked()

    @property
    def waiting(self) -> int:
        """Return number of callers queued behind the holder."""

        return self._waiting

    @property
    def active_label(self) -> str | None:
        """Return the label of the call holding the gate, if any."""

        return self._active_label

    @asynccontextmanager
    async def hold(self, label: str) -> AsyncIterator[None]:
        """Hold the gate for the duration of the `async with` block."""

        self._waiting += 1
        try:
            await self._lock.acquire()
        finally:
            self._waiting -= 1
        self._active_label = label
        logger.trace("Inference gate acquired by {} ({} waiting).", label, self._waiting)
        try:
            yield
        finally:
            self._active_label = None
            self.completed_calls += 1
            self._lock.release()
