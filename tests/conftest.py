"""Shared pytest fixtures for the full lalange test suite."""

from __future__ import annotations

from typing import Iterator

from loguru import logger
import pytest

from lalange.io.storage import DocumentStore
from lalange.llm.service import InferenceService
from tests.fakes import ScriptedBackend


@pytest.fixture(autouse=True)
def _reset_loguru() -> Iterator[None]:
    """Drop sinks installed by CLI runs so later tests never write to closed streams."""

    yield
    logger.remove()


@pytest.fixture
def backend() -> ScriptedBackend:
    """Provide a scripted backend answering density and summary prompts."""

    return ScriptedBackend()


@pytest.fixture
def service(backend: ScriptedBackend) -> InferenceService:
    """Provide an inference service wired to the scripted backend."""

    return InferenceService(backend)


@pytest.fixture
def store() -> DocumentStore:
    """Provide an in-memory document store."""

    return DocumentStore()
