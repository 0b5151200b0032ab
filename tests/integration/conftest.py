"""Integration-test fixtures for deterministic inference and credential behavior."""

from __future__ import annotations

import os

import pytest

from tests.fakes import BackendFactory, InMemoryCredentialStore


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop `LALANGE_*` variables so CLI config comes only from test arguments."""

    for key in list(os.environ):
        if key.startswith("LALANGE_"):
            monkeypatch.delenv(key)


@pytest.fixture
def backend_factory(monkeypatch: pytest.MonkeyPatch) -> BackendFactory:
    """Route CLI inference through a scripted backend."""

    factory = BackendFactory()
    monkeypatch.setattr("lalange.cli.create_backend", factory)
    return factory


@pytest.fixture
def credential_store(monkeypatch: pytest.MonkeyPatch) -> InMemoryCredentialStore:
    """Route CLI credential access through an in-memory store."""

    store = InMemoryCredentialStore()
    monkeypatch.setattr("lalange.cli.create_credential_store", lambda: store)
    return store
