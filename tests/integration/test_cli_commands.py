"""Integration tests for CLI ingest, process, status, and maintenance commands."""

from __future__ import annotations

from pathlib import Path
import re

from typer.testing import CliRunner

from lalange.cli import app
from tests.epub_factory import build_epub, chapter_markup
from tests.fakes import BackendFactory, InMemoryCredentialStore

SIMPLE_TEXT = "This is a simple sentence. It is easy to read."


def _write_epub(tmp_path: Path) -> Path:
    """Write a one-chapter EPUB fixture and return its path."""

    path = tmp_path / "simple.epub"
    path.write_bytes(
        build_epub(
            [chapter_markup(f"<p>{SIMPLE_TEXT}</p>")],
            title="Easy Reader",
            author="A. Writer",
        )
    )
    return path


def _book_id(output: str) -> str:
    """Extract the book id printed by `lalange ingest`."""

    match = re.search(r"Book id: ([0-9a-f-]{36})", output)
    assert match is not None, output
    return match.group(1)


def test_ingest_command_processes_and_prints_status(
    tmp_path: Path,
    backend_factory: BackendFactory,
    credential_store: InMemoryCredentialStore,
) -> None:
    """Ingest should print the book id, live progress, and the final chapter table."""

    _ = credential_store
    runner = CliRunner()

    result = runner.invoke(
        app,
        ["ingest", str(_write_epub(tmp_path)), "--db", str(tmp_path / "db")],
    )

    assert result.exit_code == 0, result.output
    _book_id(result.output)
    assert "[progress] command=ingest chapter=1 status=ready progress=100%" in result.output
    assert "Title: Easy Reader" in result.output
    assert "Author: A. Writer" in result.output
    assert "Words: 10" in result.output
    assert "1. Chapter 1 [ready 100%] words=10 time=< 1 min" in result.output
    assert backend_factory.api_keys == [None]
    assert (tmp_path / "db" / "chapters.json").exists()


def test_ingest_without_processing_then_process_command_finishes_chapters(
    tmp_path: Path,
    backend_factory: BackendFactory,
    credential_store: InMemoryCredentialStore,
) -> None:
    """Chapters should stay pending until `process` resumes them from the stored package."""

    _ = credential_store
    runner = CliRunner()
    db_path = str(tmp_path / "db")

    ingest = runner.invoke(
        app,
        ["ingest", str(_write_epub(tmp_path)), "--db", db_path, "--no-process"],
    )
    assert ingest.exit_code == 0, ingest.output
    book_id = _book_id(ingest.output)
    assert "[progress]" not in ingest.output
    assert "1. Chapter 1 [pending 0%] words=0" in ingest.output
    assert backend_factory.backend.prompts == []

    processed = runner.invoke(app, ["process", book_id, "--db", db_path])
    assert processed.exit_code == 0, processed.output
    assert "[progress] command=process chapter=1 status=ready progress=100%" in processed.output
    assert "1. Chapter 1 [ready 100%] words=10" in processed.output

    status = runner.invoke(app, ["status", book_id, "--db", db_path])
    assert status.exit_code == 0, status.output
    assert f"Book id: {book_id}" in status.output
    assert "Words: 10" in status.output
    assert "Chapters: 1" in status.output


def test_remove_command_deletes_book_and_status_then_fails(
    tmp_path: Path,
    backend_factory: BackendFactory,
    credential_store: InMemoryCredentialStore,
) -> None:
    """Removed books should no longer be found by `status` or a second `remove`."""

    _ = backend_factory, credential_store
    runner = CliRunner()
    db_path = str(tmp_path / "db")
    ingest = runner.invoke(app, ["ingest", str(_write_epub(tmp_path)), "--db", db_path])
    book_id = _book_id(ingest.output)

    removed = runner.invoke(app, ["remove", book_id, "--db", db_path])
    assert removed.exit_code == 0, removed.output
    assert f"Removed book {book_id}." in removed.output

    status = runner.invoke(app, ["status", book_id, "--db", db_path])
    assert status.exit_code == 1
    assert "status failed at stage `status`" in status.output

    again = runner.invoke(app, ["remove", book_id, "--db", db_path])
    assert again.exit_code == 1
    assert "remove failed at stage `remove`" in again.output


def test_estimate_density_reports_zero_updates_without_logprob_support(
    tmp_path: Path,
    backend_factory: BackendFactory,
    credential_store: InMemoryCredentialStore,
) -> None:
    """Backends that cannot score tokens should leave densities untouched."""

    _ = credential_store
    runner = CliRunner()
    db_path = str(tmp_path / "db")
    book_id = _book_id(
        runner.invoke(app, ["ingest", str(_write_epub(tmp_path)), "--db", db_path]).output
    )

    result = runner.invoke(app, ["estimate-density", book_id, "--db", db_path])

    assert result.exit_code == 0, result.output
    assert "Density windows updated: 0" in result.output
    assert backend_factory.backend.prompts[-1][0] == "llama3.2:1b"


def test_ingest_reports_missing_input_file(
    tmp_path: Path,
    backend_factory: BackendFactory,
    credential_store: InMemoryCredentialStore,
) -> None:
    """A missing EPUB path should fail at the `ingest` stage."""

    _ = backend_factory, credential_store
    runner = CliRunner()

    result = runner.invoke(
        app,
        ["ingest", str(tmp_path / "missing.epub"), "--db", str(tmp_path / "db")],
    )

    assert result.exit_code == 1
    assert "ingest failed at stage `ingest`" in result.output
    assert "missing.epub" in result.output


def test_ingest_reports_unreadable_container(
    tmp_path: Path,
    backend_factory: BackendFactory,
    credential_store: InMemoryCredentialStore,
) -> None:
    """Bytes that are not a ZIP package should fail at the `parse` stage."""

    _ = backend_factory, credential_store
    broken = tmp_path / "broken.epub"
    broken.write_bytes(b"definitely not a zip archive")
    runner = CliRunner()

    result = runner.invoke(app, ["ingest", str(broken), "--db", str(tmp_path / "db")])

    assert result.exit_code == 1
    assert "ingest failed at stage `parse`" in result.output
    assert "Hint: Provide a valid EPUB file." in result.output


def test_ingest_reports_unhealthy_backend(
    tmp_path: Path,
    backend_factory: BackendFactory,
    credential_store: InMemoryCredentialStore,
) -> None:
    """Ingest should refuse to start when the librarian model cannot be served."""

    _ = credential_store
    backend_factory.backend.available_models = {"some-other-model"}
    runner = CliRunner()

    result = runner.invoke(
        app,
        ["ingest", str(_write_epub(tmp_path)), "--db", str(tmp_path / "db")],
    )

    assert result.exit_code == 1
    assert "ingest failed at stage `health`" in result.output
    assert "llama3.2:3b" in result.output


def test_commands_report_missing_config_file(tmp_path: Path) -> None:
    """A missing `--config` path should fail at the `config` stage with a hint."""

    runner = CliRunner()

    result = runner.invoke(
        app,
        ["status", "book-1", "--config", str(tmp_path / "missing.yaml")],
    )

    assert result.exit_code == 1
    assert "status failed at stage `config`" in result.output
    assert "Hint: Provide an existing path via `--config <path.yaml>`." in result.output


def test_commands_report_invalid_config_value(tmp_path: Path) -> None:
    """Invalid YAML values should be reported with the offending field."""

    config_path = tmp_path / "lalange.yaml"
    config_path.write_text("reading_wpm: 0\n", encoding="utf-8")
    runner = CliRunner()

    result = runner.invoke(app, ["status", "book-1", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "status failed at stage `config`" in result.output
    assert "reading_wpm" in result.output
