"""Command-line interface for lalange.

Responsibilities:
- Expose user-facing commands for ingestion, processing, and book maintenance.
- Resolve configuration and the inference API key, then drive the async pipeline.

Key public functions:
- `app`: Typer application instance.
- `main`: invoke the Typer application.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
import os
from pathlib import Path
from typing import Annotated, Awaitable, Callable, TypeVar

import typer

from .cli_rendering import (
    ChapterProgressPrinter,
    echo_book_summary,
    echo_chapter_rows,
    exit_with_command_error,
)
from .config import ConfigLoader, LalangeConfig, RuntimeConfigSources
from .credentials import CredentialStore, create_credential_store
from .errors import PipelineStageError
from .ingest.enrichment import now_ms
from .ingest.pipeline import IngestionPipeline
from .io.storage import DocumentStore
from .llm.client import InferenceHTTPClient
from .llm.rate_limiter import RateLimiter
from .llm.service import HttpInferenceBackend, InferenceBackend, InferenceService
from .parsing import normalize_optional_string
from .telemetry.logger import RunLogger, configure_logging

ResultT = TypeVar("ResultT")

app = typer.Typer(
    name="lalange",
    no_args_is_help=True,
    help="lalange: EPUB ingestion with reading-density enrichment.",
)

ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", help="Path to YAML config file."),
]
DbOption = Annotated[
    Path | None,
    typer.Option("--db", help="Document store directory (overrides config value)."),
]
BaseUrlOption = Annotated[
    str | None,
    typer.Option("--base-url", help="OpenAI-compatible inference server URL."),
]
ApiKeyOption = Annotated[
    str | None,
    typer.Option("--api-key", help="Inference API key override."),
]
BookIdArgument = Annotated[str, typer.Argument(help="Book id printed by `lalange ingest`.")]


def create_backend(config: LalangeConfig, api_key: str | None) -> InferenceBackend:
    """Build the HTTP inference backend from resolved settings."""

    client = InferenceHTTPClient(
        base_url=config.base_url,
        api_key=api_key,
        timeout_seconds=config.inference_timeout_seconds,
        max_retries=config.max_retries,
        rate_limiter=RateLimiter(config.min_request_interval_seconds),
    )
    return HttpInferenceBackend(client)


def _load_config(config_path: Path | None) -> LalangeConfig:
    """Load YAML or environment config and map failures to stage errors."""

    try:
        if config_path is None:
            return ConfigLoader.from_env(os.environ)
        return ConfigLoader.from_yaml(config_path)
    except FileNotFoundError as exc:
        raise PipelineStageError(
            stage="config",
            detail=f"Config file not found: `{config_path}`.",
            hint="Provide an existing path via `--config <path.yaml>`.",
        ) from exc
    except ValueError as exc:
        raise PipelineStageError(
            stage="config",
            detail=str(exc),
            hint="Fix config values and rerun.",
        ) from exc


def _resolve_config(
    config_path: Path | None,
    db_path: Path | None,
    base_url: str | None,
) -> LalangeConfig:
    """Apply explicit CLI overrides on top of loaded config and validate."""

    config = _load_config(config_path)
    if db_path is not None:
        config = replace(config, db_path=db_path)
    if base_url is not None:
        config = replace(config, base_url=base_url)
    try:
        config.validate()
    except ValueError as exc:
        raise PipelineStageError(stage="config", detail=str(exc)) from exc
    return config


def _resolve_api_key(
    config: LalangeConfig,
    api_key: str | None,
    credential_store: CredentialStore,
) -> str | None:
    """Resolve the API key from CLI, secure storage, environment, and config."""

    cli_values: dict[str, str] = {}
    normalized = normalize_optional_string(api_key)
    if normalized is not None:
        cli_values["api_key"] = normalized
    secure_values: dict[str, str] = {}
    if not cli_values:
        stored = credential_store.get_api_key()
        if stored is not None:
            secure_values["api_key"] = stored
    return config.resolved_api_key(
        RuntimeConfigSources(cli=cli_values, secure=secure_values, env=os.environ)
    )


def _build_pipeline(
    config_path: Path | None,
    db_path: Path | None,
    base_url: str | None,
    api_key: str | None,
) -> IngestionPipeline:
    """Create store, inference service, and pipeline for one command."""

    config = _resolve_config(config_path, db_path, base_url)
    resolved_key = _resolve_api_key(config, api_key, create_credential_store())
    service = InferenceService(create_backend(config, resolved_key), model_tiers=config.model_tiers)
    return IngestionPipeline(
        store=DocumentStore(config.db_path),
        service=service,
        config=config,
        run_logger=RunLogger(),
    )


def _run(coroutine_factory: Callable[[], Awaitable[ResultT]]) -> ResultT:
    """Run one async command body on a fresh event loop."""

    async def _main() -> ResultT:
        return await coroutine_factory()

    return asyncio.run(_main())


async def _process_with_progress(pipeline: IngestionPipeline, book_id: str, command: str) -> None:
    """Process a book while printing chapter progress lines."""

    unsubscribe = pipeline.store.chapters.subscribe(
        ChapterProgressPrinter(command),
        lambda chapter: chapter.book_id == book_id,
    )
    try:
        await pipeline.process_book(book_id)
    finally:
        unsubscribe()
        await pipeline.scheduler.close()


async def _echo_status(pipeline: IngestionPipeline, book_id: str) -> None:
    """Print the book summary followed by chapter rows."""

    book = await pipeline.store.books.find_one(book_id)
    if book is None:
        raise PipelineStageError(
            stage="status",
            detail=f"Book `{book_id}` was not found.",
            hint="Check the id printed by `lalange ingest`.",
        )
    chapters = await pipeline.store.chapters.find(lambda chapter: chapter.book_id == book_id)
    echo_book_summary(book)
    echo_chapter_rows(chapters, reading_wpm=pipeline.config.reading_wpm, now_ms=now_ms())


@app.command("ingest")
def ingest_command(
    epub: Annotated[Path, typer.Argument(help="Path to the EPUB file.")],
    config_file: ConfigOption = None,
    db_path: DbOption = None,
    base_url: BaseUrlOption = None,
    api_key: ApiKeyOption = None,
    process: Annotated[
        bool,
        typer.Option("--process/--no-process", help="Enrich chapters right after ingest."),
    ] = True,
) -> None:
    """Ingest an EPUB and (by default) enrich all chapters."""

    async def _ingest() -> None:
        pipeline = _build_pipeline(config_file, db_path, base_url, api_key)
        try:
            book = await pipeline.ingest_file(epub)
        except FileNotFoundError as exc:
            raise PipelineStageError(
                stage="ingest",
                detail=f"Input file not found: `{epub}`.",
            ) from exc
        typer.echo(f"Book id: {book.id}")
        if process:
            await _process_with_progress(pipeline, book.id, "ingest")
        await _echo_status(pipeline, book.id)

    try:
        _run(_ingest)
    except Exception as exc:
        exit_with_command_error("ingest", exc)


@app.command("process")
def process_command(
    book_id: BookIdArgument,
    config_file: ConfigOption = None,
    db_path: DbOption = None,
    base_url: BaseUrlOption = None,
    api_key: ApiKeyOption = None,
) -> None:
    """Resume enrichment of unfinished chapters."""

    async def _process() -> None:
        pipeline = _build_pipeline(config_file, db_path, base_url, api_key)
        await _process_with_progress(pipeline, book_id, "process")
        await _echo_status(pipeline, book_id)

    try:
        _run(_process)
    except Exception as exc:
        exit_with_command_error("process", exc)


@app.command("status")
def status_command(
    book_id: BookIdArgument,
    config_file: ConfigOption = None,
    db_path: DbOption = None,
) -> None:
    """Show chapter status, progress, word counts, and reading time."""

    async def _status() -> None:
        pipeline = _build_pipeline(config_file, db_path, None, None)
        await _echo_status(pipeline, book_id)

    try:
        _run(_status)
    except Exception as exc:
        exit_with_command_error("status", exc)


@app.command("estimate-density")
def estimate_density_command(
    book_id: BookIdArgument,
    config_file: ConfigOption = None,
    db_path: DbOption = None,
    base_url: BaseUrlOption = None,
    api_key: ApiKeyOption = None,
) -> None:
    """Re-estimate densities of ready chapters from token log probabilities."""

    async def _estimate() -> int:
        pipeline = _build_pipeline(config_file, db_path, base_url, api_key)
        return await pipeline.estimate_book_density(book_id)

    try:
        updated = _run(_estimate)
    except Exception as exc:
        exit_with_command_error("estimate-density", exc)
    typer.echo(f"Density windows updated: {updated}")


@app.command("remove")
def remove_command(
    book_id: BookIdArgument,
    config_file: ConfigOption = None,
    db_path: DbOption = None,
) -> None:
    """Remove a book with all of its chapters, images, and reading state."""

    async def _remove() -> bool:
        pipeline = _build_pipeline(config_file, db_path, None, None)
        return await pipeline.remove_book(book_id)

    try:
        removed = _run(_remove)
        if not removed:
            raise PipelineStageError(
                stage="remove",
                detail=f"Book `{book_id}` was not found.",
            )
    except Exception as exc:
        exit_with_command_error("remove", exc)
    typer.echo(f"Removed book {book_id}.")


@app.command("login")
def login_command() -> None:
    """Store the inference API key in secure credential storage."""

    prompted_api_key = normalize_optional_string(
        typer.prompt(
            "Inference API key (hidden input)",
            default="",
            hide_input=True,
            show_default=False,
        )
    )
    if prompted_api_key is None:
        exit_with_command_error(
            "login",
            PipelineStageError(
                stage="credentials",
                detail="No API key entered.",
                hint="Provide a non-empty API key.",
            ),
        )
    try:
        create_credential_store().set_api_key(prompted_api_key)
    except RuntimeError as exc:
        exit_with_command_error(
            "login",
            PipelineStageError(stage="credentials", detail=str(exc)),
        )
    typer.echo("API key stored in secure credential storage.")


@app.command("logout")
def logout_command() -> None:
    """Remove the stored inference API key."""

    if create_credential_store().clear_api_key():
        typer.echo("Stored API key cleared from secure credential storage.")
    else:
        typer.echo("No stored API key found in secure credential storage.")


@app.callback()
def _configure(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show debug logs."),
    ] = False,
) -> None:
    """Install the log sink once per invocation."""

    configure_logging(level="DEBUG" if verbose else "INFO")


def main() -> None:
    """CLI entrypoint for console scripts."""
    app()


if __name__ == "__main__":
    main()
