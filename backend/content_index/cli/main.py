"""CLI entrypoint for the content index."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import typer

from content_index.app import ContentIndexApp, create_app
from content_index.core.config import get_settings
from content_index.core.errors import ContentIndexError
from content_index.core.metrics import metrics_text
from content_index.embedding.models import list_available_models

app = typer.Typer(name="cidx", help="Semantic content index command-line interface")
cache_app = typer.Typer(name="cache", help="Inspect and prune the model artifact cache")
app.add_typer(cache_app, name="cache")


def _run(handler: Callable[[ContentIndexApp], Awaitable[Any]], initialize: bool = False) -> Any:
    async def runner() -> Any:
        application = create_app(get_settings())
        try:
            if initialize:
                await application.initialize()
            return await handler(application)
        finally:
            await application.close()

    try:
        return asyncio.run(runner())
    except ContentIndexError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)


def _echo(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


@app.command()
def index(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Text file to index"),
    source: str = typer.Option(..., "--source", help="Source identifier the chunks belong to"),
    url: Optional[str] = typer.Option(None, "--url", help="URL recorded with the chunks"),
    title: Optional[str] = typer.Option(None, "--title", help="Title recorded with the chunks"),
) -> None:
    """Chunk, embed and index a text file."""
    text = path.expanduser().read_text(encoding="utf-8")
    # file:// URLs are excluded from indexing, so local files are recorded by plain path
    resolved_url = url or path.expanduser().resolve().as_posix()
    resolved_title = title or path.stem

    async def handler(application: ContentIndexApp) -> Any:
        return await application.index_content(source, resolved_url, resolved_title, text)

    outcome = _run(handler, initialize=True)
    _echo(outcome.to_dict())


@app.command()
def search(
    q: str = typer.Argument(..., help="Query text"),
    k: int = typer.Option(10, "--k", help="Number of results to return"),
) -> None:
    """Semantic search over indexed chunks."""

    async def handler(application: ContentIndexApp) -> Any:
        return await application.search(q, k)

    results = _run(handler, initialize=True)
    _echo([result.to_dict() for result in results])


@app.command()
def remove(source: str = typer.Argument(..., help="Source identifier")) -> None:
    """Remove every chunk indexed for a source."""

    async def handler(application: ContentIndexApp) -> Any:
        return await application.remove_source(source)

    removed = _run(handler, initialize=True)
    _echo({"source": source, "removed": removed})


@app.command()
def stats() -> None:
    """Show index and model statistics."""

    async def handler(application: ContentIndexApp) -> Any:
        await application.initialize_if_cached()
        return application.get_stats()

    _echo(_run(handler))


@app.command()
def clear() -> None:
    """Drop all indexed chunks."""

    async def handler(application: ContentIndexApp) -> Any:
        await application.clear_all()

    _run(handler, initialize=True)
    _echo({"status": "ok"})


@app.command("switch-model")
def switch_model(
    preset: str = typer.Argument(..., help="Model preset to switch to"),
    version: str = typer.Option("quantized", "--version", help="Model version: full, quantized or compressed"),
) -> None:
    """Switch the embedding model, rebuilding the index when the dimension changes."""

    async def handler(application: ContentIndexApp) -> Any:
        await application.load_model_selection()
        return await application.switch_model(preset, version)

    result = _run(handler)
    _echo(result)
    if not result["success"]:
        raise typer.Exit(code=1)


@app.command()
def models() -> None:
    """List available model presets."""
    _echo(
        [
            {
                "preset": info.preset,
                "identifier": info.identifier,
                "dimension": info.dimension,
                "size": info.size,
                "description": info.description,
            }
            for info in list_available_models()
        ]
    )


@app.command()
def metrics() -> None:
    """Print Prometheus metrics collected by this process."""
    typer.echo(metrics_text())


@cache_app.command("stats")
def cache_stats() -> None:
    """Show cached model artifacts."""

    async def handler(application: ContentIndexApp) -> Any:
        return await application.model_cache.stats()

    _echo(_run(handler).to_dict())


@cache_app.command("cleanup")
def cache_cleanup() -> None:
    """Delete expired model artifacts."""

    async def handler(application: ContentIndexApp) -> Any:
        return await application.model_cache.cleanup_expired()

    _echo({"removed": _run(handler)})


@cache_app.command("clear")
def cache_clear() -> None:
    """Delete every cached model artifact."""

    async def handler(application: ContentIndexApp) -> Any:
        await application.model_cache.clear_all()

    _run(handler)
    _echo({"status": "ok"})


if __name__ == "__main__":
    app()
