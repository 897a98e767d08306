from __future__ import annotations

import asyncio
import json
from pathlib import Path

import typer

from mosaic.backends.registry import is_known_provider
from mosaic.cache.capability_cache import CapabilityCache
from mosaic.config import configure_logging, settings
from mosaic.context.normalizer import ExtractedContent
from mosaic.context.renderer import envelope_stats
from mosaic.errors import BudgetOverflowError
from mosaic.orchestrator.assembler import ContextAssembler
from mosaic.probe.batch import load_quick_list, pairs_from_env, parse_pairs, probe_batch
from mosaic.probe.client import ProbeClient

app = typer.Typer(add_completion=False, no_args_is_help=True)


def _pairs(models: str | None, quick_list_file: str | None) -> list[tuple[str, str]]:
    """--models JSON, then the quick-list env vars, then the quick-list file."""
    if models:
        return parse_pairs(models)
    from_env = pairs_from_env()
    if from_env:
        return from_env
    path = Path(quick_list_file) if quick_list_file else settings.resolve_path(settings.quick_list_file)
    return load_quick_list(path) or []


@app.command()
def probe(
    models: str = typer.Option(None, help='JSON list, e.g. \'[{"provider": "openai", "model": "gpt-4o"}]\''),
    quick_list_file: str = typer.Option(None, help="Quick-list document to read models from"),
    write_cache: bool = typer.Option(False, "--write-cache", "-w", help="Write results to the capability cache"),
    json_output: bool = typer.Option(False, "--json", help="Print results as JSON"),
    minimal: bool = typer.Option(False, help="Print one OK/FAIL line per model"),
    timeout: float = typer.Option(None, help="Per-request timeout in seconds"),
    keys_file: str = typer.Option(None, help="API keys document ({\"provider\": \"key\"})"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Probe models for vision and PDF support and print a summary."""
    configure_logging("DEBUG" if verbose else ("WARNING" if json_output or minimal else None))
    if keys_file:
        settings.keys_file = str(Path(keys_file).expanduser().resolve())
    try:
        pairs = _pairs(models, quick_list_file)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--models")
    if not pairs:
        typer.echo("No models to probe. Pass --models or set MOSAIC_QUICK_LIST.", err=True)
        raise typer.Exit(code=1)

    async def _run():
        cache = CapabilityCache() if write_cache else None
        try:
            await probe_batch(
                pairs,
                write_cache=write_cache,
                json_output=json_output,
                minimal=minimal,
                client=ProbeClient(timeout=timeout),
                cache=cache,
                echo=typer.echo,
            )
        finally:
            if cache is not None:
                await cache.aclose()
        return cache

    cache = asyncio.run(_run())
    if cache is not None and not json_output:
        typer.echo(f"Cache written to: {cache.store.location}")


@app.command()
def resolve(
    provider: str,
    model: str,
    probe_missing: bool = typer.Option(False, "--probe", help="Probe first when missing or stale"),
):
    """Show resolved capabilities for one model and where each came from."""
    configure_logging()
    if not is_known_provider(provider):
        raise typer.BadParameter(f"unknown provider {provider!r}", param_hint="PROVIDER")

    async def _run():
        cache = CapabilityCache()
        try:
            await cache.load()
            entry = await cache.resolve(provider, model) if probe_missing else cache.lookup(provider, model)
            return entry, cache.needs_probe(provider, model)
        finally:
            await cache.aclose()

    entry, stale = asyncio.run(_run())
    typer.echo(
        json.dumps(
            {
                "provider": entry.provider,
                "model": entry.model,
                "source": entry.source.value,
                "layers": [layer.value for layer in entry.layers],
                "stale": stale,
                "capabilities": entry.capabilities.to_dict(),
            },
            indent=2,
        )
    )


@app.command("cache-stats")
def cache_stats():
    """Summarize the probed capability cache."""
    configure_logging()

    async def _run():
        cache = CapabilityCache()
        try:
            await cache.load()
            return cache.stats()
        finally:
            await cache.aclose()

    stats = asyncio.run(_run())
    typer.echo(f"Cache: {stats.location}")
    if stats.load_error:
        typer.echo(f"Warning: {stats.load_error}", err=True)
    typer.echo(f"Models: {stats.model_count} ({stats.stale_count} stale)")
    typer.echo(f"Local overrides: {stats.override_count}")
    for provider, count in stats.by_provider.items():
        typer.echo(f"  {provider}: {count}")


@app.command()
def assemble(
    items_file: str = typer.Argument(..., help="JSON list of extracted content items"),
    task: str = typer.Option(..., help="Task text placed at the end of the context"),
    provider: str = typer.Option(...),
    model: str = typer.Option(...),
    max_tokens: int = typer.Option(None, help="Token budget; degrade when exceeded"),
    stats: bool = typer.Option(False, help="Print envelope stats instead of the rendered text"),
):
    """Assemble and render a context block from extracted content."""
    configure_logging("WARNING")
    raw = json.loads(Path(items_file).read_text(encoding="utf-8"))
    items = [ExtractedContent.model_validate(item) for item in raw]

    async def _run():
        cache = CapabilityCache()
        assembler = ContextAssembler(cache)
        try:
            return await assembler.assemble(items, task, provider, model, max_tokens=max_tokens)
        finally:
            assembler.cancel_probes()
            await cache.aclose()

    try:
        result = asyncio.run(_run())
    except BudgetOverflowError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2)
    for error in result.normalization_errors:
        typer.echo(f"Skipped {error.title or '(untitled)'}: {error}", err=True)
    if stats:
        typer.echo(json.dumps(envelope_stats(result.envelope), indent=2))
    else:
        typer.echo(result.text)


@app.command()
def serve(
    host: str = typer.Option(None),
    port: int = typer.Option(None),
):
    """Run the HTTP API."""
    import uvicorn

    configure_logging()
    uvicorn.run("mosaic.main:app", host=host or settings.host, port=port or settings.port)
