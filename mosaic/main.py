"""Mosaic: FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from mosaic.backends.registry import KNOWN_PROVIDERS, is_known_provider
from mosaic.cache.capability_cache import CapabilityCache
from mosaic.config import configure_logging
from mosaic.context.normalizer import ExtractedContent
from mosaic.context.renderer import envelope_stats
from mosaic.errors import BudgetOverflowError
from mosaic.models.capabilities import CachedCapabilityEntry, coerce_flags
from mosaic.orchestrator.assembler import ContextAssembler
from mosaic.probe.batch import report_to_dict

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    app.state.cache = CapabilityCache()
    await app.state.cache.load()
    yield
    await app.state.cache.aclose()


app = FastAPI(
    title="Mosaic",
    description="Capability-aware multimodal context assembly",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_cache(request: Request) -> CapabilityCache:
    return request.app.state.cache


# --- Request / Response models ---


class CapabilityResponse(BaseModel):
    provider: str
    model: str
    source: str
    layers: list[str]
    capabilities: dict[str, Any]
    last_probed_at: float | None = None
    probe_version: str
    stale: bool
    probing: bool
    load_error: str | None = None


class OverrideRequest(BaseModel):
    flags: dict[str, Any]


class ContextRequest(BaseModel):
    items: list[ExtractedContent]
    task: str
    provider: str
    model: str
    max_tokens: int | None = Field(default=None, gt=0)
    include_attachments: bool = True


class ContextResponse(BaseModel):
    text: str
    stats: dict[str, Any]
    cuts: list[dict[str, Any]]
    capability_source: str
    probe_scheduled: bool
    errors: list[dict[str, Any]]


# --- Helpers ---


def _check_provider(provider: str) -> None:
    if not is_known_provider(provider):
        raise HTTPException(
            status_code=404,
            detail=f"Unknown provider {provider!r}; expected one of {', '.join(KNOWN_PROVIDERS)}",
        )


def _capability_response(entry: CachedCapabilityEntry, cache: CapabilityCache) -> CapabilityResponse:
    return CapabilityResponse(
        provider=entry.provider,
        model=entry.model,
        source=entry.source.value,
        layers=[layer.value for layer in entry.layers],
        capabilities=entry.capabilities.to_dict(),
        last_probed_at=entry.last_probed_at,
        probe_version=entry.probe_version,
        stale=cache.needs_probe(entry.provider, entry.model),
        probing=cache.is_probing(entry.provider, entry.model),
        load_error=str(cache.load_error) if cache.load_error else None,
    )


# --- Routes ---


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/capabilities")
async def cache_stats(cache: CapabilityCache = Depends(get_cache)):
    """Summary of the probed cache and the configured overrides."""
    await cache.ensure_loaded()
    stats = cache.stats()
    return {
        "model_count": stats.model_count,
        "override_count": stats.override_count,
        "stale_count": stats.stale_count,
        "oldest_probe": stats.oldest_probe,
        "newest_probe": stats.newest_probe,
        "by_provider": stats.by_provider,
        "location": stats.location,
        "load_error": stats.load_error,
    }


@app.get("/api/capabilities/{provider}/{model:path}", response_model=CapabilityResponse)
async def get_capabilities(provider: str, model: str, cache: CapabilityCache = Depends(get_cache)):
    """Resolved capabilities with provenance. Never waits on a probe."""
    _check_provider(provider)
    await cache.ensure_loaded()
    return _capability_response(cache.lookup(provider, model), cache)


@app.post("/api/capabilities/{provider}/{model:path}/probe")
async def probe_model(provider: str, model: str, cache: CapabilityCache = Depends(get_cache)):
    """Probe now (joining any probe already running) and return the report."""
    _check_provider(provider)
    await cache.ensure_loaded()
    report = await cache.probe(provider, model)
    if report is None:
        raise HTTPException(status_code=503, detail=f"Probe of {provider}:{model} did not complete")
    await cache.flush()
    return {
        "report": report_to_dict(report),
        "resolved": _capability_response(cache.lookup(provider, model), cache),
    }


@app.put("/api/capabilities/{provider}/{model:path}/override", response_model=CapabilityResponse)
async def put_override(
    provider: str, model: str, req: OverrideRequest, cache: CapabilityCache = Depends(get_cache)
):
    """Replace the local override for a model; takes precedence over everything else."""
    _check_provider(provider)
    try:
        flags = coerce_flags(req.flags)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if not flags:
        raise HTTPException(status_code=422, detail="Override names no known capability flags")
    await cache.ensure_loaded()
    cache.set_local_override(provider, model, flags)
    await cache.save_local_overrides()
    return _capability_response(cache.lookup(provider, model), cache)


@app.delete("/api/capabilities/{provider}/{model:path}/override", response_model=CapabilityResponse)
async def delete_override(provider: str, model: str, cache: CapabilityCache = Depends(get_cache)):
    _check_provider(provider)
    await cache.ensure_loaded()
    if not cache.remove_local_override(provider, model):
        raise HTTPException(status_code=404, detail="No override for that model")
    await cache.save_local_overrides()
    return _capability_response(cache.lookup(provider, model), cache)


@app.post("/api/context", response_model=ContextResponse)
async def assemble_context(req: ContextRequest, cache: CapabilityCache = Depends(get_cache)):
    """Assemble a context block for the given model.

    Missing or stale capabilities schedule a background probe; this request
    proceeds with what the cache knows now.
    """
    _check_provider(req.provider)
    assembler = ContextAssembler(cache)
    try:
        result = await assembler.assemble(
            req.items,
            req.task,
            req.provider,
            req.model,
            max_tokens=req.max_tokens,
            include_attachments=req.include_attachments,
        )
    except BudgetOverflowError as exc:
        logger.warning("Context for %s:%s does not fit: %s", req.provider, req.model, exc)
        raise HTTPException(status_code=413, detail=str(exc)) from exc

    budget = result.envelope.budget
    return ContextResponse(
        text=result.text,
        stats=envelope_stats(result.envelope),
        cuts=[
            {
                "anchor": cut.anchor,
                "stage": cut.stage,
                "action": cut.action.value,
                "original_tokens": cut.original_tokens,
                "reason": cut.reason,
            }
            for cut in budget.cuts
        ],
        capability_source=result.capabilities.source.value,
        probe_scheduled=result.probe_scheduled,
        errors=[{"title": e.title, "kind": e.kind, "message": str(e)} for e in result.normalization_errors],
    )
