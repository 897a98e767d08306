"""Context assembly: one pipeline run per request."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Sequence

from mosaic.cache.capability_cache import CapabilityCache
from mosaic.context.builder import BuildOptions, build
from mosaic.context.degrader import Comparator, degrade
from mosaic.context.normalizer import ExtractedContent, normalize_many
from mosaic.context.renderer import render
from mosaic.errors import NormalizationError
from mosaic.models.capabilities import CachedCapabilityEntry
from mosaic.models.envelope import ContextEnvelope
from mosaic.models.probe import ModelProbeReport
from mosaic.models.source import Source

logger = logging.getLogger(__name__)


@dataclass
class AssemblyResult:
    envelope: ContextEnvelope
    text: str
    capabilities: CachedCapabilityEntry
    normalization_errors: list[NormalizationError] = field(default_factory=list)
    probe_scheduled: bool = False


class ContextAssembler:
    """Runs one assembly pipeline against a shared capability cache.

    Capability lookups never wait on the network unless ``wait_for_probe`` is
    set; a missing or stale entry schedules a background probe and the build
    proceeds with what the cache already knows.
    """

    def __init__(self, cache: CapabilityCache, *, comparator: Comparator | None = None) -> None:
        self.cache = cache
        self.comparator = comparator
        self._scheduled: set[asyncio.Task[ModelProbeReport | None]] = set()

    async def assemble(
        self,
        items: Sequence[ExtractedContent | Source],
        task: str,
        provider: str,
        model: str,
        *,
        max_tokens: int | None = None,
        include_attachments: bool = True,
        wait_for_probe: bool = False,
    ) -> AssemblyResult:
        await self.cache.ensure_loaded()

        collected: list[Source] = []
        errors: list[NormalizationError] = []
        for item in items:
            if isinstance(item, Source):
                collected.append(item)
                continue
            report = normalize_many([item])
            collected.extend(report.sources)
            errors.extend(report.errors)
        sources = _dedupe(collected)

        if wait_for_probe:
            capabilities = await self.cache.resolve(provider, model)
            scheduled = False
        else:
            scheduled = self._maybe_schedule(provider, model)
            capabilities = self.cache.lookup(provider, model)

        envelope = build(
            sources,
            task,
            BuildOptions(max_tokens=max_tokens, include_attachments=include_attachments),
            capabilities=capabilities.capabilities,
        )
        if max_tokens is not None:
            envelope = degrade(envelope, max_tokens, comparator=self.comparator)

        logger.info(
            "Assembled %d sources for %s:%s (%s capabilities, %d tokens, stage %d)",
            len(sources),
            provider,
            model,
            capabilities.source.value,
            envelope.budget.used_tokens,
            envelope.budget.stage,
        )
        return AssemblyResult(
            envelope=envelope,
            text=render(envelope),
            capabilities=capabilities,
            normalization_errors=errors,
            probe_scheduled=scheduled,
        )

    def _maybe_schedule(self, provider: str, model: str) -> bool:
        if self.cache.is_probing(provider, model):
            return False
        if not self.cache.needs_probe(provider, model) or not self.cache.can_probe(provider):
            return False
        task = self.cache.schedule_probe(provider, model)
        self._scheduled.add(task)
        task.add_done_callback(self._scheduled.discard)
        return True

    @property
    def pending_probes(self) -> int:
        return sum(1 for t in self._scheduled if not t.done())

    def cancel_probes(self) -> int:
        """Cancel probes this assembler started; probes owned by others keep running."""
        cancelled = 0
        for task in list(self._scheduled):
            if not task.done():
                task.cancel()
                cancelled += 1
        return cancelled


def _dedupe(sources: list[Source]) -> list[Source]:
    seen: set[str] = set()
    unique: list[Source] = []
    for source in sources:
        if source.source_id in seen:
            logger.debug("Dropping duplicate source %s (%s)", source.source_id, source.title)
            continue
        seen.add(source.source_id)
        unique.append(source)
    return unique
