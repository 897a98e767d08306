"""Capability cache: layered resolution over overrides, probes and static data.

Precedence, highest first: local override, probed, static, provider default.
Layers merge flag by flag, so a partial override only replaces what it names
and a probe only contributes the flags it actually determined.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Protocol

from mosaic.backends.registry import is_known_provider, requires_api_key
from mosaic.cache.static import provider_baseline, static_override
from mosaic.config import settings
from mosaic.db.stores import CapabilityStore, OverrideFile, store_from_settings
from mosaic.errors import CacheCorruptionError
from mosaic.models.capabilities import (
    PROBE_VERSION,
    CachedCapabilityEntry,
    CapabilitySource,
    ProbedCapabilities,
    cache_key,
    coerce_flags,
    parse_cache_key,
)
from mosaic.models.probe import ModelProbeReport
from mosaic.probe.client import ProbeClient

logger = logging.getLogger(__name__)


class Prober(Protocol):
    async def probe_model(self, provider: str, model: str) -> ModelProbeReport: ...


@dataclass
class CacheStats:
    model_count: int
    override_count: int
    stale_count: int
    oldest_probe: float | None
    newest_probe: float | None
    by_provider: dict[str, int] = field(default_factory=dict)
    location: str = ""
    load_error: str | None = None


def _default_can_probe(provider: str) -> bool:
    if not is_known_provider(provider):
        return False
    return not requires_api_key(provider) or bool(settings.api_key_for(provider))


class CapabilityCache:
    """Resolves ``ProbedCapabilities`` for a (provider, model) pair."""

    def __init__(
        self,
        store: CapabilityStore | None = None,
        overrides: OverrideFile | None = None,
        *,
        prober: Prober | None = None,
        ttl: float | None = None,
        flush_delay: float | None = None,
        clock: Callable[[], float] = time.time,
        can_probe: Callable[[str], bool] | None = None,
    ) -> None:
        self.store = store if store is not None else store_from_settings()
        self.overrides_file = (
            overrides if overrides is not None else OverrideFile(settings.resolve_path(settings.overrides_file))
        )
        self.prober = prober if prober is not None else ProbeClient(clock=clock)
        self.ttl = settings.capability_ttl_seconds if ttl is None else ttl
        self.flush_delay = settings.cache_flush_delay if flush_delay is None else flush_delay
        self.clock = clock
        self.can_probe = can_probe or _default_can_probe

        self.load_error: CacheCorruptionError | None = None
        self._loaded = False
        self._probed: dict[str, ProbedCapabilities] = {}
        self._overrides: dict[str, dict[str, Any]] = {}
        self._in_flight: dict[str, asyncio.Task[ModelProbeReport | None]] = {}
        self._write_lock = asyncio.Lock()
        self._flush_task: asyncio.Task[None] | None = None
        self._dirty = False

    # -- Loading --

    async def load(self) -> None:
        """Read persisted entries; corruption leaves the cache empty and sets ``load_error``.

        Entries recorded in memory before loading win over persisted ones.
        """
        self.load_error = None
        stored: dict[str, ProbedCapabilities] = {}
        try:
            stored = await self.store.load()
        except CacheCorruptionError as exc:
            logger.warning("%s; starting with an empty capability cache", exc)
            self.load_error = exc
        self._probed = {**stored, **self._probed}

        overrides: dict[str, dict[str, Any]] = {}
        try:
            overrides = self.overrides_file.load()
        except CacheCorruptionError as exc:
            logger.warning("%s; ignoring local overrides", exc)
            self.load_error = self.load_error or exc
        self._overrides = {**overrides, **self._overrides}
        self._loaded = True
        logger.info("Capability cache loaded: %d probed, %d overrides", len(self._probed), len(self._overrides))

    async def ensure_loaded(self) -> None:
        if not self._loaded:
            await self.load()

    # -- Resolution --

    def lookup(self, provider: str, model: str) -> CachedCapabilityEntry:
        """Resolve from what is in memory. Never probes and never blocks."""
        key = cache_key(provider, model)
        caps = provider_baseline(provider)
        layers = [CapabilitySource.DEFAULT]

        static = static_override(provider, model)
        if static:
            caps = caps.merged(static)
            layers.append(CapabilitySource.STATIC)

        probed = self._probed.get(key)
        if probed is not None and probed.determined:
            caps = replace(
                caps.merged(probed.flags(only_determined=True)),
                probed_at=probed.probed_at,
                probe_version=probed.probe_version,
                determined=probed.determined,
                quirks=probed.quirks,
            )
            layers.append(CapabilitySource.PROBED)

        override = self._overrides.get(key)
        if override:
            caps = caps.merged(override)
            layers.append(CapabilitySource.LOCAL_OVERRIDE)

        return CachedCapabilityEntry(
            provider=provider,
            model=model,
            capabilities=caps,
            source=layers[-1],
            last_probed_at=probed.probed_at if probed is not None else None,
            probe_version=probed.probe_version if probed is not None else PROBE_VERSION,
            layers=tuple(reversed(layers)),
        )

    def is_stale(self, caps: ProbedCapabilities) -> bool:
        if caps.probe_version != PROBE_VERSION or caps.probed_at is None:
            return True
        return self.clock() - caps.probed_at > self.ttl

    def needs_probe(self, provider: str, model: str) -> bool:
        key = cache_key(provider, model)
        if key in self._overrides:
            return False
        probed = self._probed.get(key)
        return probed is None or self.is_stale(probed)

    async def resolve(self, provider: str, model: str) -> CachedCapabilityEntry:
        """Resolve, probing first when the probed layer is missing or stale."""
        await self.ensure_loaded()
        if self.needs_probe(provider, model) and self.can_probe(provider):
            await self.probe(provider, model)
        return self.lookup(provider, model)

    # -- Probing --

    def is_probing(self, provider: str, model: str) -> bool:
        return cache_key(provider, model) in self._in_flight

    def schedule_probe(self, provider: str, model: str) -> asyncio.Task[ModelProbeReport | None]:
        """Start (or join) a background probe without waiting for it."""
        key = cache_key(provider, model)
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(self._run_probe(provider, model), name=f"probe:{key}")
            self._in_flight[key] = task
            task.add_done_callback(lambda t, key=key: self._forget(key, t))
        return task

    def _forget(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def probe(self, provider: str, model: str) -> ModelProbeReport | None:
        """Probe now, sharing any probe already running for the same key.

        Returns None when the probe could not run or the shared probe was
        cancelled by its owner.
        """
        task = self.schedule_probe(provider, model)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return None
            raise

    async def _run_probe(self, provider: str, model: str) -> ModelProbeReport | None:
        try:
            report = await self.prober.probe_model(provider, model)
        except asyncio.CancelledError:
            logger.info("Probe of %s:%s cancelled", provider, model)
            raise
        except Exception:
            logger.exception("Probe of %s:%s failed", provider, model)
            return None
        self.record(provider, model, report.capabilities)
        return report

    def record(self, provider: str, model: str, caps: ProbedCapabilities) -> bool:
        """Store probe output. Nothing is written when the probe determined nothing."""
        if not caps.determined:
            logger.warning("Probe of %s:%s was inconclusive; keeping existing data", provider, model)
            return False
        key = cache_key(provider, model)
        previous = self._probed.get(key)
        if previous is not None and previous.determined and not self.is_stale(previous):
            # Flags this run could not settle keep a fresh earlier value.
            # Expired or old-format flags are dropped, not restamped.
            carried = {k: v for k, v in previous.flags(only_determined=True).items() if k not in caps.determined}
            caps = replace(caps.merged(carried), determined=caps.determined | previous.determined)
        if caps.probed_at is None:
            caps = replace(caps, probed_at=self.clock())
        self._probed[key] = caps
        self._mark_dirty()
        return True

    # -- Local overrides --

    @property
    def local_overrides(self) -> dict[str, dict[str, Any]]:
        return {k: dict(v) for k, v in self._overrides.items()}

    def set_local_override(self, provider: str, model: str, flags: dict[str, Any]) -> None:
        self._overrides[cache_key(provider, model)] = coerce_flags(flags)

    def remove_local_override(self, provider: str, model: str) -> bool:
        return self._overrides.pop(cache_key(provider, model), None) is not None

    async def save_local_overrides(self) -> None:
        async with self._write_lock:
            await asyncio.to_thread(self.overrides_file.save, dict(self._overrides))

    # -- Maintenance --

    def remove(self, provider: str, model: str) -> bool:
        removed = self._probed.pop(cache_key(provider, model), None) is not None
        if removed:
            self._mark_dirty()
        return removed

    def clear(self) -> None:
        if self._probed:
            self._probed.clear()
            self._mark_dirty()

    def entries(self) -> dict[str, ProbedCapabilities]:
        return dict(self._probed)

    def stats(self) -> CacheStats:
        stamps = [c.probed_at for c in self._probed.values() if c.probed_at is not None]
        by_provider: dict[str, int] = {}
        for key in self._probed:
            parsed = parse_cache_key(key)
            if parsed:
                by_provider[parsed[0]] = by_provider.get(parsed[0], 0) + 1
        return CacheStats(
            model_count=len(self._probed),
            override_count=len(self._overrides),
            stale_count=sum(1 for c in self._probed.values() if self.is_stale(c)),
            oldest_probe=min(stamps) if stamps else None,
            newest_probe=max(stamps) if stamps else None,
            by_provider=dict(sorted(by_provider.items())),
            location=self.store.location,
            load_error=str(self.load_error) if self.load_error else None,
        )

    # -- Persistence --

    def _mark_dirty(self) -> None:
        self._dirty = True
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return  # no loop; the next explicit flush() persists
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._delayed_flush(), name="capability-cache-flush")

    async def _delayed_flush(self) -> None:
        # Writes that land while a save is running find this task still alive,
        # so keep going until nothing is pending.
        while self._dirty:
            await asyncio.sleep(self.flush_delay)
            try:
                await self.flush()
            except OSError:
                logger.exception("Failed to persist capability cache to %s", self.store.location)
                return

    async def flush(self) -> None:
        """Persist pending changes through the single writer path."""
        async with self._write_lock:
            if not self._dirty:
                return
            snapshot = dict(self._probed)
            self._dirty = False
            try:
                await self.store.save(snapshot)
            except BaseException:
                self._dirty = True
                raise
            logger.debug("Persisted %d capability entries to %s", len(snapshot), self.store.location)

    async def aclose(self) -> None:
        """Cancel running probes, write pending changes and release the store."""
        probes = list(self._in_flight.values())
        for task in probes:
            task.cancel()
        if probes:
            await asyncio.gather(*probes, return_exceptions=True)
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
            await asyncio.gather(self._flush_task, return_exceptions=True)
        await self.flush()
        await self.store.close()
