"""Tests for the layered capability cache and its stores."""

import asyncio
import json
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import FakeProber, probed
from mosaic.cache.capability_cache import CapabilityCache
from mosaic.cache.static import provider_baseline, static_override
from mosaic.db.stores import CACHE_VERSION, JsonFileStore, OverrideFile, SqliteStore
from mosaic.errors import CacheCorruptionError
from mosaic.models.capabilities import PROBE_VERSION, CapabilitySource, MessageShape, ProbedCapabilities


class SlowJsonStore(JsonFileStore):
    """JSON store whose writes take long enough to overlap with new records."""

    async def save(self, entries):
        await asyncio.sleep(0.05)
        await super().save(entries)


class TestStaticData:
    def test_static_match(self):
        assert static_override("openai", "gpt-4o-mini")["supports_vision"] is True
        assert static_override("openai", "gpt-3.5-turbo") is None
        # Provider-scoped entries do not leak across providers.
        assert static_override("openrouter", "gpt-4o") is None

    def test_provider_baseline_is_text_only(self):
        caps = provider_baseline("anthropic")
        assert not caps.supports_vision
        assert not caps.supports_pdf_native
        assert caps.requires_base64_images
        assert caps.message_shape is MessageShape.ANTHROPIC_CONTENT

    def test_unknown_provider_baseline(self):
        assert provider_baseline("somewhere") == ProbedCapabilities()


class TestPrecedence:
    def test_default_layer(self, make_cache):
        entry = make_cache().lookup("openai", "gpt-3.5-turbo")
        assert entry.source is CapabilitySource.DEFAULT
        assert not entry.capabilities.supports_vision
        assert entry.last_probed_at is None

    def test_static_layer(self, make_cache):
        entry = make_cache().lookup("openai", "gpt-4o")
        assert entry.source is CapabilitySource.STATIC
        assert entry.layers == (CapabilitySource.STATIC, CapabilitySource.DEFAULT)
        assert entry.capabilities.supports_vision

    def test_probe_only_replaces_determined_flags(self, make_cache):
        cache = make_cache()
        cache.record("openai", "gpt-4o", probed(probed_at=100.0, supports_vision=False))
        entry = cache.lookup("openai", "gpt-4o")
        assert entry.source is CapabilitySource.PROBED
        assert not entry.capabilities.supports_vision
        # Not determined by the probe, so the static value stands.
        assert entry.capabilities.supports_pdf_as_images
        assert entry.last_probed_at == 100.0

    def test_override_wins_and_can_be_removed(self, make_cache):
        cache = make_cache()
        cache.record("openai", "gpt-4o", probed(probed_at=100.0, supports_vision=False))
        cache.set_local_override("openai", "gpt-4o", {"supports_vision": True})

        entry = cache.lookup("openai", "gpt-4o")
        assert entry.source is CapabilitySource.LOCAL_OVERRIDE
        assert entry.capabilities.supports_vision
        assert entry.layers[0] is CapabilitySource.LOCAL_OVERRIDE

        assert cache.remove_local_override("openai", "gpt-4o")
        assert not cache.remove_local_override("openai", "gpt-4o")
        entry = cache.lookup("openai", "gpt-4o")
        assert entry.source is CapabilitySource.PROBED
        assert not entry.capabilities.supports_vision

    def test_override_rejects_bad_values(self, make_cache):
        with pytest.raises(ValueError):
            make_cache().set_local_override("openai", "gpt-4o", {"message_shape": "not-a-shape"})

    def test_override_suppresses_probing(self, make_cache):
        cache = make_cache()
        assert cache.needs_probe("openai", "gpt-4o")
        cache.set_local_override("openai", "gpt-4o", {"supports_vision": True})
        assert not cache.needs_probe("openai", "gpt-4o")


class TestRecording:
    def test_inconclusive_probe_is_not_recorded(self, make_cache):
        cache = make_cache()
        assert not cache.record("openai", "gpt-4o", ProbedCapabilities(probed_at=1.0))
        assert cache.entries() == {}
        assert cache.lookup("openai", "gpt-4o").source is CapabilitySource.STATIC

    def test_later_probe_keeps_earlier_determined_flags(self, make_cache):
        cache = make_cache(clock=lambda: 3.0)
        cache.record("ollama", "llama3", probed(probed_at=1.0, supports_vision=False))
        cache.record("ollama", "llama3", probed(probed_at=2.0, supports_pdf_native=False))
        caps = cache.entries()["ollama:llama3"]
        assert caps.determined == {"supports_vision", "supports_pdf_native"}
        assert caps.probed_at == 2.0

    def test_missing_timestamp_uses_clock(self, make_cache):
        cache = make_cache(clock=lambda: 42.0)
        cache.record("ollama", "llama3", probed(supports_vision=True))
        assert cache.entries()["ollama:llama3"].probed_at == 42.0

    def test_remove_and_clear(self, make_cache):
        cache = make_cache()
        cache.record("ollama", "a", probed(probed_at=1.0, supports_vision=True))
        cache.record("ollama", "b", probed(probed_at=1.0, supports_vision=True))
        assert cache.remove("ollama", "a")
        assert not cache.remove("ollama", "a")
        cache.clear()
        assert cache.entries() == {}


class TestStaleness:
    def test_ttl(self, make_cache):
        now = [1000.0]
        cache = make_cache(clock=lambda: now[0], ttl=60)
        cache.record("ollama", "llava", probed(probed_at=1000.0, supports_vision=True))
        assert not cache.needs_probe("ollama", "llava")

        now[0] += 61
        assert cache.needs_probe("ollama", "llava")
        # Stale data is still served until a fresh probe lands.
        assert cache.lookup("ollama", "llava").source is CapabilitySource.PROBED

    def test_probe_version_mismatch_is_stale(self, make_cache):
        cache = make_cache(clock=lambda: 10.0)
        caps = ProbedCapabilities(probed_at=10.0, probe_version="0.9.0", determined=frozenset({"supports_vision"}))
        assert cache.is_stale(caps)
        assert not cache.is_stale(ProbedCapabilities(probed_at=10.0, probe_version=PROBE_VERSION))

    def test_expired_flags_are_not_restamped(self, make_cache):
        day = 24 * 60 * 60
        now = [0.0]
        cache = make_cache(clock=lambda: now[0], ttl=7 * day)
        cache.record("openai", "gpt-test", probed(probed_at=0.0, supports_vision=True))

        now[0] = 8 * day
        cache.record("openai", "gpt-test", probed(message_shape=MessageShape.OPENAI_STRING))
        caps = cache.entries()["openai:gpt-test"]
        assert caps.determined == {"message_shape"}
        assert caps.probed_at == 8 * day
        assert "supports_vision" not in cache.lookup("openai", "gpt-test").capabilities.determined

    def test_old_format_flags_are_not_carried(self, make_cache):
        cache = make_cache(clock=lambda: 10.0)
        old = ProbedCapabilities(
            probed_at=10.0, probe_version="0.9.0", supports_vision=True, determined=frozenset({"supports_vision"})
        )
        cache.record("ollama", "llava", old)
        cache.record("ollama", "llava", probed(probed_at=10.0, supports_pdf_native=False))

        caps = cache.entries()["ollama:llava"]
        assert caps.determined == {"supports_pdf_native"}
        assert caps.probe_version == PROBE_VERSION
        assert not cache.is_stale(caps)

    def test_stats(self, make_cache):
        now = [1000.0]
        cache = make_cache(clock=lambda: now[0], ttl=60)
        cache.record("ollama", "llava", probed(probed_at=900.0, supports_vision=True))
        cache.record("openai", "gpt-test", probed(probed_at=990.0, supports_vision=False))
        cache.set_local_override("openai", "gpt-4o", {"supports_vision": True})

        stats = cache.stats()
        assert stats.model_count == 2
        assert stats.override_count == 1
        assert stats.stale_count == 1
        assert (stats.oldest_probe, stats.newest_probe) == (900.0, 990.0)
        assert stats.by_provider == {"ollama": 1, "openai": 1}
        assert stats.location.endswith("probed.json")


class TestResolve:
    @pytest.mark.asyncio
    async def test_resolve_probes_missing_entry(self, make_cache):
        prober = FakeProber(probed(supports_vision=False))
        cache = make_cache(prober)
        entry = await cache.resolve("openai", "gpt-test")

        assert prober.calls == [("openai", "gpt-test")]
        assert entry.source is CapabilitySource.PROBED
        assert not entry.capabilities.supports_vision

        # Fresh now, so no second probe.
        await cache.resolve("openai", "gpt-test")
        assert len(prober.calls) == 1
        await cache.aclose()

    @pytest.mark.asyncio
    async def test_resolve_without_probe_permission(self, make_cache):
        prober = FakeProber()
        cache = make_cache(prober, can_probe=lambda provider: False)
        entry = await cache.resolve("openai", "gpt-4o")
        assert prober.calls == []
        assert entry.source is CapabilitySource.STATIC
        await cache.aclose()

    @pytest.mark.asyncio
    async def test_concurrent_resolves_share_one_probe(self, make_cache):
        gate = asyncio.Event()
        prober = FakeProber(probed(supports_vision=True), gate=gate)
        cache = make_cache(prober)
        await cache.load()

        tasks = [asyncio.create_task(cache.resolve("ollama", "llava")) for _ in range(5)]
        await asyncio.sleep(0.01)
        assert cache.is_probing("ollama", "llava")
        gate.set()
        entries = await asyncio.gather(*tasks)

        assert len(prober.calls) == 1
        assert all(e.source is CapabilitySource.PROBED for e in entries)
        assert not cache.is_probing("ollama", "llava")
        await cache.aclose()

    @pytest.mark.asyncio
    async def test_failing_prober_keeps_lower_layers(self, make_cache):
        prober = Mock()
        prober.probe_model = AsyncMock(side_effect=RuntimeError("boom"))
        cache = make_cache(prober)
        assert await cache.probe("openai", "gpt-4o") is None
        entry = await cache.resolve("openai", "gpt-4o")
        assert entry.source is CapabilitySource.STATIC
        assert prober.probe_model.await_count == 2
        await cache.aclose()

    @pytest.mark.asyncio
    async def test_aclose_cancels_running_probes(self, make_cache):
        prober = FakeProber(gate=asyncio.Event())
        cache = make_cache(prober)
        task = cache.schedule_probe("ollama", "llava")
        await asyncio.sleep(0)
        await cache.aclose()
        assert task.cancelled()
        assert cache.entries() == {}


class TestPersistence:
    @pytest.mark.asyncio
    async def test_corrupt_document_starts_empty(self, tmp_path, make_cache):
        (tmp_path / "probed.json").write_text("{not json", encoding="utf-8")
        prober = FakeProber(probed(supports_vision=False))
        cache = make_cache(prober)
        await cache.load()

        assert isinstance(cache.load_error, CacheCorruptionError)
        assert cache.entries() == {}
        assert cache.stats().load_error is not None
        assert cache.lookup("openai", "gpt-4o").source is CapabilitySource.STATIC
        assert cache.needs_probe("openai", "gpt-4o")

        entry = await cache.resolve("openai", "gpt-4o")
        assert entry.source is CapabilitySource.PROBED
        await cache.flush()
        document = json.loads((tmp_path / "probed.json").read_text())
        assert "openai:gpt-4o" in document["models"]
        await cache.aclose()

    @pytest.mark.asyncio
    async def test_write_during_save_is_persisted(self, tmp_path):
        cache = CapabilityCache(
            SlowJsonStore(tmp_path / "probed.json"),
            OverrideFile(tmp_path / "local.json"),
            prober=FakeProber(),
            flush_delay=0.01,
            can_probe=lambda provider: False,
        )
        await cache.load()
        cache.record("openai", "a", probed(probed_at=1.0, supports_vision=True))
        await asyncio.sleep(0.03)  # first save is still running
        cache.record("openai", "b", probed(probed_at=1.0, supports_vision=False))
        await asyncio.sleep(0.3)

        saved = await JsonFileStore(tmp_path / "probed.json").load()
        assert set(saved) == {"openai:a", "openai:b"}
        await cache.aclose()

    @pytest.mark.asyncio
    async def test_records_made_before_load_survive(self, make_cache):
        first = make_cache()
        await first.load()
        first.record("ollama", "llava", probed(probed_at=1.0, supports_vision=True))
        await first.aclose()

        cache = make_cache()
        cache.record("openai", "gpt-test", probed(probed_at=2.0, supports_vision=False))
        cache.set_local_override("openai", "gpt-4o", {"supports_vision": False})
        await cache.load()

        assert set(cache.entries()) == {"ollama:llava", "openai:gpt-test"}
        assert cache.local_overrides == {"openai:gpt-4o": {"supports_vision": False}}
        assert cache.stats().model_count == 2
        await cache.aclose()

    @pytest.mark.asyncio
    async def test_flush_and_reload(self, tmp_path, make_cache):
        cache = make_cache()
        await cache.load()
        cache.record("openai", "gpt-test", probed(probed_at=5.0, supports_vision=False))
        await cache.flush()

        document = json.loads((tmp_path / "probed.json").read_text())
        assert document["version"] == CACHE_VERSION
        assert document["models"]["openai:gpt-test"]["determined"] == ["supports_vision"]
        await cache.aclose()

        reloaded = make_cache()
        await reloaded.load()
        entry = reloaded.lookup("openai", "gpt-test")
        assert entry.source is CapabilitySource.PROBED
        assert entry.last_probed_at == 5.0
        await reloaded.aclose()

    @pytest.mark.asyncio
    async def test_overrides_saved_only_on_request(self, tmp_path, make_cache):
        cache = make_cache()
        cache.set_local_override("openai", "gpt-4o", {"message_shape": "openai.string"})
        assert not (tmp_path / "local.json").exists()
        await cache.save_local_overrides()

        reloaded = make_cache()
        await reloaded.load()
        assert reloaded.local_overrides == {"openai:gpt-4o": {"message_shape": MessageShape.OPENAI_STRING}}
        assert reloaded.lookup("openai", "gpt-4o").capabilities.message_shape is MessageShape.OPENAI_STRING
        await cache.aclose()
        await reloaded.aclose()


class TestStores:
    @pytest.mark.asyncio
    async def test_json_store_missing_file(self, tmp_path):
        assert await JsonFileStore(tmp_path / "absent.json").load() == {}

    @pytest.mark.asyncio
    async def test_json_store_version_mismatch(self, tmp_path):
        path = tmp_path / "old.json"
        path.write_text(json.dumps({"version": "0.1.0", "models": {"openai:x": {"supports_vision": True}}}))
        assert await JsonFileStore(path).load() == {}

    @pytest.mark.asyncio
    async def test_json_store_drops_bad_keys(self, tmp_path):
        path = tmp_path / "c.json"
        path.write_text(
            json.dumps(
                {
                    "version": CACHE_VERSION,
                    "models": {
                        "no-separator": {"supports_vision": True},
                        "openai:x": {"supports_vision": True, "determined": ["supports_vision"]},
                    },
                }
            )
        )
        entries = await JsonFileStore(path).load()
        assert list(entries) == ["openai:x"]

    @pytest.mark.asyncio
    async def test_sqlite_round_trip(self, tmp_path):
        store = SqliteStore(tmp_path / "caps.db")
        caps = probed(probed_at=3.0, supports_vision=True, message_shape=MessageShape.OPENAI_STRING)
        await store.save({"ollama:llava": caps})
        await store.close()

        reopened = SqliteStore(tmp_path / "caps.db")
        entries = await reopened.load()
        await reopened.close()
        assert entries == {"ollama:llava": caps}

    @pytest.mark.asyncio
    async def test_sqlite_corrupt_file(self, tmp_path):
        path = tmp_path / "broken.db"
        path.write_bytes(b"this is not a sqlite database, just some bytes" * 20)
        with pytest.raises(CacheCorruptionError):
            await SqliteStore(path).load()

    def test_override_file_round_trip(self, tmp_path):
        overrides = OverrideFile(tmp_path / "local.json")
        overrides.save({"anthropic:claude-x": {"supports_pdf_native": False, "message_shape": MessageShape.ANTHROPIC_CONTENT}})
        assert overrides.load() == {
            "anthropic:claude-x": {"supports_pdf_native": False, "message_shape": MessageShape.ANTHROPIC_CONTENT}
        }

    def test_override_file_corrupt(self, tmp_path):
        path = tmp_path / "local.json"
        path.write_text("[1, 2")
        with pytest.raises(CacheCorruptionError):
            OverrideFile(path).load()
