"""Shared fixtures for the mosaic test suite."""

import asyncio
import base64

import pytest

from mosaic.backends.base import ProbeKind
from mosaic.cache.capability_cache import CapabilityCache
from mosaic.context.normalizer import normalize_image, normalize_note, normalize_pdf, normalize_webpage
from mosaic.db.stores import JsonFileStore, OverrideFile
from mosaic.models.capabilities import ProbedCapabilities
from mosaic.models.probe import ModelProbeReport, ProbeAttempt, ProbeOutcome, ProbeResult
from mosaic.models.source import BinaryBlob, PdfPage
from mosaic.probe.client import INITIAL_VARIANT
from mosaic.probe.fixtures import TINY_PDF, TINY_PNG_BASE64


def page_text(page_number: int, words: int = 120) -> str:
    """Distinct, clean prose for one PDF page."""
    return " ".join(f"page{page_number} sentence word{i}." if i % 12 == 11 else f"word{i}" for i in range(words))


@pytest.fixture
def png_blob():
    return BinaryBlob(base64.b64decode(TINY_PNG_BASE64), "image/png")


@pytest.fixture
def pdf_blob():
    return BinaryBlob(TINY_PDF, "application/pdf")


@pytest.fixture
def make_pdf(png_blob, pdf_blob):
    def _make(pages: int = 3, words: int = 120, *, with_images: bool = False, title: str = "Report"):
        return normalize_pdf(
            title,
            [
                PdfPage(page_number=n, text=page_text(n, words), image=png_blob if with_images else None)
                for n in range(1, pages + 1)
            ],
            pdf_bytes=pdf_blob,
        )

    return _make


@pytest.fixture
def webpage(png_blob):
    return normalize_webpage(
        "Example article",
        "# Heading\n\nThe quick brown fox jumps over the lazy dog. " * 4,
        url="https://example.com/article",
        screenshot=png_blob,
    )


@pytest.fixture
def note():
    return normalize_note("Meeting notes", "Decided to ship on Friday. Alice owns the rollout plan.")


@pytest.fixture
def image(png_blob):
    return normalize_image("Chart", png_blob, alt_text="Bar chart of quarterly revenue")


def probed(probed_at: float | None = None, **flags) -> ProbedCapabilities:
    """Capabilities as a probe would report them, with every given flag determined."""
    return ProbedCapabilities(probed_at=probed_at, determined=frozenset(flags), **flags)


class FakeProber:
    """Stands in for ``ProbeClient``; counts calls and can be held open with ``gate``."""

    def __init__(self, capabilities: ProbedCapabilities | None = None, *, gate: asyncio.Event | None = None):
        self.capabilities = capabilities if capabilities is not None else probed(supports_vision=False)
        self.gate = gate
        self.calls: list[tuple[str, str]] = []

    async def probe_model(self, provider: str, model: str) -> ModelProbeReport:
        self.calls.append((provider, model))
        if self.gate is not None:
            await self.gate.wait()
        text = ProbeResult(kind=ProbeKind.TEXT, attempts=[ProbeAttempt(INITIAL_VARIANT, ProbeOutcome.SUCCESS)])
        return ModelProbeReport(
            provider=provider,
            model=model,
            probed_at=self.capabilities.probed_at or 0.0,
            text=text,
            image=None,
            pdf=None,
            capabilities=self.capabilities,
        )


@pytest.fixture
def make_cache(tmp_path):
    """Build a cache on temp files; nothing reaches the network."""

    def _make(prober=None, **kwargs):
        kwargs.setdefault("flush_delay", 3600)
        kwargs.setdefault("can_probe", lambda provider: True)
        return CapabilityCache(
            JsonFileStore(tmp_path / "probed.json"),
            OverrideFile(tmp_path / "local.json"),
            prober=prober if prober is not None else FakeProber(),
            **kwargs,
        )

    return _make
