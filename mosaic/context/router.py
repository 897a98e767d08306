"""Modality router: pick how each source reaches the model.

A pure decision table over capability flags. Only positive evidence (a
capability flag that is on) upgrades a route beyond text.
"""

from __future__ import annotations

from mosaic.models.capabilities import ProbedCapabilities
from mosaic.models.envelope import Strategy
from mosaic.models.source import ImageSource, PdfSource, Source, SourceKind, WebpageSource


def route(
    kind: SourceKind,
    capabilities: ProbedCapabilities,
    *,
    has_alt_text: bool = False,
    has_screenshot: bool = True,
) -> Strategy:
    if kind is SourceKind.PDF:
        if capabilities.supports_pdf_native:
            return Strategy.NATIVE
        if capabilities.supports_vision:
            return Strategy.IMAGES
        return Strategy.TEXT
    if kind is SourceKind.IMAGE:
        if capabilities.supports_vision:
            return Strategy.IMAGE
        if has_alt_text:
            return Strategy.TEXT_DESCRIPTION
        return Strategy.OMIT
    if kind is SourceKind.WEBPAGE:
        if capabilities.supports_vision and has_screenshot:
            return Strategy.TEXT_WITH_SCREENSHOT
        return Strategy.TEXT
    return Strategy.TEXT


def route_source(source: Source, capabilities: ProbedCapabilities) -> Strategy:
    """``route`` with the hints filled in from the source itself."""
    if isinstance(source, ImageSource):
        return route(source.kind, capabilities, has_alt_text=bool(source.alt_text))
    if isinstance(source, WebpageSource):
        return route(source.kind, capabilities, has_screenshot=source.screenshot is not None)
    if isinstance(source, PdfSource):
        strategy = route(source.kind, capabilities)
        # Native needs the document bytes and images need rendered pages.
        if strategy is Strategy.NATIVE and source.pdf_bytes is None:
            strategy = route(source.kind, capabilities.merged({"supports_pdf_native": False}))
        if strategy is Strategy.IMAGES and not any(p.image is not None for p in source.pages):
            strategy = Strategy.TEXT
        return strategy
    return route(source.kind, capabilities)
