"""Context envelope builder.

Assembles and measures; never truncates. Synchronous and free of I/O, so a
capability lookup that is still being probed simply arrives here as the
conservative default.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, replace
from typing import Iterable, Sequence

from mosaic.context.quality import assess_quality
from mosaic.context.renderer import render_index
from mosaic.context.router import route_source
from mosaic.models.anchor import make_anchor
from mosaic.models.capabilities import ProbedCapabilities, conservative_default
from mosaic.models.envelope import (
    AttachmentManifest,
    ContextChunk,
    ContextEnvelope,
    ContextIndex,
    ContextIndexEntry,
    IndexPage,
    Strategy,
    TokenBudgetState,
    estimate_bytes_tokens,
    estimate_tokens,
)
from mosaic.models.source import (
    BinaryBlob,
    ChatlogSource,
    ImageSource,
    NoteSource,
    PdfSource,
    QualityHint,
    Source,
    WebpageSource,
)


@dataclass(frozen=True)
class BuildOptions:
    max_tokens: int | None = None
    include_attachments: bool = True


def measure_tokens(task: str, index: ContextIndex, chunks: Iterable[ContextChunk]) -> int:
    """Task + rendered index + chunk text. Attachments are tracked separately."""
    return estimate_tokens(task) + estimate_tokens(render_index(index)) + sum(c.token_count for c in chunks)


def image_dimensions(blob: BinaryBlob) -> tuple[int, int] | None:
    data = blob.data
    if data.startswith(b"\x89PNG\r\n\x1a\n") and len(data) >= 24:
        width, height = struct.unpack(">II", data[16:24])
        return width, height
    if data[:6] in (b"GIF87a", b"GIF89a") and len(data) >= 10:
        width, height = struct.unpack("<HH", data[6:10])
        return width, height
    return None


def _attachment(
    anchor: str, source_id: str, artifact_type: str, blob: BinaryBlob, page_number: int | None = None
) -> AttachmentManifest:
    return AttachmentManifest(
        anchor=anchor,
        source_id=source_id,
        artifact_type=artifact_type,
        mime_type=blob.mime_type,
        byte_size=blob.byte_size,
        token_estimate=estimate_bytes_tokens(blob.byte_size),
        page_number=page_number,
        dimensions=None if artifact_type == "raw_pdf" else image_dimensions(blob),
    )


class _SourceParts:
    def __init__(self) -> None:
        self.chunks: list[ContextChunk] = []
        self.attachments: list[AttachmentManifest] = []
        self.pages: tuple[IndexPage, ...] = ()


def _chunk(
    source: Source,
    content: str,
    method: str,
    quality: QualityHint | None,
    *,
    anchor: str | None = None,
    page_number: int | None = None,
) -> ContextChunk:
    return ContextChunk(
        anchor=anchor or source.source_id,
        source_id=source.source_id,
        source_type=source.kind,
        title=source.title,
        extraction_method=method,
        content=content,
        token_count=estimate_tokens(content),
        url=source.url,
        quality=quality,
        page_number=page_number,
    )


def _build_parts(source: Source, strategy: Strategy, include_attachments: bool) -> _SourceParts:
    parts = _SourceParts()

    if isinstance(source, WebpageSource):
        if source.markdown.strip():
            parts.chunks.append(_chunk(source, source.markdown, f"web:{source.extraction_type}", source.quality))
        if include_attachments and strategy is Strategy.TEXT_WITH_SCREENSHOT and source.screenshot is not None:
            parts.attachments.append(_attachment(source.source_id, source.source_id, "screenshot", source.screenshot))

    elif isinstance(source, PdfSource):
        attached: set[int] = set()
        if include_attachments and strategy is Strategy.NATIVE and source.pdf_bytes is not None:
            parts.attachments.append(_attachment(source.source_id, source.source_id, "raw_pdf", source.pdf_bytes))
            attached = {p.page_number for p in source.pages}
        elif include_attachments and strategy is Strategy.IMAGES:
            for page in source.pages:
                if page.image is not None:
                    anchor = make_anchor(source.source_id, page=page.page_number)
                    parts.attachments.append(
                        _attachment(anchor, source.source_id, "page_image", page.image, page.page_number)
                    )
                    attached.add(page.page_number)
        for page in source.pages:
            if page.text.strip():
                parts.chunks.append(
                    _chunk(
                        source,
                        page.text,
                        "pdf_text",
                        page.quality or assess_quality(page.text),
                        anchor=make_anchor(source.source_id, page=page.page_number),
                        page_number=page.page_number,
                    )
                )
        with_text = {c.page_number for c in parts.chunks}
        parts.pages = tuple(
            IndexPage(p.page_number, content_included=p.page_number in with_text, attached=p.page_number in attached)
            for p in source.pages
        )

    elif isinstance(source, ImageSource):
        if strategy is Strategy.TEXT_DESCRIPTION and source.alt_text:
            parts.chunks.append(_chunk(source, source.alt_text, "alt_text", assess_quality(source.alt_text)))
        if include_attachments and strategy is Strategy.IMAGE:
            parts.attachments.append(_attachment(source.source_id, source.source_id, "raw_image", source.image))

    elif isinstance(source, (NoteSource, ChatlogSource)):
        text = source.text
        if text.strip():
            method = "note" if isinstance(source, NoteSource) else "chat_log"
            parts.chunks.append(_chunk(source, text, method, assess_quality(text)))

    return parts


def build(
    sources: Sequence[Source],
    task: str,
    options: BuildOptions | None = None,
    *,
    capabilities: ProbedCapabilities | None = None,
) -> ContextEnvelope:
    """One index entry per source, chunks and attachments as routed, measured."""
    options = options or BuildOptions()
    capabilities = capabilities or conservative_default()

    entries: list[ContextIndexEntry] = []
    chunks: list[ContextChunk] = []
    attachments: list[AttachmentManifest] = []
    for source in sources:
        strategy = route_source(source, capabilities)
        parts = _build_parts(source, strategy, options.include_attachments)
        entries.append(
            ContextIndexEntry(
                source_id=source.source_id,
                title=source.title,
                source_type=source.kind,
                strategy=strategy,
                url=source.url,
                content_included=bool(parts.chunks or parts.attachments),
                pages=parts.pages,
            )
        )
        for chunk in parts.chunks:
            chunks.append(replace(chunk, ordinal=len(chunks)))
        attachments.extend(parts.attachments)

    index = ContextIndex(tuple(entries))
    return ContextEnvelope(
        sources=tuple(sources),
        index=index,
        chunks=tuple(chunks),
        attachments=tuple(attachments),
        budget=TokenBudgetState(
            max_tokens=options.max_tokens,
            used_tokens=measure_tokens(task, index, chunks),
        ),
        task=task,
    )
