"""Render a ContextEnvelope into the text block handed to a model.

Output is a pure function of the envelope: no clock, no randomness.
"""

from __future__ import annotations

from typing import Any, Iterable

from mosaic.models.envelope import (
    AttachmentManifest,
    ContextChunk,
    ContextEnvelope,
    ContextIndex,
    ContextIndexEntry,
    IndexPage,
)
from mosaic.models.source import BinaryBlob, ImageSource, PdfSource, WebpageSource

INDEX_HEADER = "=== CONTEXT INDEX ==="
CONTENT_HEADER = "=== CONTENT ==="
ATTACHMENTS_HEADER = "=== ATTACHMENTS ==="
TASK_HEADER = "=== TASK ==="

CITATION_INSTRUCTION = (
    "Cite sources by anchor in square brackets, e.g. [src:1a2b3c4d] for a whole source "
    "or [src:1a2b3c4d#p=3] for a page."
)


def _ranges(numbers: Iterable[int]) -> str:
    """Compress page numbers: [1, 2, 3, 7] -> "1-3,7"."""
    ordered = sorted(numbers)
    if not ordered:
        return "none"
    spans: list[str] = []
    start = prev = ordered[0]
    for n in ordered[1:]:
        if n == prev + 1:
            prev = n
            continue
        spans.append(str(start) if start == prev else f"{start}-{prev}")
        start = prev = n
    spans.append(str(start) if start == prev else f"{start}-{prev}")
    return ",".join(spans)


def _pages_summary(pages: tuple[IndexPage, ...]) -> str:
    included = [p.page_number for p in pages if p.content_included]
    omitted = [p.page_number for p in pages if not p.content_included]
    attached = [p.page_number for p in pages if p.attached]
    parts = [f"{len(pages)} pages", f"text: {_ranges(included)}"]
    if omitted:
        parts.append(f"omitted: {_ranges(omitted)}")
    if attached:
        parts.append(f"attached: {_ranges(attached)}")
    return "; ".join(parts)


def render_index_entry(entry: ContextIndexEntry) -> str:
    fields = [f"[{entry.source_id}]", entry.source_type.value, f'"{entry.title}"']
    if entry.url:
        fields.append(entry.url)
    fields.append(f"strategy: {entry.strategy.value}")
    if entry.pages:
        fields.append(_pages_summary(entry.pages))
    if entry.content_included:
        fields.append("content: included")
    elif entry.summary:
        fields.append(f"summary: {entry.summary}")
    else:
        fields.append("content: not included")
    return " | ".join(fields)


def render_index(index: ContextIndex) -> str:
    return "\n".join(render_index_entry(e) for e in index.entries)


def _chunk_status(chunk: ContextChunk) -> str:
    if chunk.summarized:
        return "summarized"
    if chunk.truncated:
        return "truncated"
    return "full"


def render_chunk(chunk: ContextChunk) -> str:
    header = [
        f"anchor={chunk.anchor}",
        f"source_type={chunk.source_type.value}",
        f'title="{chunk.title}"',
    ]
    if chunk.url:
        header.append(f"url={chunk.url}")
    header.append(f"extraction={chunk.extraction_method}")
    if chunk.quality is not None:
        header.append(f"quality={chunk.quality.value}")
    header.append(f"status={_chunk_status(chunk)}")
    return f"[CHUNK {' '.join(header)}]\n{chunk.content}\n[/CHUNK]"


def render_attachment(attachment: AttachmentManifest) -> str:
    fields = [
        f"anchor={attachment.anchor}",
        f"kind={attachment.artifact_type}",
        f"mime={attachment.mime_type}",
    ]
    if attachment.dimensions is not None:
        fields.append(f"dimensions={attachment.dimensions[0]}x{attachment.dimensions[1]}")
    fields.append(f"size={attachment.byte_size} bytes")
    return f"[ATTACHMENT {' '.join(fields)}]"


def render(envelope: ContextEnvelope) -> str:
    sections = [INDEX_HEADER, render_index(envelope.index), "", CONTENT_HEADER]
    if envelope.chunks:
        sections.append("\n\n".join(render_chunk(c) for c in envelope.chunks))
    else:
        sections.append("(no content included)")
    sections.append("")

    included = envelope.included_attachments
    if included:
        sections.extend([ATTACHMENTS_HEADER, "\n".join(render_attachment(a) for a in included), ""])

    sections.extend([TASK_HEADER, envelope.task, "", CITATION_INSTRUCTION])
    return "\n".join(sections)


def get_attachment_data(envelope: ContextEnvelope, anchor: str) -> BinaryBlob | None:
    """Bytes behind an included attachment, or None."""
    attachment = next((a for a in envelope.included_attachments if a.anchor == anchor), None)
    if attachment is None:
        return None
    source = envelope.source(attachment.source_id)
    if isinstance(source, WebpageSource) and attachment.artifact_type == "screenshot":
        return source.screenshot
    if isinstance(source, ImageSource):
        return source.image
    if isinstance(source, PdfSource):
        if attachment.artifact_type == "raw_pdf":
            return source.pdf_bytes
        if attachment.page_number is not None:
            page = source.page(attachment.page_number)
            return page.image if page is not None else None
    return None


def envelope_stats(envelope: ContextEnvelope) -> dict[str, Any]:
    by_action: dict[str, int] = {}
    for cut in envelope.budget.cuts:
        by_action[cut.action.value] = by_action.get(cut.action.value, 0) + 1
    return {
        "sources": len(envelope.sources),
        "chunks": len(envelope.chunks),
        "attachments": len(envelope.included_attachments),
        "attachment_tokens": sum(a.token_estimate for a in envelope.included_attachments),
        "used_tokens": envelope.budget.used_tokens,
        "max_tokens": envelope.budget.max_tokens,
        "stage": envelope.budget.stage,
        "cuts": len(envelope.budget.cuts),
        "cuts_by_action": dict(sorted(by_action.items())),
    }
