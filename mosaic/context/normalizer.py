"""Source normalizer: wraps extracted content into hash-identified Sources.

No network access and no probing happens here. Malformed input raises
``NormalizationError``; ``normalize_many`` reports such items and keeps going.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Literal, Sequence

from pydantic import BaseModel, Field

from mosaic.context.quality import assess_quality
from mosaic.errors import NormalizationError
from mosaic.models.anchor import compute_source_id
from mosaic.models.source import (
    BinaryBlob,
    ChatlogSource,
    ChatMessage,
    ImageSource,
    NoteSource,
    PdfPage,
    PdfSource,
    Source,
    WebpageSource,
)

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:([^;,]+);base64,(.*)$", re.DOTALL)
_PAGE_MARKER_RE = re.compile(r"---\s*Page\s+(\d+)\s*---")
_USER_QUERY_RE = re.compile(
    r"User Query(?:\s*\(with context\))?:\s*(.*?)(?=Assistant Response:|$)", re.IGNORECASE | re.DOTALL
)
_ASSISTANT_RE = re.compile(r"Assistant Response:\s*(.*?)(?=Model:|Tokens|$)", re.IGNORECASE | re.DOTALL)


# --- Collaborator input ---


class PageImage(BaseModel):
    page_number: int
    data: str  # data URL or bare base64
    mime_type: str = "image/png"


class ExtractedContent(BaseModel):
    """Already-extracted content handed over by the extraction subsystems."""

    type: Literal["html", "pdf", "image", "text"]
    title: str
    url: str | None = None
    content: str = ""
    screenshot: str | None = None
    image_data: str | None = None
    image_mime_type: str | None = None
    pdf_data: str | None = None
    page_images: list[PageImage] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    captured_at: datetime | None = None


@dataclass
class NormalizationReport:
    sources: list[Source] = field(default_factory=list)
    errors: list[NormalizationError] = field(default_factory=list)


# --- Canonical bytes ---


def _canonical_pdf(pages: Sequence[PdfPage], pdf_bytes: BinaryBlob | None) -> bytes:
    parts: list[bytes] = []
    for page in pages:
        part = page.text.encode("utf-8")
        if page.image is not None:
            part += b"\x00" + hashlib.sha256(page.image.data).hexdigest().encode("ascii")
        parts.append(part)
    if not any(parts) and pdf_bytes is not None:
        parts.append(hashlib.sha256(pdf_bytes.data).hexdigest().encode("ascii"))
    return b"\x0c".join(parts)


def _canonical_chatlog(messages: Sequence[ChatMessage]) -> bytes:
    return "\n".join(f"{m.role}: {m.content}" for m in messages).encode("utf-8")


def _require_title(title: str, kind: str) -> str:
    if not title or not title.strip():
        raise NormalizationError(f"{kind} source has no title", title=title, kind=kind)
    return title.strip()


def _stamp(captured_at: datetime | None) -> dict[str, Any]:
    return {} if captured_at is None else {"captured_at": captured_at}


# --- Per-kind builders ---


def normalize_webpage(
    title: str,
    markdown: str,
    *,
    url: str | None = None,
    screenshot: BinaryBlob | None = None,
    extraction_type: str = "article",
    captured_at: datetime | None = None,
) -> WebpageSource:
    title = _require_title(title, "webpage")
    if not markdown.strip() and screenshot is None:
        raise NormalizationError("webpage has neither text nor screenshot", title=title, kind="webpage")
    canonical = markdown.encode("utf-8")
    if not markdown.strip():
        # Screenshot-only pages are identified by their pixels.
        canonical += b"\x00screenshot:" + hashlib.sha256(screenshot.data).hexdigest().encode("ascii")
    return WebpageSource(
        source_id=compute_source_id(canonical),
        title=title,
        url=url,
        markdown=markdown,
        screenshot=screenshot,
        extraction_type=extraction_type if extraction_type in ("article", "app") else "article",
        quality=assess_quality(markdown),
        **_stamp(captured_at),
    )


def normalize_pdf(
    title: str,
    pages: Iterable[PdfPage],
    *,
    url: str | None = None,
    pdf_bytes: BinaryBlob | None = None,
    captured_at: datetime | None = None,
) -> PdfSource:
    title = _require_title(title, "pdf")
    graded = tuple(
        PdfPage(
            page_number=p.page_number,
            text=p.text,
            image=p.image,
            quality=assess_quality(p.text) if p.text.strip() else None,
        )
        for p in sorted(pages, key=lambda p: p.page_number)
    )
    numbers = [p.page_number for p in graded]
    if len(set(numbers)) != len(numbers) or any(n < 1 for n in numbers):
        raise NormalizationError("pdf page numbers must be unique and 1-based", title=title, kind="pdf")
    canonical = _canonical_pdf(graded, pdf_bytes)
    if not canonical.strip(b"\x0c"):
        raise NormalizationError("pdf has no page text, page images or bytes", title=title, kind="pdf")
    return PdfSource(
        source_id=compute_source_id(canonical),
        title=title,
        url=url,
        pages=graded,
        pdf_bytes=pdf_bytes,
        **_stamp(captured_at),
    )


def normalize_image(
    title: str,
    image: BinaryBlob,
    *,
    alt_text: str | None = None,
    url: str | None = None,
    captured_at: datetime | None = None,
) -> ImageSource:
    title = _require_title(title, "image")
    if not image.data:
        raise NormalizationError("image has no bytes", title=title, kind="image")
    return ImageSource(
        source_id=compute_source_id(image.data),
        title=title,
        url=url,
        image=image,
        alt_text=alt_text.strip() if alt_text and alt_text.strip() else None,
        **_stamp(captured_at),
    )


def normalize_note(
    title: str, text: str, *, url: str | None = None, captured_at: datetime | None = None
) -> NoteSource:
    title = _require_title(title, "note")
    if not text.strip():
        raise NormalizationError("note is empty", title=title, kind="note")
    return NoteSource(
        source_id=compute_source_id(text.encode("utf-8")),
        title=title,
        url=url,
        body=text,
        **_stamp(captured_at),
    )


def normalize_chatlog(
    title: str,
    messages: Iterable[tuple[str, str] | ChatMessage],
    *,
    model: str | None = None,
    url: str | None = None,
    captured_at: datetime | None = None,
) -> ChatlogSource:
    title = _require_title(title, "chatlog")
    ordered: list[ChatMessage] = []
    for i, msg in enumerate(messages):
        if isinstance(msg, ChatMessage):
            role, content = msg.role, msg.content
        else:
            role, content = msg
        ordered.append(ChatMessage(index=i, role=role, content=content))
    if not ordered:
        raise NormalizationError("chat log has no messages", title=title, kind="chatlog")
    return ChatlogSource(
        source_id=compute_source_id(_canonical_chatlog(ordered)),
        title=title,
        url=url,
        messages=tuple(ordered),
        model=model,
        **_stamp(captured_at),
    )


# --- ExtractedContent dispatch ---


def decode_data_url(value: str, default_mime: str = "application/octet-stream") -> BinaryBlob:
    """Decode a ``data:<mime>;base64,...`` URL (or bare base64) into bytes."""
    match = _DATA_URL_RE.match(value.strip())
    mime, payload = (match.group(1), match.group(2)) if match else (default_mime, value)
    try:
        data = base64.b64decode("".join(payload.split()), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise NormalizationError(f"invalid base64 payload: {exc}") from exc
    return BinaryBlob(data=data, mime_type=mime)


def split_page_markers(text: str) -> list[tuple[int, str]]:
    """Split ``--- Page N ---`` delimited PDF text into (page_number, text) pairs."""
    parts = _PAGE_MARKER_RE.split(text)
    return [(int(parts[i]), parts[i + 1].strip()) for i in range(1, len(parts) - 1, 2)]


def is_chatlog(extracted: ExtractedContent) -> bool:
    meta = extracted.metadata
    if any(meta.get(k) for k in ("persistentId", "shortId", "slug")):
        return True
    return "User Query" in extracted.content and "Assistant Response" in extracted.content


def parse_chatlog_text(text: str) -> list[tuple[str, str]]:
    messages: list[tuple[str, str]] = []
    user = _USER_QUERY_RE.search(text)
    assistant = _ASSISTANT_RE.search(text)
    if user and user.group(1).strip():
        messages.append(("user", user.group(1).strip()))
    if assistant and assistant.group(1).strip():
        messages.append(("assistant", assistant.group(1).strip()))
    if not messages and text.strip():
        messages.append(("assistant", text.strip()))
    return messages


def normalize(extracted: ExtractedContent) -> Source:
    """Turn one collaborator record into a Source."""
    try:
        if extracted.type == "html":
            screenshot = decode_data_url(extracted.screenshot, "image/png") if extracted.screenshot else None
            return normalize_webpage(
                extracted.title,
                extracted.content,
                url=extracted.url,
                screenshot=screenshot,
                extraction_type=str(extracted.metadata.get("extractionType", "article")),
                captured_at=extracted.captured_at,
            )
        if extracted.type == "pdf":
            return normalize_pdf(
                extracted.title,
                _pdf_pages(extracted),
                url=extracted.url,
                pdf_bytes=decode_data_url(extracted.pdf_data, "application/pdf") if extracted.pdf_data else None,
                captured_at=extracted.captured_at,
            )
        if extracted.type == "image":
            if not extracted.image_data:
                raise NormalizationError("image record carries no image data")
            return normalize_image(
                extracted.title,
                decode_data_url(extracted.image_data, extracted.image_mime_type or "image/png"),
                alt_text=extracted.content or None,
                url=extracted.url,
                captured_at=extracted.captured_at,
            )
        if is_chatlog(extracted):
            return normalize_chatlog(
                extracted.title,
                parse_chatlog_text(extracted.content),
                model=extracted.metadata.get("model"),
                url=extracted.url,
                captured_at=extracted.captured_at,
            )
        return normalize_note(extracted.title, extracted.content, url=extracted.url, captured_at=extracted.captured_at)
    except NormalizationError as exc:
        exc.title = exc.title or extracted.title
        exc.kind = exc.kind or extracted.type
        raise


def _pdf_pages(extracted: ExtractedContent) -> list[PdfPage]:
    texts: dict[int, str] = {}
    split = split_page_markers(extracted.content)
    if split:
        for number, text in split:
            if number in texts:
                raise NormalizationError(f"page {number} appears more than once", title=extracted.title, kind="pdf")
            texts[number] = text
    elif extracted.content.strip():
        texts = {1: extracted.content}

    images = {
        pi.page_number: decode_data_url(pi.data, pi.mime_type) for pi in extracted.page_images
    }
    return [
        PdfPage(page_number=n, text=texts.get(n, ""), image=images.get(n))
        for n in sorted(set(texts) | set(images))
    ]


def normalize_many(items: Iterable[ExtractedContent]) -> NormalizationReport:
    """Normalize a batch, skipping (and reporting) malformed items."""
    report = NormalizationReport()
    for item in items:
        try:
            report.sources.append(normalize(item))
        except NormalizationError as exc:
            logger.warning("Skipping source %r (%s): %s", exc.title, exc.kind, exc)
            report.errors.append(exc)
    return report
