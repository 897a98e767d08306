"""Source data model."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class SourceKind(Enum):
    WEBPAGE = "webpage"
    PDF = "pdf"
    IMAGE = "image"
    NOTE = "note"
    CHATLOG = "chatlog"


class QualityHint(Enum):
    GOOD = "good"
    MIXED = "mixed"
    LOW = "low"
    OCR_LIKE = "ocr_like"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BinaryBlob:
    """Raw bytes of an image, page render or document."""

    data: bytes
    mime_type: str

    @property
    def byte_size(self) -> int:
        return len(self.data)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.to_base64()}"


@dataclass(frozen=True)
class PdfPage:
    """One page of a PDF: extracted text and/or a rendered image."""

    page_number: int
    text: str = ""
    image: BinaryBlob | None = None
    quality: QualityHint | None = None


@dataclass(frozen=True)
class ChatMessage:
    index: int
    role: str
    content: str


@dataclass(frozen=True, kw_only=True)
class Source:
    """Canonical, hash-identified unit of extracted content.

    Sources are created once per extraction pass and never mutated; re-extracting
    unchanged bytes yields a new Source with the same ``source_id``.
    """

    source_id: str
    title: str
    url: str | None = None
    captured_at: datetime = field(default_factory=_utcnow)

    kind: SourceKind = field(init=False)

    @property
    def text(self) -> str:
        """Primary text content, used for summaries and quality checks."""
        return ""


@dataclass(frozen=True, kw_only=True)
class WebpageSource(Source):
    markdown: str
    screenshot: BinaryBlob | None = None
    extraction_type: str = "article"  # article | app
    quality: QualityHint = QualityHint.GOOD
    kind: SourceKind = field(default=SourceKind.WEBPAGE, init=False)

    @property
    def text(self) -> str:
        return self.markdown


@dataclass(frozen=True, kw_only=True)
class PdfSource(Source):
    pages: tuple[PdfPage, ...] = ()
    pdf_bytes: BinaryBlob | None = None
    kind: SourceKind = field(default=SourceKind.PDF, init=False)

    @property
    def text(self) -> str:
        return "\n\n".join(p.text for p in self.pages if p.text)

    def page(self, page_number: int) -> PdfPage | None:
        for p in self.pages:
            if p.page_number == page_number:
                return p
        return None


@dataclass(frozen=True, kw_only=True)
class ImageSource(Source):
    image: BinaryBlob
    alt_text: str | None = None
    kind: SourceKind = field(default=SourceKind.IMAGE, init=False)

    @property
    def text(self) -> str:
        return self.alt_text or ""


@dataclass(frozen=True, kw_only=True)
class NoteSource(Source):
    body: str
    kind: SourceKind = field(default=SourceKind.NOTE, init=False)

    @property
    def text(self) -> str:
        return self.body


@dataclass(frozen=True, kw_only=True)
class ChatlogSource(Source):
    messages: tuple[ChatMessage, ...] = ()
    model: str | None = None
    kind: SourceKind = field(default=SourceKind.CHATLOG, init=False)

    @property
    def text(self) -> str:
        return "\n\n".join(f"{m.role}: {m.content}" for m in self.messages)
