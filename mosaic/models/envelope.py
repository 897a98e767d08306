"""Context envelope: index, chunks, attachments and budget state."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum

from mosaic.models.source import QualityHint, Source, SourceKind


def estimate_tokens(text: str) -> int:
    """Reference heuristic: one token per four UTF-8 bytes, rounded up."""
    return math.ceil(len(text.encode("utf-8")) / 4)


def estimate_bytes_tokens(byte_size: int) -> int:
    return math.ceil(byte_size / 4)


class Strategy(str, Enum):
    """How a piece of content is handed to the model."""

    NATIVE = "native"                        # PDF sent as a document
    IMAGES = "images"                        # PDF pages sent as images
    TEXT = "text"                            # extracted text only
    IMAGE = "image"                          # image sent inline
    TEXT_DESCRIPTION = "text_description"    # alt text / OCR text instead of the image
    OMIT = "omit"
    TEXT_WITH_SCREENSHOT = "text_with_screenshot"


class CutAction(str, Enum):
    REMOVED = "removed"
    SUMMARIZED = "summarized"
    PAGE_OMITTED = "page_omitted"
    TRUNCATED = "truncated"
    ATTACHMENT_REMOVED = "attachment_removed"


@dataclass(frozen=True)
class IndexPage:
    page_number: int
    content_included: bool = True
    attached: bool = False


@dataclass(frozen=True)
class ContextIndexEntry:
    """One line of the context index. Survives every degrade stage."""

    source_id: str
    title: str
    source_type: SourceKind
    strategy: Strategy
    url: str | None = None
    content_included: bool = True
    summary: str | None = None
    pages: tuple[IndexPage, ...] = ()

    @property
    def pages_attached(self) -> list[int]:
        return [p.page_number for p in self.pages if p.attached]


@dataclass(frozen=True)
class ContextIndex:
    entries: tuple[ContextIndexEntry, ...] = ()

    def get(self, source_id: str) -> ContextIndexEntry | None:
        for entry in self.entries:
            if entry.source_id == source_id:
                return entry
        return None


@dataclass(frozen=True)
class ContextChunk:
    anchor: str
    source_id: str
    source_type: SourceKind
    title: str
    extraction_method: str
    content: str
    token_count: int
    url: str | None = None
    quality: QualityHint | None = None
    page_number: int | None = None
    ordinal: int = 0
    relevance_score: float | None = None
    truncated: bool = False
    summarized: bool = False


@dataclass(frozen=True)
class AttachmentManifest:
    anchor: str
    source_id: str
    artifact_type: str  # screenshot | raw_image | raw_pdf | page_image
    mime_type: str
    byte_size: int
    token_estimate: int
    included: bool = True
    page_number: int | None = None
    dimensions: tuple[int, int] | None = None


@dataclass(frozen=True)
class BudgetCut:
    """Ledger line: what was cut, where and why."""

    anchor: str
    stage: int
    action: CutAction
    original_tokens: int
    reason: str


@dataclass(frozen=True)
class TokenBudgetState:
    max_tokens: int | None = None
    used_tokens: int = 0
    stage: int = 0
    cuts: tuple[BudgetCut, ...] = ()


@dataclass(frozen=True)
class ContextEnvelope:
    sources: tuple[Source, ...]
    index: ContextIndex
    chunks: tuple[ContextChunk, ...]
    attachments: tuple[AttachmentManifest, ...]
    budget: TokenBudgetState
    task: str
    version: str = "1.0"
    created_at: float = field(default_factory=time.time, compare=False)

    def source(self, source_id: str) -> Source | None:
        for s in self.sources:
            if s.source_id == source_id:
                return s
        return None

    @property
    def included_attachments(self) -> list[AttachmentManifest]:
        return [a for a in self.attachments if a.included]
