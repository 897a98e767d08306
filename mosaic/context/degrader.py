"""Token budget degrader.

Stages run in strict order and stop as soon as the envelope fits:

1. remove the lowest-ranked chunks (index keeps their anchors)
2. replace low-ranked chunks with an extractive summary
3. reduce PDFs to their top-K pages
4. truncate oversized chunks at a paragraph/sentence/word boundary
5. collapse to index + task

Every cut lands in ``budget.cuts``. An envelope that already fits comes back
unchanged, which makes the ladder idempotent.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from functools import cmp_to_key
from typing import Callable

from mosaic.config import settings
from mosaic.context.builder import measure_tokens
from mosaic.errors import BudgetOverflowError
from mosaic.models.envelope import (
    AttachmentManifest,
    BudgetCut,
    ContextChunk,
    ContextEnvelope,
    ContextIndex,
    ContextIndexEntry,
    CutAction,
    TokenBudgetState,
    estimate_tokens,
)
from mosaic.models.source import SourceKind

logger = logging.getLogger(__name__)

Comparator = Callable[[ContextChunk, ContextChunk], int]

SUMMARY_MAX_CHARS = 300
SUMMARY_MAX_SENTENCES = 3
INDEX_SUMMARY_MAX_CHARS = 120
TRUNCATION_MARKER = "\n... [truncated]"
MIN_TRUNCATED_TOKENS = 16

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


def by_input_order(a: ContextChunk, b: ContextChunk) -> int:
    """Earlier chunks rank higher."""
    return (a.ordinal > b.ordinal) - (a.ordinal < b.ordinal)


def by_relevance_score(a: ContextChunk, b: ContextChunk) -> int:
    """Higher ``relevance_score`` ranks higher; unscored chunks last, ties by order."""
    sa = a.relevance_score if a.relevance_score is not None else float("-inf")
    sb = b.relevance_score if b.relevance_score is not None else float("-inf")
    if sa != sb:
        return -1 if sa > sb else 1
    return by_input_order(a, b)


def extractive_summary(text: str, anchor: str, max_chars: int = SUMMARY_MAX_CHARS) -> str:
    """First two or three sentences, capped, with a pointer to the full content."""
    sentences = [s.strip() for s in _SENTENCE_END.split(" ".join(text.split())) if s.strip()]
    picked: list[str] = []
    for sentence in sentences[:SUMMARY_MAX_SENTENCES]:
        candidate = " ".join(picked + [sentence])
        if picked and len(candidate) > max_chars:
            break
        picked.append(sentence)
    summary = " ".join(picked)
    if len(summary) > max_chars:
        summary = summary[:max_chars].rsplit(" ", 1)[0].rstrip(",;:") + "..."
    return summary + summary_marker(anchor)


def summary_marker(anchor: str) -> str:
    return f" [extractive summary, see {anchor} for full content]"


def truncate_text(text: str, max_tokens: int) -> str:
    """Cut to roughly ``max_tokens`` at the best natural boundary, with a marker."""
    budget_bytes = max(max_tokens, MIN_TRUNCATED_TOKENS) * 4 - len(TRUNCATION_MARKER.encode("utf-8"))
    encoded = text.encode("utf-8")
    if len(encoded) <= budget_bytes:
        return text
    head = encoded[: max(budget_bytes, 0)].decode("utf-8", errors="ignore")
    floor = len(head) // 2
    for boundary in ("\n\n", ". ", "! ", "? ", "\n", " "):
        cut = head.rfind(boundary)
        if cut >= floor:
            end = cut + (1 if boundary in (". ", "! ", "? ") else 0)
            return head[:end].rstrip() + TRUNCATION_MARKER
    return head.rstrip() + TRUNCATION_MARKER


def index_summary(text: str) -> str | None:
    flat = " ".join(text.split())
    if not flat:
        return None
    first = _SENTENCE_END.split(flat, 1)[0]
    if len(first) > INDEX_SUMMARY_MAX_CHARS:
        first = first[:INDEX_SUMMARY_MAX_CHARS].rsplit(" ", 1)[0] + "..."
    return first


class _Ladder:
    """Mutable working copy of an envelope while stages run."""

    def __init__(
        self,
        envelope: ContextEnvelope,
        max_tokens: int,
        comparator: Comparator,
        min_keep: int,
        top_k_pages: int,
    ) -> None:
        self.envelope = envelope
        self.max_tokens = max_tokens
        self.comparator = comparator
        self.min_keep = min_keep
        self.top_k_pages = top_k_pages
        self.entries: list[ContextIndexEntry] = list(envelope.index.entries)
        self.chunks: list[ContextChunk] = list(envelope.chunks)
        self.attachments: list[AttachmentManifest] = list(envelope.attachments)
        self.cuts: list[BudgetCut] = list(envelope.budget.cuts)
        self.stage = envelope.budget.stage

    # -- bookkeeping --

    @property
    def index(self) -> ContextIndex:
        return ContextIndex(tuple(self.entries))

    def used(self) -> int:
        return measure_tokens(self.envelope.task, self.index, self.chunks)

    def fits(self) -> bool:
        return self.used() <= self.max_tokens

    def cut(self, anchor: str, action: CutAction, tokens: int, reason: str) -> None:
        self.cuts.append(BudgetCut(anchor, self.stage, action, tokens, reason))

    def ranked_low_first(self) -> list[ContextChunk]:
        return list(reversed(sorted(self.chunks, key=cmp_to_key(self.comparator))))

    def _update_entry(self, source_id: str, **changes) -> None:
        for i, entry in enumerate(self.entries):
            if entry.source_id == source_id:
                self.entries[i] = replace(entry, **changes)

    def _set_page(self, source_id: str, page_number: int, **changes) -> None:
        for i, entry in enumerate(self.entries):
            if entry.source_id != source_id:
                continue
            pages = tuple(replace(p, **changes) if p.page_number == page_number else p for p in entry.pages)
            self.entries[i] = replace(entry, pages=pages)

    def _refresh_inclusion(self, source_id: str) -> None:
        has_content = any(c.source_id == source_id for c in self.chunks) or any(
            a.source_id == source_id and a.included for a in self.attachments
        )
        self._update_entry(source_id, content_included=has_content)

    def remove_chunk(self, chunk: ContextChunk, action: CutAction, reason: str) -> None:
        self.chunks = [c for c in self.chunks if c.anchor != chunk.anchor]
        self.cut(chunk.anchor, action, chunk.token_count, reason)
        if chunk.page_number is not None:
            self._set_page(chunk.source_id, chunk.page_number, content_included=False)
        self._refresh_inclusion(chunk.source_id)

    def drop_attachment(self, attachment: AttachmentManifest, action: CutAction, reason: str) -> None:
        self.attachments = [replace(a, included=False) if a is attachment else a for a in self.attachments]
        self.cut(attachment.anchor, action, attachment.token_estimate, reason)
        if attachment.page_number is not None:
            self._set_page(attachment.source_id, attachment.page_number, attached=False)
        elif attachment.artifact_type == "raw_pdf":
            self.entries = [
                replace(e, pages=tuple(replace(p, attached=False) for p in e.pages))
                if e.source_id == attachment.source_id
                else e
                for e in self.entries
            ]
        self._refresh_inclusion(attachment.source_id)

    def replace_chunk(self, old: ContextChunk, new: ContextChunk) -> None:
        self.chunks = [new if c.anchor == old.anchor else c for c in self.chunks]

    # -- stages --

    def stage_remove_low_ranked(self) -> None:
        for chunk in self.ranked_low_first():
            if self.fits() or len(self.chunks) <= self.min_keep:
                return
            self.remove_chunk(chunk, CutAction.REMOVED, "lowest-ranked chunk removed")

    def stage_summarize(self) -> None:
        for chunk in self.ranked_low_first():
            if self.fits():
                return
            if chunk.summarized:
                continue
            summary = extractive_summary(chunk.content, chunk.anchor)
            tokens = estimate_tokens(summary)
            if tokens >= chunk.token_count:
                continue
            self.replace_chunk(chunk, replace(chunk, content=summary, token_count=tokens, summarized=True))
            self.cut(chunk.anchor, CutAction.SUMMARIZED, chunk.token_count, "replaced by extractive summary")

    def stage_top_pages(self) -> None:
        for entry in list(self.entries):
            if self.fits():
                return
            if entry.source_type is not SourceKind.PDF:
                continue
            page_chunks = [c for c in self.chunks if c.source_id == entry.source_id and c.page_number is not None]
            keep = {c.page_number for c in sorted(page_chunks, key=cmp_to_key(self.comparator))[: self.top_k_pages]}
            page_attachments = [
                a for a in self.attachments
                if a.source_id == entry.source_id and a.included and a.page_number is not None
            ]
            if not keep:
                keep = {a.page_number for a in sorted(page_attachments, key=lambda a: a.page_number)[: self.top_k_pages]}
            for chunk in page_chunks:
                if chunk.page_number not in keep:
                    self.remove_chunk(chunk, CutAction.PAGE_OMITTED, f"outside top {self.top_k_pages} pages")
            for attachment in page_attachments:
                if attachment.page_number not in keep:
                    self.drop_attachment(attachment, CutAction.PAGE_OMITTED, f"outside top {self.top_k_pages} pages")

    def stage_truncate(self) -> None:
        if not self.chunks:
            return
        base = measure_tokens(self.envelope.task, self.index, [])
        share = max((self.max_tokens - base) // len(self.chunks), 0)
        oversized = sorted(
            (c for c in self.chunks if c.token_count > share and not c.truncated),
            key=lambda c: (-c.token_count, c.ordinal),
        )
        for chunk in oversized:
            if self.fits():
                return
            if chunk.summarized:
                marker = summary_marker(chunk.anchor)
                body = chunk.content.removesuffix(marker)
                content = truncate_text(body, share - estimate_tokens(marker)) + marker
            else:
                content = truncate_text(chunk.content, share)
            tokens = estimate_tokens(content)
            if tokens >= chunk.token_count:
                continue
            self.replace_chunk(chunk, replace(chunk, content=content, token_count=tokens, truncated=True))
            self.cut(chunk.anchor, CutAction.TRUNCATED, chunk.token_count, f"truncated to about {share} tokens")

    def stage_collapse(self) -> None:
        for chunk in list(self.chunks):
            self.remove_chunk(chunk, CutAction.REMOVED, "collapsed to index and task")
        for attachment in [a for a in self.attachments if a.included]:
            self.drop_attachment(attachment, CutAction.ATTACHMENT_REMOVED, "collapsed to index and task")

        with_summaries = []
        for entry in self.entries:
            source = self.envelope.source(entry.source_id)
            summary = index_summary(source.text) if source is not None else None
            with_summaries.append(replace(entry, summary=summary))
        plain = list(self.entries)
        self.entries = with_summaries
        if not self.fits():
            self.entries = plain
        if not self.fits():
            raise BudgetOverflowError(self.max_tokens, self.used())

    def result(self) -> ContextEnvelope:
        return replace(
            self.envelope,
            index=self.index,
            chunks=tuple(self.chunks),
            attachments=tuple(self.attachments),
            budget=TokenBudgetState(
                max_tokens=self.max_tokens,
                used_tokens=self.used(),
                stage=max(self.stage, self.envelope.budget.stage),
                cuts=tuple(self.cuts),
            ),
        )


def degrade(
    envelope: ContextEnvelope,
    max_tokens: int,
    *,
    comparator: Comparator | None = None,
    min_keep: int | None = None,
    top_k_pages: int | None = None,
) -> ContextEnvelope:
    """Fit ``envelope`` into ``max_tokens``; raises BudgetOverflowError when even index + task do not fit."""
    ladder = _Ladder(
        envelope,
        max_tokens,
        comparator or by_input_order,
        settings.min_keep_chunks if min_keep is None else min_keep,
        settings.pdf_top_k_pages if top_k_pages is None else top_k_pages,
    )
    if ladder.fits():
        if envelope.budget.max_tokens == max_tokens:
            return envelope
        return replace(envelope, budget=replace(envelope.budget, max_tokens=max_tokens))

    stages = (
        ladder.stage_remove_low_ranked,
        ladder.stage_summarize,
        ladder.stage_top_pages,
        ladder.stage_truncate,
        ladder.stage_collapse,
    )
    for number, stage in enumerate(stages, start=1):
        ladder.stage = number
        stage()
        if ladder.fits():
            break

    result = ladder.result()
    logger.info(
        "Degraded envelope to stage %d: %d -> %d tokens (max %d, %d cuts)",
        result.budget.stage,
        envelope.budget.used_tokens,
        result.budget.used_tokens,
        max_tokens,
        len(result.budget.cuts) - len(envelope.budget.cuts),
    )
    return result
