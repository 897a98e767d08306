"""Probe attempt and result records."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from mosaic.backends.base import ProbeKind, ProbeVariant
from mosaic.models.capabilities import CompletionShape, MessageShape, ProbedCapabilities


class ProbeOutcome(str, Enum):
    SUCCESS = "success"
    # Rejected with a recognized capability-mismatch error.
    CLASSIFIED_FAILURE = "classified_failure"
    # Transport errors, timeouts, auth, rate limits and unrecognized errors.
    INCONCLUSIVE = "inconclusive"


class Signature(str, Enum):
    """Recognized capability-mismatch error families."""

    VISION_UNSUPPORTED = "vision_unsupported"
    PDF_UNSUPPORTED = "pdf_unsupported"
    BASE64_REQUIRED = "base64_required"
    URL_REQUIRED = "url_required"
    IMAGES_FIRST_REQUIRED = "images_first_required"
    CONTENT_MUST_BE_STRING = "content_must_be_string"
    INVALID_CONTENT_TYPE = "invalid_content_type"


@dataclass
class ProbeAttempt:
    """One HTTP exchange."""

    variant: ProbeVariant
    outcome: ProbeOutcome
    http_status: int | None = None
    signature: Signature | None = None
    error_code: str | None = None
    error_message: str | None = None
    response_excerpt: str = ""
    latency: float = 0.0

    @property
    def success(self) -> bool:
        return self.outcome is ProbeOutcome.SUCCESS


@dataclass
class ProbeResult:
    """All attempts made for one probe kind, in order."""

    kind: ProbeKind
    attempts: list[ProbeAttempt] = field(default_factory=list)
    message_shape: MessageShape | None = None
    completion_shape: CompletionShape | None = None
    skipped: bool = False

    @property
    def final(self) -> ProbeAttempt | None:
        return self.attempts[-1] if self.attempts else None

    @property
    def outcome(self) -> ProbeOutcome:
        final = self.final
        return final.outcome if final else ProbeOutcome.INCONCLUSIVE

    @property
    def success(self) -> bool:
        return self.outcome is ProbeOutcome.SUCCESS

    @property
    def variant(self) -> ProbeVariant | None:
        return self.final.variant if self.final else None

    @property
    def error_code(self) -> str | None:
        return self.final.error_code if self.final else None

    @property
    def error_message(self) -> str | None:
        return self.final.error_message if self.final else None

    @property
    def response_excerpt(self) -> str:
        return self.final.response_excerpt if self.final else ""

    @property
    def latency(self) -> float:
        return sum(a.latency for a in self.attempts)

    @property
    def signatures(self) -> list[Signature]:
        return [a.signature for a in self.attempts if a.signature is not None]

    @classmethod
    def skipped_result(cls, kind: ProbeKind) -> ProbeResult:
        return cls(kind=kind, skipped=True)


@dataclass
class ModelProbeReport:
    provider: str
    model: str
    probed_at: float
    text: ProbeResult
    image: ProbeResult | None
    pdf: ProbeResult | None
    capabilities: ProbedCapabilities
    error: str | None = None

    @property
    def total_latency(self) -> float:
        return sum(r.latency for r in (self.text, self.image, self.pdf) if r is not None)

    @property
    def conclusive(self) -> bool:
        return bool(self.capabilities.determined)
