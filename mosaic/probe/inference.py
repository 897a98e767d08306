"""Turn probe results into capability flags.

Pure functions, no I/O. Success upgrades a flag, a classified failure writes
the specific negative flag, and an inconclusive outcome leaves the flag out of
``determined`` so the cache keeps whatever lower layer already says.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from mosaic.models.capabilities import (
    PROBE_VERSION,
    MessageShape,
    ProbedCapabilities,
    conservative_default,
)
from mosaic.models.probe import ModelProbeReport, ProbeOutcome, ProbeResult, Signature

NEGATIVE_VISION_SIGNATURES = frozenset(
    {Signature.VISION_UNSUPPORTED, Signature.CONTENT_MUST_BE_STRING}
)


def infer(
    text: ProbeResult,
    image: ProbeResult | None = None,
    pdf: ProbeResult | None = None,
    *,
    baseline: ProbedCapabilities | None = None,
    probed_at: float | None = None,
) -> ProbedCapabilities:
    base = replace(
        baseline or conservative_default(),
        probed_at=probed_at,
        probe_version=PROBE_VERSION,
        determined=frozenset(),
        quirks=(),
    )
    if not text.success:
        # Without a working text round-trip nothing else can be trusted.
        return base

    values: dict[str, Any] = {}
    quirks: list[str] = []
    if text.message_shape is not None:
        values["message_shape"] = text.message_shape
    if text.completion_shape is not None:
        values["completion_shape"] = text.completion_shape

    if image is not None and not image.skipped:
        values.update(_image_flags(image))
        quirks.extend(_quirks("image", image))
    if pdf is not None and not pdf.skipped:
        values.update(_pdf_flags(pdf))
        quirks.extend(_quirks("pdf", pdf))

    # Page images are plain images: vision evidence settles them either way.
    if "supports_vision" in values:
        if values["supports_vision"]:
            values["supports_pdf_as_images"] = True
        else:
            values.setdefault("supports_pdf_as_images", False)

    return replace(base, **values, determined=frozenset(values), quirks=tuple(quirks))


def _image_flags(result: ProbeResult) -> dict[str, Any]:
    flags: dict[str, Any] = {}
    final = result.final
    if final is None:
        return flags

    if final.outcome is ProbeOutcome.SUCCESS:
        flags["supports_vision"] = True
        flags["requires_images_first"] = final.variant.images_first
        failed = [a for a in result.attempts[:-1] if a.outcome is ProbeOutcome.CLASSIFIED_FAILURE]
        if not final.variant.use_base64:
            flags["requires_base64_images"] = False
        elif Signature.BASE64_REQUIRED in result.signatures or any(not a.variant.use_base64 for a in failed):
            flags["requires_base64_images"] = True
    elif final.outcome is ProbeOutcome.CLASSIFIED_FAILURE:
        flags["supports_vision"] = False
        if final.signature is Signature.CONTENT_MUST_BE_STRING:
            flags["message_shape"] = MessageShape.OPENAI_STRING
    return flags


def _pdf_flags(result: ProbeResult) -> dict[str, Any]:
    flags: dict[str, Any] = {}
    native = [a for a in result.attempts if not a.variant.as_page_images]
    paged = [a for a in result.attempts if a.variant.as_page_images]

    if native:
        last = native[-1]
        if last.outcome is ProbeOutcome.SUCCESS:
            flags["supports_pdf_native"] = True
        elif last.outcome is ProbeOutcome.CLASSIFIED_FAILURE:
            flags["supports_pdf_native"] = False
            if last.signature in NEGATIVE_VISION_SIGNATURES:
                flags["supports_pdf_as_images"] = False
    if paged:
        last = paged[-1]
        if last.outcome is ProbeOutcome.SUCCESS:
            flags["supports_pdf_as_images"] = True
        elif last.outcome is ProbeOutcome.CLASSIFIED_FAILURE:
            flags["supports_pdf_as_images"] = False
    return flags


def _quirks(prefix: str, result: ProbeResult) -> list[str]:
    seen: list[str] = []
    for signature in result.signatures:
        tag = f"{prefix}:{signature.value}"
        if tag not in seen:
            seen.append(tag)
    return seen


# --- Summaries ---


@dataclass
class ProbeSummary:
    success: bool
    vision: str  # yes | partial | no | unknown
    pdf: str  # native | images | no | unknown
    issues: list[str] = field(default_factory=list)


QUIRK_FLAGS = ("requires_base64_images", "requires_images_first")


def summarize_probe_result(report: ModelProbeReport) -> ProbeSummary:
    caps = report.capabilities
    issues: list[str] = []
    if not report.text.success:
        issues.append(f"Text probe failed: {report.text.error_message or report.error or 'unknown error'}")
    for label, result in (("Image", report.image), ("PDF", report.pdf)):
        if result is not None and not result.skipped and not result.success and result.error_message:
            issues.append(f"{label}: {result.error_message}")

    if "supports_vision" not in caps.determined:
        vision = "unknown"
    elif not caps.supports_vision:
        vision = "no"
    elif any(getattr(caps, name) for name in QUIRK_FLAGS if name in caps.determined):
        vision = "partial"
    else:
        vision = "yes"

    if caps.supports_pdf_native and "supports_pdf_native" in caps.determined:
        pdf = "native"
    elif caps.supports_pdf_as_images and "supports_pdf_as_images" in caps.determined:
        pdf = "images"
    elif {"supports_pdf_native", "supports_pdf_as_images"} & caps.determined:
        pdf = "no"
    else:
        pdf = "unknown"

    return ProbeSummary(success=report.text.success, vision=vision, pdf=pdf, issues=issues)
