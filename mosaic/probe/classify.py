"""Classify probe failures into capability-mismatch signatures.

Only a known signature counts as evidence about a model. Anything else, from
timeouts to an unrecognized 400, is inconclusive and must never be written
down as a negative capability.
"""

from __future__ import annotations

import json
import re
from typing import Any

from mosaic.backends.base import ParsedProbeResponse
from mosaic.models.probe import ProbeOutcome, Signature

# Only client-side validation errors carry capability information.
CLASSIFIABLE_STATUSES = frozenset({400, 413, 415, 422})

# Checked in order; the first match wins.
SIGNATURE_PATTERNS: list[tuple[Signature, re.Pattern[str]]] = [
    (
        Signature.IMAGES_FIRST_REQUIRED,
        re.compile(
            r"images?\s+(?:must|should|need to|has to|have to)\s+"
            r"(?:precede|come before|be placed before|be before|appear before|be first)"
            r"|images?\s+first"
        ),
    ),
    (Signature.BASE64_REQUIRED, re.compile(r"base64.{0,40}required|must be base64|only base64|requires? base64")),
    (
        Signature.URL_REQUIRED,
        re.compile(r"image.{0,20}url.{0,20}required|must be a (?:valid )?(?:http|https|image )?url|only https? urls"),
    ),
    (
        Signature.PDF_UNSUPPORTED,
        re.compile(
            r"not\s*support\w*\s+(?:for\s+)?(?:pdfs?|documents?|file inputs?|files?)\b"
            r"|(?:pdf|document|file)s?\s+(?:inputs?\s+)?(?:is\s+|are\s+)?(?:not supported|unsupported)"
        ),
    ),
    (
        Signature.VISION_UNSUPPORTED,
        re.compile(
            r"not\s*support\w*\s+(?:for\s+)?(?:vision|images?|image inputs?|multimodal|image_url)"
            r"|(?:vision|image inputs?|multimodal|image_url)\s+(?:is\s+|are\s+)?"
            r"(?:not supported|unsupported|not enabled|not available)"
            r"|(?:cannot|can't|does not|doesn't)\s+(?:process|accept|read|see)\s+images?"
        ),
    ),
    (Signature.CONTENT_MUST_BE_STRING, re.compile(r"content.{0,20}must\s+be\s+(?:a\s+)?string")),
    (
        Signature.INVALID_CONTENT_TYPE,
        re.compile(
            r"invalid.{0,30}content.{0,10}type|invalid.{0,30}media.{0,10}type"
            r"|unsupported.{0,20}(?:content|media).{0,10}type|unsupported image|invalid image"
            r"|invalid.{0,20}message.{0,10}format|unknown.{0,10}field|unexpected.{0,10}field"
        ),
    ),
]


def error_text(parsed: ParsedProbeResponse) -> str:
    """Lower-cased text searched for signatures."""
    parts = [parsed.error_code or "", parsed.error_message or ""]
    if parsed.raw is not None:
        parts.append(parsed.raw if isinstance(parsed.raw, str) else _dump(parsed.raw))
    return " ".join(parts).lower()


def _dump(raw: Any) -> str:
    try:
        return json.dumps(raw)
    except (TypeError, ValueError):
        return str(raw)


def match_signature(text: str) -> Signature | None:
    lowered = text.lower()
    for signature, pattern in SIGNATURE_PATTERNS:
        if pattern.search(lowered):
            return signature
    return None


def classify(status: int | None, parsed: ParsedProbeResponse | None) -> tuple[ProbeOutcome, Signature | None]:
    """Map an HTTP status plus parsed body to an outcome and optional signature.

    ``status`` is None when the request never completed (timeout, connection
    error).
    """
    if status is None or parsed is None:
        return ProbeOutcome.INCONCLUSIVE, None
    if 200 <= status < 300:
        if parsed.ok and not parsed.malformed:
            return ProbeOutcome.SUCCESS, None
        return ProbeOutcome.INCONCLUSIVE, None
    if status not in CLASSIFIABLE_STATUSES:
        return ProbeOutcome.INCONCLUSIVE, None
    signature = match_signature(error_text(parsed))
    if signature is None:
        return ProbeOutcome.INCONCLUSIVE, None
    return ProbeOutcome.CLASSIFIED_FAILURE, signature
