"""Tiny, pre-encoded payloads used to probe model input support."""

from __future__ import annotations

import base64

from mosaic.backends.base import MediaPayload, ProbeKind, ProbeVariant

# 56x56 solid red PNG, the smallest size some vision models accept.
TINY_PNG_BASE64 = (
    "iVBORw0KGgoAAAANSUhEUgAAADgAAAA4CAIAAAAn5KxJAAAAQElEQVR42u3OQQkAAAgAsetfWh+mEAYLsKZeSFRUVFRUVFRUVFRUVFRU"
    "VFRUVFRUVFRUVFRUVFRUVFRUVFRU9CwicjR1t9nCvQAAAABJRU5ErkJggg=="
)
TINY_PNG_MIME_TYPE = "image/png"

# One blank 72x72pt page.
TINY_PDF = b"""%PDF-1.4
1 0 obj<</Type/Catalog/Pages 2 0 R>>endobj
2 0 obj<</Type/Pages/Kids[3 0 R]/Count 1>>endobj
3 0 obj<</Type/Page/MediaBox[0 0 72 72]/Parent 2 0 R/Resources<<>>>>endobj
xref
0 4
0000000000 65535 f
0000000009 00000 n
0000000052 00000 n
0000000101 00000 n
trailer<</Size 4/Root 1 0 R>>
startxref
175
%%EOF"""
TINY_PDF_BASE64 = base64.b64encode(TINY_PDF).decode("ascii")
TINY_PDF_MIME_TYPE = "application/pdf"

PROBE_PROMPTS = {
    ProbeKind.TEXT: 'Respond with just the word "OK" to confirm you received this message.',
    ProbeKind.IMAGE: "What color is this image? Reply with just the color name.",
    ProbeKind.PDF: 'This is a test PDF. Reply with just "OK" to confirm you can see it.',
}

TINY_PNG = MediaPayload(TINY_PNG_BASE64, TINY_PNG_MIME_TYPE)
TINY_PDF_PAYLOAD = MediaPayload(TINY_PDF_BASE64, TINY_PDF_MIME_TYPE)


def media_for(kind: ProbeKind, variant: ProbeVariant) -> MediaPayload | None:
    """Fixture to attach for a probe; a rasterized PDF page is the tiny PNG."""
    if kind is ProbeKind.IMAGE:
        return TINY_PNG
    if kind is ProbeKind.PDF:
        return TINY_PNG if variant.as_page_images else TINY_PDF_PAYLOAD
    return None


def fixture_sizes() -> dict[str, int]:
    return {
        "png_bytes": len(base64.b64decode(TINY_PNG_BASE64)),
        "pdf_bytes": len(TINY_PDF),
    }
