"""Gemini adapter: native generateContent API."""

from __future__ import annotations

from typing import Any

from mosaic.backends.base import (
    PROBE_MAX_OUTPUT_TOKENS,
    MediaPayload,
    ParsedProbeResponse,
    ProbeKind,
    ProbeRequest,
    ProbeVariant,
    excerpt,
    order_parts,
)
from mosaic.models.capabilities import CompletionShape, MessageShape

GEMINI_API_BASE = "https://generativelanguage.googleapis.com"


class GeminiStyleAdapter:
    """Probe adapter sending ``inline_data`` / ``file_data`` parts."""

    message_shape = MessageShape.GEMINI_PARTS
    completion_shape = CompletionShape.GEMINI_STREAMING

    def __init__(self, provider: str = "gemini", api_base: str = GEMINI_API_BASE) -> None:
        self.provider = provider
        self.api_base = api_base

    def endpoint_url(self, model: str, endpoint: str | None) -> str:
        if endpoint and ":generateContent" in endpoint:
            return endpoint
        base = (endpoint or self.api_base).rstrip("/")
        if not base.endswith("/v1beta"):
            base += "/v1beta"
        return f"{base}/models/{model}:generateContent"

    def build_probe_request(
        self,
        model: str,
        kind: ProbeKind,
        prompt: str,
        media: MediaPayload | None,
        variant: ProbeVariant,
        *,
        api_key: str | None = None,
        endpoint: str | None = None,
    ) -> ProbeRequest:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["x-goog-api-key"] = api_key

        text_part = {"text": prompt}
        media_part = None if kind is ProbeKind.TEXT or media is None else self._media_part(media, variant)
        return ProbeRequest(
            url=self.endpoint_url(model, endpoint),
            headers=headers,
            json={
                "contents": [{"role": "user", "parts": order_parts(text_part, media_part, variant.images_first)}],
                "generationConfig": {"maxOutputTokens": PROBE_MAX_OUTPUT_TOKENS},
            },
        )

    @staticmethod
    def _media_part(media: MediaPayload, variant: ProbeVariant) -> dict[str, Any]:
        # PDFs and page images both travel as a mime-typed blob.
        if variant.use_base64:
            return {"inline_data": {"mime_type": media.mime_type, "data": media.base64_data}}
        return {"file_data": {"mime_type": media.mime_type, "file_uri": media.data_url}}

    def parse_probe_response(self, status: int, body: Any) -> ParsedProbeResponse:
        if not isinstance(body, dict):
            text = body if isinstance(body, str) else ""
            return ParsedProbeResponse(ok=False, error_message=excerpt(text) or None, malformed=True, raw=body)

        if 200 <= status < 300:
            candidates = body.get("candidates")
            if not isinstance(candidates, list) or not candidates:
                return ParsedProbeResponse(ok=False, malformed=True, raw=body)
            parts = (candidates[0].get("content") or {}).get("parts") or []
            text = " ".join(p.get("text", "") for p in parts if isinstance(p, dict))
            return ParsedProbeResponse(ok=True, text=text, raw=body)

        error = body.get("error")
        if isinstance(error, dict):
            return ParsedProbeResponse(
                ok=False,
                error_code=error.get("status") or (str(error["code"]) if "code" in error else None),
                error_message=str(error.get("message") or ""),
                raw=body,
            )
        return ParsedProbeResponse(ok=False, raw=body)
