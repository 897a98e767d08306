"""Anthropic Messages API adapter."""

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

ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"


class AnthropicStyleAdapter:
    """Probe adapter using typed content blocks (image / document)."""

    message_shape = MessageShape.ANTHROPIC_CONTENT
    completion_shape = CompletionShape.ANTHROPIC_SSE

    def __init__(self, provider: str = "anthropic", default_endpoint: str = ANTHROPIC_API_URL) -> None:
        self.provider = provider
        self.default_endpoint = default_endpoint

    def endpoint_url(self, endpoint: str | None) -> str:
        if not endpoint:
            return self.default_endpoint
        normalized = endpoint.rstrip("/")
        if normalized.endswith("/messages"):
            return normalized
        if normalized.endswith("/v1"):
            return normalized + "/messages"
        return normalized + "/v1/messages"

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
        headers = {
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        if api_key:
            headers["x-api-key"] = api_key

        if kind is ProbeKind.TEXT or media is None:
            content: Any = prompt
        else:
            text_block = {"type": "text", "text": prompt}
            content = order_parts(text_block, self._media_block(kind, media, variant), variant.images_first)

        return ProbeRequest(
            url=self.endpoint_url(endpoint),
            headers=headers,
            json={
                "model": self.model_name(model),
                "max_tokens": PROBE_MAX_OUTPUT_TOKENS,
                "messages": [{"role": "user", "content": content}],
            },
        )

    @staticmethod
    def model_name(model: str) -> str:
        return model

    def _media_block(self, kind: ProbeKind, media: MediaPayload, variant: ProbeVariant) -> dict[str, Any]:
        block_type = "document" if kind is ProbeKind.PDF and not variant.as_page_images else "image"
        if variant.use_base64:
            source = {"type": "base64", "media_type": media.mime_type, "data": media.base64_data}
        else:
            source = {"type": "url", "url": media.data_url}
        return {"type": block_type, "source": source}

    def parse_probe_response(self, status: int, body: Any) -> ParsedProbeResponse:
        if not isinstance(body, dict):
            text = body if isinstance(body, str) else ""
            return ParsedProbeResponse(ok=False, error_message=excerpt(text) or None, malformed=True, raw=body)

        if 200 <= status < 300:
            blocks = body.get("content")
            if not isinstance(blocks, list):
                return ParsedProbeResponse(ok=False, malformed=True, raw=body)
            text = " ".join(b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type") == "text")
            return ParsedProbeResponse(ok=True, text=text, raw=body)

        error = body.get("error")
        if isinstance(error, dict):
            return ParsedProbeResponse(
                ok=False,
                error_code=error.get("type"),
                error_message=str(error.get("message") or ""),
                raw=body,
            )
        return ParsedProbeResponse(ok=False, error_message=str(body.get("message") or "") or None, raw=body)
