"""OpenAI-style chat completions adapter (OpenAI, xAI, OpenRouter, local servers)."""

from __future__ import annotations

import logging
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

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"


class OpenAIStyleAdapter:
    """Probe adapter for any endpoint speaking the chat completions shape."""

    completion_shape = CompletionShape.OPENAI_STREAMING

    def __init__(
        self,
        provider: str,
        default_endpoint: str,
        *,
        token_field: str = "max_tokens",
        message_shape: MessageShape = MessageShape.OPENAI_PARTS,
        extra_headers: dict[str, str] | None = None,
    ) -> None:
        self.provider = provider
        self.default_endpoint = default_endpoint
        self.token_field = token_field
        self.message_shape = message_shape
        self.extra_headers = extra_headers or {}

    def endpoint_url(self, endpoint: str | None) -> str:
        if not endpoint:
            return self.default_endpoint
        normalized = endpoint.rstrip("/")
        if "/chat/completions" in normalized or "/chatcompletion" in normalized:
            return normalized
        if normalized.endswith("/v1"):
            return normalized + "/chat/completions"
        return normalized + CHAT_COMPLETIONS_PATH

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
        headers = {"Content-Type": "application/json", **self.extra_headers}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        if kind is ProbeKind.TEXT or media is None:
            content: Any = prompt
        else:
            text_part = {"type": "text", "text": prompt}
            content = order_parts(text_part, self._media_part(kind, media, variant), variant.images_first)

        return ProbeRequest(
            url=self.endpoint_url(endpoint),
            headers=headers,
            json={
                "model": model,
                "messages": [{"role": "user", "content": content}],
                self.token_field: PROBE_MAX_OUTPUT_TOKENS,
                "stream": False,
            },
        )

    def _media_part(self, kind: ProbeKind, media: MediaPayload, variant: ProbeVariant) -> dict[str, Any]:
        if kind is ProbeKind.PDF and not variant.as_page_images:
            return {
                "type": "file",
                "file": {"filename": "probe.pdf", "file_data": media.data_url},
            }
        # Chat completions only takes images by URL; base64 travels inside a data URL.
        return {"type": "image_url", "image_url": {"url": media.data_url}}

    def parse_probe_response(self, status: int, body: Any) -> ParsedProbeResponse:
        if not isinstance(body, dict):
            text = body if isinstance(body, str) else ""
            return ParsedProbeResponse(ok=False, error_message=excerpt(text) or None, malformed=True, raw=body)

        if 200 <= status < 300:
            choices = body.get("choices")
            if not isinstance(choices, list) or not choices:
                return ParsedProbeResponse(ok=False, malformed=True, raw=body)
            message = choices[0].get("message") or {}
            content = message.get("content") or ""
            if isinstance(content, list):
                content = " ".join(p.get("text", "") for p in content if isinstance(p, dict))
            return ParsedProbeResponse(ok=True, text=str(content), raw=body)

        error = body.get("error")
        if isinstance(error, dict):
            code = error.get("code") or error.get("type")
            return ParsedProbeResponse(
                ok=False,
                error_code=str(code) if code is not None else None,
                error_message=str(error.get("message") or ""),
                raw=body,
            )
        if isinstance(error, str):
            return ParsedProbeResponse(ok=False, error_message=error, raw=body)
        if body.get("message"):
            return ParsedProbeResponse(ok=False, error_message=str(body["message"]), raw=body)
        # Minimax style: {"base_resp": {"status_code": ..., "status_msg": ...}}
        base_resp = body.get("base_resp")
        if isinstance(base_resp, dict):
            return ParsedProbeResponse(
                ok=False,
                error_code=str(base_resp.get("status_code", "")) or None,
                error_message=str(base_resp.get("status_msg", "")),
                raw=body,
            )
        return ParsedProbeResponse(ok=False, raw=body)
