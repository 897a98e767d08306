"""Base protocol for provider probe adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from mosaic.models.capabilities import CompletionShape, MessageShape

PROBE_MAX_OUTPUT_TOKENS = 16


class ProbeKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    PDF = "pdf"


@dataclass(frozen=True)
class ProbeVariant:
    """Request layout for one probe attempt.

    ``use_base64`` sends media as a raw base64 payload; otherwise it is passed
    by URL (a data URL). ``as_page_images`` sends a PDF as a rasterized page.
    """

    use_base64: bool = True
    images_first: bool = False
    as_page_images: bool = False

    @property
    def label(self) -> str:
        parts = ["base64" if self.use_base64 else "url", "images-first" if self.images_first else "text-first"]
        if self.as_page_images:
            parts.append("page-images")
        return "/".join(parts)


@dataclass(frozen=True)
class MediaPayload:
    base64_data: str
    mime_type: str

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64_data}"


@dataclass
class ProbeRequest:
    url: str
    headers: dict[str, str]
    json: dict[str, Any]


@dataclass
class ParsedProbeResponse:
    """Provider-neutral view of a probe response body."""

    ok: bool
    text: str = ""
    error_code: str | None = None
    error_message: str | None = None
    malformed: bool = False
    raw: Any = field(default=None, repr=False)


@runtime_checkable
class ProbeAdapter(Protocol):
    """Interface every provider style implements for probing."""

    provider: str
    message_shape: MessageShape
    completion_shape: CompletionShape

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
        """Build a minimal request exercising one input modality."""
        ...

    def parse_probe_response(self, status: int, body: Any) -> ParsedProbeResponse:
        """Interpret a decoded JSON body (or raw text) returned for a probe."""
        ...


def order_parts(text_part: Any, media_part: Any | None, images_first: bool) -> list[Any]:
    if media_part is None:
        return [text_part]
    return [media_part, text_part] if images_first else [text_part, media_part]


def excerpt(text: str, limit: int = 200) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."
