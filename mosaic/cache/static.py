"""Built-in capability data for well-known model families."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from mosaic.models.capabilities import ProbedCapabilities, coerce_flags, conservative_default


@dataclass(frozen=True)
class StaticCapabilityOverride:
    pattern: re.Pattern[str]
    provider: str | None
    capabilities: dict[str, Any]

    def matches(self, provider: str, model: str) -> bool:
        if self.provider is not None and self.provider != provider:
            return False
        return bool(self.pattern.search(model))


STATIC_OVERRIDES: list[StaticCapabilityOverride] = [
    StaticCapabilityOverride(
        re.compile(r"^gpt-4o"),
        "openai",
        {
            "supports_vision": True,
            "supports_pdf_native": False,
            "supports_pdf_as_images": True,
            "requires_base64_images": False,
            "requires_images_first": False,
            "message_shape": "openai.parts",
        },
    ),
    StaticCapabilityOverride(
        re.compile(r"^gpt-4-vision"),
        "openai",
        {
            "supports_vision": True,
            "supports_pdf_native": False,
            "supports_pdf_as_images": True,
            "requires_base64_images": False,
            "message_shape": "openai.parts",
        },
    ),
    StaticCapabilityOverride(
        re.compile(r"^claude-(?:3|opus-4|sonnet-4|haiku-4)"),
        "anthropic",
        {
            "supports_vision": True,
            "supports_pdf_native": True,
            "supports_pdf_as_images": True,
            "requires_base64_images": True,
            "requires_images_first": False,
            "message_shape": "anthropic.content",
        },
    ),
    StaticCapabilityOverride(
        re.compile(r"^gemini"),
        "gemini",
        {
            "supports_vision": True,
            "supports_pdf_native": False,
            "supports_pdf_as_images": True,
            "requires_base64_images": False,
            "message_shape": "gemini.parts",
        },
    ),
    StaticCapabilityOverride(
        re.compile(r"^grok"),
        "xai",
        {
            "supports_vision": True,
            "supports_pdf_native": False,
            "supports_pdf_as_images": True,
            "message_shape": "openai.parts",
        },
    ),
    StaticCapabilityOverride(
        re.compile(r"llava|vision|bakllava", re.IGNORECASE),
        "ollama",
        {
            "supports_vision": True,
            "supports_pdf_as_images": True,
            "message_shape": "openai.parts",
        },
    ),
]

# Wire-shape defaults only. Vision and PDF flags stay off until a probe or a
# static entry says otherwise.
PROVIDER_DEFAULTS: dict[str, dict[str, Any]] = {
    "openai": {"requires_base64_images": False, "message_shape": "openai.parts"},
    "anthropic": {
        "requires_base64_images": True,
        "message_shape": "anthropic.content",
        "completion_shape": "anthropic.sse",
    },
    "gemini": {
        "requires_base64_images": False,
        "message_shape": "gemini.parts",
        "completion_shape": "gemini.streaming",
    },
    "xai": {"requires_base64_images": False},
    "openrouter": {"requires_base64_images": False},
    "fireworks": {"requires_base64_images": False},
    "ollama": {"requires_base64_images": True},
    "lmstudio": {"requires_base64_images": True},
    "vllm": {"requires_base64_images": True},
    "minimax": {"requires_base64_images": False, "message_shape": "openai.string"},
    "local-openai-compatible": {"requires_base64_images": True},
}

_UPGRADING_FLAGS = ("supports_vision", "supports_pdf_native", "supports_pdf_as_images")


def static_override(provider: str, model: str) -> dict[str, Any] | None:
    """Partial flags from the first matching static entry, if any."""
    for override in STATIC_OVERRIDES:
        if override.matches(provider, model):
            return coerce_flags(override.capabilities)
    return None


def provider_defaults(provider: str) -> dict[str, Any]:
    flags = coerce_flags(PROVIDER_DEFAULTS.get(provider, {}))
    for name in _UPGRADING_FLAGS:
        flags.pop(name, None)
    return flags


def provider_baseline(provider: str) -> ProbedCapabilities:
    """Conservative default with the provider's wire-shape defaults applied."""
    return conservative_default().merged(provider_defaults(provider))
