"""Provider registry: which adapter style each provider speaks."""

from __future__ import annotations

from mosaic.backends.anthropic import AnthropicStyleAdapter
from mosaic.backends.base import ProbeAdapter
from mosaic.backends.gemini import GeminiStyleAdapter
from mosaic.backends.openai import OpenAIStyleAdapter
from mosaic.errors import UnknownProviderError
from mosaic.models.capabilities import MessageShape

# Providers served from localhost; probing them needs no credentials.
LOCAL_PROVIDERS = frozenset({"ollama", "lmstudio", "vllm", "local-openai-compatible"})


def _build_adapters() -> dict[str, ProbeAdapter]:
    return {
        "openai": OpenAIStyleAdapter(
            "openai",
            "https://api.openai.com/v1/chat/completions",
            token_field="max_completion_tokens",
        ),
        "anthropic": AnthropicStyleAdapter(),
        "gemini": GeminiStyleAdapter(),
        "xai": OpenAIStyleAdapter("xai", "https://api.x.ai/v1/chat/completions"),
        "openrouter": OpenAIStyleAdapter(
            "openrouter",
            "https://openrouter.ai/api/v1/chat/completions",
            extra_headers={"HTTP-Referer": "https://github.com/mosaic-context", "X-Title": "Mosaic Capability Probe"},
        ),
        "fireworks": OpenAIStyleAdapter("fireworks", "https://api.fireworks.ai/inference/v1/chat/completions"),
        "ollama": OpenAIStyleAdapter("ollama", "http://localhost:11434/v1/chat/completions"),
        "lmstudio": OpenAIStyleAdapter("lmstudio", "http://localhost:1234/v1/chat/completions"),
        "vllm": OpenAIStyleAdapter("vllm", "http://localhost:8000/v1/chat/completions"),
        "minimax": OpenAIStyleAdapter(
            "minimax",
            "https://api.minimax.chat/v1/text/chatcompletion_v2",
            message_shape=MessageShape.OPENAI_STRING,
        ),
        "local-openai-compatible": OpenAIStyleAdapter(
            "local-openai-compatible", "http://localhost:8080/v1/chat/completions"
        ),
    }


ADAPTERS: dict[str, ProbeAdapter] = _build_adapters()
KNOWN_PROVIDERS = tuple(ADAPTERS)


def adapter_for(provider: str) -> ProbeAdapter:
    try:
        return ADAPTERS[provider]
    except KeyError:
        raise UnknownProviderError(provider) from None


def is_known_provider(provider: str) -> bool:
    return provider in ADAPTERS


def requires_api_key(provider: str) -> bool:
    return provider not in LOCAL_PROVIDERS
