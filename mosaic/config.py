"""Mosaic configuration: loaded from environment variables."""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

# Conventional, un-prefixed variables most provider SDKs already read.
API_KEY_ENV_VARS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "xai": "XAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "fireworks": "FIREWORKS_API_KEY",
    "ollama": "OLLAMA_API_KEY",
    "lmstudio": "LMSTUDIO_API_KEY",
    "vllm": "VLLM_API_KEY",
    "minimax": "MINIMAX_API_KEY",
    "local-openai-compatible": "LOCAL_OPENAI_API_KEY",
}


class Settings(BaseSettings):
    model_config = {"env_prefix": "MOSAIC_", "env_file": ".env", "extra": "ignore"}

    # LLM API keys
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    gemini_api_key: str = ""
    xai_api_key: str = ""
    openrouter_api_key: str = ""
    fireworks_api_key: str = ""
    minimax_api_key: str = ""

    # Per-provider endpoint overrides, e.g. {"ollama": "http://gpu-box:11434"}
    endpoints: dict[str, str] = {}

    # Storage
    data_dir: Path = Path("~/.mosaic")
    cache_backend: str = "json"  # json | sqlite
    cache_file: str = "model-capabilities.probed.json"
    sqlite_file: str = "model-capabilities.db"
    overrides_file: str = "model-capabilities.local.json"
    keys_file: str = "keys.json"
    quick_list_file: str = "quick-list.json"

    # Probing
    probe_timeout: float = 15.0
    probe_max_retries: int = 2
    probe_retry_delay: float = 0.5
    capability_ttl_days: float = 7.0
    cache_flush_delay: float = 1.0

    # Degrade ladder
    min_keep_chunks: int = 3
    pdf_top_k_pages: int = 2

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"

    def resolve_path(self, name: str) -> Path:
        return self.data_dir.expanduser() / name

    @property
    def capability_ttl_seconds(self) -> float:
        return self.capability_ttl_days * 24 * 60 * 60

    def api_key_for(self, provider: str) -> str:
        """API key for a provider: conventional env var, then MOSAIC_ setting, then keys file."""
        env_var = API_KEY_ENV_VARS.get(provider)
        if env_var and os.environ.get(env_var):
            return os.environ[env_var]
        field = f"{provider}_api_key"
        configured = getattr(self, field, "") if field in type(self).model_fields else ""
        if configured:
            return configured
        return load_keys_file(self.resolve_path(self.keys_file)).get(provider, "")

    def endpoint_for(self, provider: str) -> str | None:
        return self.endpoints.get(provider)


def load_keys_file(path: Path) -> dict[str, str]:
    """Read a local ``{"provider": "key"}`` document; missing or broken files yield {}."""
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError:
        return {}
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable keys file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        return {}
    return {k: v for k, v in data.items() if isinstance(v, str)}


def configure_logging(level: str | int | None = None) -> None:
    """Single stderr handler for CLI and server entry points."""
    logging.basicConfig(
        level=level or settings.log_level,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        stream=sys.stderr,
    )


settings = Settings()
