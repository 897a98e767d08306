"""Capability records produced by probing and resolved by the cache."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any

PROBE_VERSION = "1.0.0"

CAPABILITY_FLAGS = (
    "supports_vision",
    "supports_pdf_native",
    "supports_pdf_as_images",
    "requires_base64_images",
    "requires_images_first",
    "message_shape",
    "completion_shape",
)


class MessageShape(str, Enum):
    OPENAI_PARTS = "openai.parts"
    OPENAI_STRING = "openai.string"
    ANTHROPIC_CONTENT = "anthropic.content"
    GEMINI_PARTS = "gemini.parts"
    UNKNOWN = "unknown"


class CompletionShape(str, Enum):
    OPENAI_STREAMING = "openai.streaming"
    ANTHROPIC_SSE = "anthropic.sse"
    GEMINI_STREAMING = "gemini.streaming"
    UNKNOWN = "unknown"


class CapabilitySource(str, Enum):
    """Precedence layer that produced a capability value, highest first."""

    LOCAL_OVERRIDE = "local_override"
    PROBED = "probed"
    STATIC = "static"
    DEFAULT = "default"


@dataclass(frozen=True)
class ProbedCapabilities:
    """What a (provider, model) pair accepts as input.

    ``determined`` names the flags a probe actually established. Flags outside
    it hold the provider default and are never layered over static data.
    """

    supports_vision: bool = False
    supports_pdf_native: bool = False
    supports_pdf_as_images: bool = False
    requires_base64_images: bool = False
    requires_images_first: bool = False
    message_shape: MessageShape = MessageShape.OPENAI_PARTS
    completion_shape: CompletionShape = CompletionShape.OPENAI_STREAMING
    probed_at: float | None = None
    probe_version: str = PROBE_VERSION
    determined: frozenset[str] = frozenset()
    quirks: tuple[str, ...] = ()

    def flags(self, only_determined: bool = False) -> dict[str, Any]:
        names = [n for n in CAPABILITY_FLAGS if not only_determined or n in self.determined]
        return {name: getattr(self, name) for name in names}

    def merged(self, overlay: dict[str, Any]) -> ProbedCapabilities:
        """Copy with ``overlay`` flags applied; unknown keys are ignored."""
        return replace(self, **coerce_flags(overlay))

    def to_dict(self) -> dict[str, Any]:
        data = self.flags()
        data["message_shape"] = self.message_shape.value
        data["completion_shape"] = self.completion_shape.value
        data["probed_at"] = self.probed_at
        data["probe_version"] = self.probe_version
        data["determined"] = sorted(self.determined)
        data["quirks"] = list(self.quirks)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProbedCapabilities:
        known = {f.name for f in fields(cls)}
        values = coerce_flags({k: v for k, v in data.items() if k in CAPABILITY_FLAGS})
        if "probed_at" in data and data["probed_at"] is not None:
            values["probed_at"] = float(data["probed_at"])
        if "probe_version" in data:
            values["probe_version"] = str(data["probe_version"])
        if "determined" in data:
            values["determined"] = frozenset(d for d in data["determined"] if d in CAPABILITY_FLAGS)
        if "quirks" in data:
            values["quirks"] = tuple(data["quirks"])
        return cls(**{k: v for k, v in values.items() if k in known})


def coerce_flags(raw: dict[str, Any]) -> dict[str, Any]:
    """Validate a partial flag mapping (as found in override or static tables)."""
    out: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in CAPABILITY_FLAGS:
            continue
        if key == "message_shape":
            out[key] = MessageShape(value)
        elif key == "completion_shape":
            out[key] = CompletionShape(value)
        else:
            out[key] = bool(value)
    return out


def conservative_default() -> ProbedCapabilities:
    """Text-only baseline: no vision, no native PDF."""
    return ProbedCapabilities()


@dataclass(frozen=True)
class CachedCapabilityEntry:
    """A capability record plus the layer it came from."""

    provider: str
    model: str
    capabilities: ProbedCapabilities
    source: CapabilitySource
    last_probed_at: float | None = None
    probe_version: str = PROBE_VERSION
    layers: tuple[CapabilitySource, ...] = field(default=())

    @property
    def key(self) -> str:
        return cache_key(self.provider, self.model)


def cache_key(provider: str, model: str) -> str:
    return f"{provider}:{model}"


def parse_cache_key(key: str) -> tuple[str, str] | None:
    provider, sep, model = key.partition(":")
    if not sep or not provider or not model:
        return None
    return provider, model
