"""Source ids and citation anchors.

Format: ``src:<8 hex chars>`` for a whole source, or ``src:<8 hex>#<location>``
where location is one of ``p=<page>``, ``sec=<path>``, ``msg=<index>`` or
``r=<x,y,w,h>``.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Iterable

from mosaic.errors import InvalidAnchorError
from mosaic.models.source import ChatlogSource, PdfSource, Source

SOURCE_ID_RE = re.compile(r"^src:[0-9a-f]{8}$")
_LOCATION_PREFIXES = {"p": "page", "sec": "section", "msg": "message", "r": "region"}


def compute_source_id(canonical: bytes) -> str:
    """Stable id over canonical bytes: first 32 bits of SHA-256."""
    return "src:" + hashlib.sha256(canonical).hexdigest()[:8]


def is_valid_source_id(value: str) -> bool:
    return bool(SOURCE_ID_RE.match(value))


@dataclass(frozen=True)
class ParsedAnchor:
    source_id: str
    location_type: str | None = None  # page | section | message | region
    value: str | None = None

    @property
    def page(self) -> int | None:
        if self.location_type == "page" and self.value is not None:
            return int(self.value)
        return None


def make_anchor(
    source_id: str,
    *,
    page: int | None = None,
    section: str | None = None,
    message: int | None = None,
    region: tuple[int, int, int, int] | None = None,
) -> str:
    """Build an anchor; at most one location may be given."""
    given = [x is not None for x in (page, section, message, region)]
    if sum(given) > 1:
        raise InvalidAnchorError("An anchor carries at most one location")
    if not is_valid_source_id(source_id):
        raise InvalidAnchorError(f"Invalid source id: {source_id!r}")
    if page is not None:
        return f"{source_id}#p={page}"
    if section is not None:
        return f"{source_id}#sec={section}"
    if message is not None:
        return f"{source_id}#msg={message}"
    if region is not None:
        return f"{source_id}#r=" + ",".join(str(v) for v in region)
    return source_id


def parse_anchor(anchor: str) -> ParsedAnchor:
    source_id, sep, location = anchor.partition("#")
    if not is_valid_source_id(source_id):
        raise InvalidAnchorError(f"Invalid anchor {anchor!r}: expected src:<8 hex chars>")
    if not sep:
        return ParsedAnchor(source_id)
    key, eq, value = location.partition("=")
    if not eq or not value or key not in _LOCATION_PREFIXES:
        raise InvalidAnchorError(f"Unknown anchor location {location!r} in {anchor!r}")
    location_type = _LOCATION_PREFIXES[key]
    if location_type in ("page", "message") and not value.isdigit():
        raise InvalidAnchorError(f"Non-numeric {location_type} in anchor {anchor!r}")
    if location_type == "region":
        parts = value.split(",")
        if len(parts) != 4 or not all(p.strip().lstrip("-").isdigit() for p in parts):
            raise InvalidAnchorError(f"Region must be x,y,w,h in anchor {anchor!r}")
    return ParsedAnchor(source_id, location_type, value)


def is_valid_anchor(anchor: str) -> bool:
    try:
        parse_anchor(anchor)
    except InvalidAnchorError:
        return False
    return True


def source_id_of(anchor: str) -> str:
    return parse_anchor(anchor).source_id


def resolve_anchor(sources: Iterable[Source], anchor: str) -> Source | None:
    """Return the source an anchor points at, or None if it (or its sub-unit) is missing."""
    parsed = parse_anchor(anchor)
    for source in sources:
        if source.source_id != parsed.source_id:
            continue
        if parsed.location_type == "page":
            if not isinstance(source, PdfSource) or source.page(int(parsed.value)) is None:
                return None
        elif parsed.location_type == "message":
            if not isinstance(source, ChatlogSource):
                return None
            if not any(m.index == int(parsed.value) for m in source.messages):
                return None
        return source
    return None
