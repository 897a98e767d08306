"""Error taxonomy for context assembly and capability probing."""

from __future__ import annotations


class MosaicError(Exception):
    """Base class for all mosaic errors."""


class NormalizationError(MosaicError):
    """Raised when extracted content cannot be turned into a Source.

    Batch normalization catches this, reports it and moves on to the next item.
    """

    def __init__(self, message: str, title: str | None = None, kind: str | None = None) -> None:
        super().__init__(message)
        self.title = title
        self.kind = kind


class CacheCorruptionError(MosaicError):
    """The persisted capability document could not be read or parsed."""

    def __init__(self, location: str, detail: str) -> None:
        super().__init__(f"Capability cache at {location} is unreadable: {detail}")
        self.location = location
        self.detail = detail


class BudgetOverflowError(MosaicError):
    """Task plus context index alone exceed the token budget."""

    def __init__(self, max_tokens: int, required_tokens: int) -> None:
        super().__init__(
            f"Token budget of {max_tokens} cannot hold the task and context index "
            f"({required_tokens} tokens required)"
        )
        self.max_tokens = max_tokens
        self.required_tokens = required_tokens


class InvalidAnchorError(MosaicError, ValueError):
    """Malformed source id or anchor string."""


class UnknownProviderError(MosaicError, ValueError):
    """Provider name outside the supported adapter set."""
