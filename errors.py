#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Dict, Any, Optional


class FeedError(Exception):
    """Base class for feed transport failures."""

    def __init__(self, channel_id: str, message: str):
        super().__init__(message)
        self.channel_id = channel_id


class FeedNotFoundError(FeedError):
    """The channel feed answered 404; the channel is deactivated until a later fetch succeeds."""


class FeedFetchError(FeedError):
    """Any other feed failure (network, timeout, non-404 status). Retried next cycle."""


class ExtractionError(Exception):
    """Raised by the extraction+summarization collaborator."""


class NoCaptionsError(ExtractionError):
    """The item has no captions/transcript to summarize."""


class SummaryGenerationError(ExtractionError):
    """The LLM produced no usable summary."""


class ContentFilterError(SummaryGenerationError):
    """Raised when the LLM provider's content filtering blocks a response.

    Attributes:
        details: Optional provider-specific payload for diagnostics.
    """

    def __init__(self, message: str = "Content filtered by provider", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class DeliveryError(Exception):
    """Transport-level failure talking to the push or chat provider."""


__all__ = [
    "FeedError",
    "FeedNotFoundError",
    "FeedFetchError",
    "ExtractionError",
    "NoCaptionsError",
    "SummaryGenerationError",
    "ContentFilterError",
    "DeliveryError",
]
