# app/core/errors.py
from __future__ import annotations

from typing import Optional


class ScraperError(Exception):
    """Base class for every error raised by the ingestion pipeline."""


class ConfigError(ScraperError):
    """Missing credentials or settings. Fatal, raised before any work starts."""


class FetchError(ScraperError):
    def __init__(self, url: str, reason: str, *, status_code: Optional[int] = None) -> None:
        self.url = url
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"fetch failed for {url}: {reason}")


class ExtractionError(ScraperError):
    """
    A single chunk could not be turned into candidates.

    `kind` is one of: timeout, server_error, rate_limited, connection,
    client_error, malformed_json, empty_response.
    """

    def __init__(
        self,
        reason: str,
        *,
        kind: str,
        retryable: bool = False,
        source_url: Optional[str] = None,
        chunk_index: Optional[int] = None,
    ) -> None:
        self.reason = reason
        self.kind = kind
        self.retryable = retryable
        self.source_url = source_url
        self.chunk_index = chunk_index
        super().__init__(reason)

    def with_context(self, *, source_url: str, chunk_index: int) -> "ExtractionError":
        self.source_url = source_url
        self.chunk_index = chunk_index
        return self

    def __str__(self) -> str:
        if self.source_url is None:
            return f"{self.kind}: {self.reason}"
        return f"{self.kind}: {self.reason} (source={self.source_url}, chunk={self.chunk_index})"


class MalformedJSONError(ExtractionError):
    def __init__(self, reason: str, *, raw_text: str = "") -> None:
        super().__init__(reason, kind="malformed_json", retryable=False)
        self.raw_text = raw_text


class GeocodeError(ScraperError):
    def __init__(self, reason: str, *, retryable: bool = True) -> None:
        self.reason = reason
        self.retryable = retryable
        super().__init__(reason)


class CandidateRejected(ScraperError):
    def __init__(self, reason: str, *, source_url: Optional[str] = None) -> None:
        self.reason = reason
        self.source_url = source_url
        super().__init__(reason)


class InvalidTransition(ScraperError, ValueError):
    def __init__(self, current: str, requested: str) -> None:
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid transition: {current} -> {requested}")
