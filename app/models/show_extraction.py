from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass(frozen=True)
class RawChunk:
    """Bounded slice of one source page. Lives only for the duration of a crawl."""

    source_url: str
    html_fragment: str
    sequence_index: int

    @property
    def size_bytes(self) -> int:
        return len(self.html_fragment.encode("utf-8"))


@dataclass
class ExtractedCandidate:
    """Unvalidated AI output for one listing; validated by the normalizer."""

    source_url: str
    raw_payload: Dict[str, Any] = field(default_factory=dict)
    chunk_index: int = 0
