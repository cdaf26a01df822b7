from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.core.retry import RetryPolicy
from app.core.us_states import to_state_code

SPORTS_COLLECTORS_DIGEST_HINT = (
    "This page is the Sports Collectors Digest show calendar. Shows are grouped "
    "under state headings (for example 'ALABAMA', 'ARIZONA'); use the nearest "
    "preceding heading as the state for every show below it. Each listing usually "
    "reads: dates, city, show name, venue and address, hours, admission, contact. "
    "Only include shows that have both a name and a date."
)


def _default_prompt_hints() -> Dict[str, str]:
    return {"sportscollectorsdigest.com": SPORTS_COLLECTORS_DIGEST_HINT}


class CrawlConfig(BaseModel):
    """
    Tunables for one crawl cycle. Injected into CrawlOrchestrator so each run
    (and each test) can vary them without touching module constants.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    # ---- Timeouts (seconds) ----
    fetch_timeout_s: float = Field(default=25.0, gt=0)
    extract_timeout_s: float = Field(default=20.0, gt=0)
    geocode_timeout_s: float = Field(default=5.0, gt=0)

    # ---- Chunking ----
    chunk_max_bytes: int = Field(default=25_000, ge=512)
    chunk_boundary_tolerance: float = Field(default=0.2, ge=0.0, lt=1.0)
    max_chunks_per_source: Optional[int] = Field(default=None, ge=1)
    min_html_bytes: int = Field(default=100, ge=0)

    # ---- Concurrency caps ----
    source_concurrency: int = Field(default=4, ge=1)
    chunk_concurrency: int = Field(default=3, ge=1)

    # ---- Retry policies ----
    fetch_retry: RetryPolicy = Field(default_factory=RetryPolicy.no_retry)
    extract_retry: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(max_attempts=3, backoff_mode="exp", base_delay_s=5.0)
    )
    geocode_retry: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(max_attempts=3, backoff_mode="exp", base_delay_s=1.0)
    )

    # ---- Source health ----
    priority_decay_k: int = Field(default=1, ge=0)
    attention_threshold: int = Field(default=5, ge=1)
    success_boost_cap: int = Field(default=5, ge=0)

    # ---- Geocoding ----
    geocoding_enabled: bool = True
    max_geocode_per_source: int = Field(default=20, ge=0)

    # ---- Dedupe ----
    dedupe_title_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    dedupe_date_window_days: int = Field(default=0, ge=0)

    # ---- Extraction ----
    model: Optional[str] = None
    source_prompt_hints: Dict[str, str] = Field(default_factory=_default_prompt_hints)

    # ---- Run scope ----
    dry_run: bool = False
    limit: Optional[int] = Field(default=None, ge=1)
    state: Optional[str] = None

    @field_validator("state", mode="before")
    @classmethod
    def _state_code(cls, value: Any) -> Optional[str]:
        if value is None or not str(value).strip():
            return None
        code = to_state_code(str(value))
        if code is None:
            raise ValueError(f"unknown US state: {value!r}")
        return code

    def prompt_hint_for(self, url: str) -> Optional[str]:
        host = (urlparse(url).hostname or "").lower()
        for domain, hint in self.source_prompt_hints.items():
            if host == domain or host.endswith("." + domain):
                return hint
        return None
