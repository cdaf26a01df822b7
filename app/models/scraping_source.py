from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

from app.core.us_states import to_state_code

DEFAULT_PRIORITY_SCORE = 50
MAX_PRIORITY_SCORE = 100
MIN_PRIORITY_SCORE = 0


def normalize_source_url(value: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValueError("url cannot be empty")
    parsed = urlparse(cleaned)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"url must be an absolute http(s) URL: {cleaned!r}")
    return cleaned


class ScrapingSource(BaseModel):
    url: str
    priority_score: int = Field(default=DEFAULT_PRIORITY_SCORE, ge=MIN_PRIORITY_SCORE, le=MAX_PRIORITY_SCORE)
    enabled: bool = True
    state: Optional[str] = None
    last_success_at: Optional[datetime] = None
    last_error_at: Optional[datetime] = None
    error_streak: int = Field(default=0, ge=0)
    needs_attention: bool = False
    last_error: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("url")
    @classmethod
    def _normalize_url(cls, value: str) -> str:
        return normalize_source_url(value)

    @field_validator("state", mode="before")
    @classmethod
    def _normalize_state(cls, value: Any) -> Optional[str]:
        if value is None or not str(value).strip():
            return None
        code = to_state_code(str(value))
        if code is None:
            raise ValueError(f"unknown US state: {value!r}")
        return code

    @property
    def domain(self) -> str:
        host = (urlparse(self.url).hostname or "").lower()
        return host[4:] if host.startswith("www.") else host

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ScrapingSource":
        data = dict(row)
        return cls(
            url=data["url"],
            priority_score=int(data.get("priority_score") or 0),
            enabled=bool(data.get("enabled", True)),
            state=data.get("state"),
            last_success_at=data.get("last_success_at"),
            last_error_at=data.get("last_error_at"),
            error_streak=int(data.get("error_streak") or 0),
            needs_attention=bool(data.get("needs_attention") or False),
            last_error=data.get("last_error"),
            notes=data.get("notes"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
