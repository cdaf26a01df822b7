from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Mapping, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

PENDING_SHOW_STATUSES = ("PENDING", "APPROVED", "REJECTED")
PendingShowStatus = Literal["PENDING", "APPROVED", "REJECTED"]

CARD_CATEGORIES = (
    "Sports Cards",
    "Pokemon",
    "Magic: The Gathering",
    "Yu-Gi-Oh",
    "Comics",
    "Memorabilia",
    "Vintage",
    "Other",
)

SHOW_FEATURES = (
    "On-site Grading",
    "Autograph Guests",
    "Food Vendors",
    "Door Prizes",
    "Auction",
    "Card Breakers",
)

GEOCODE_SOURCES = ("nominatim", "cache", "centroid")


class Coordinates(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    source: str = "nominatim"
    display_name: Optional[str] = None


class NormalizedShow(BaseModel):
    """Canonical card-show record produced by the normalizer."""

    model_config = ConfigDict(extra="forbid")

    source_url: str
    name: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    show_hours: Optional[str] = None
    venue_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    location_text: Optional[str] = None
    entry_fee: Optional[float] = Field(default=None, ge=0.0)
    entry_fee_text: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    features: List[str] = Field(default_factory=list)
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    coordinates: Optional[Coordinates] = None

    @field_validator(
        "name",
        "description",
        "url",
        "venue_name",
        "address",
        "city",
        "location_text",
        "entry_fee_text",
        "contact_name",
        "contact_phone",
        "contact_email",
        "show_hours",
    )
    @classmethod
    def _strip_optional(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("state")
    @classmethod
    def _normalize_state(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = value.strip().upper()
        if not cleaned:
            return None
        if len(cleaned) != 2 or not cleaned.isalpha():
            raise ValueError("state must be a 2-letter code")
        return cleaned

    @field_validator("categories")
    @classmethod
    def _validate_categories(cls, value: List[str]) -> List[str]:
        for item in value:
            if item not in CARD_CATEGORIES:
                raise ValueError(f"unknown category: {item}")
        return value

    @field_validator("features")
    @classmethod
    def _validate_features(cls, value: List[str]) -> List[str]:
        for item in value:
            if item not in SHOW_FEATURES:
                raise ValueError(f"unknown feature: {item}")
        return value

    def geocode_query(self) -> Optional[str]:
        """Best address string for geocoding, or None when there is nothing to look up."""
        if self.address and self.city and self.state:
            parts = [self.address, self.city, self.state]
            if self.zip_code:
                parts[-1] = f"{self.state} {self.zip_code}"
            return ", ".join(parts)
        if self.location_text:
            return self.location_text
        if self.city and self.state:
            return f"{self.city}, {self.state}"
        return None

    def payload(self) -> Dict[str, Any]:
        """JSON-ready dict stored as normalized_payload (coordinates live in their own columns)."""
        return self.model_dump(mode="json", exclude={"coordinates"})


def _decode_json(value: Any) -> Any:
    # asyncpg hands back jsonb as str unless a codec is registered
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


class PendingShow(BaseModel):
    id: UUID
    source_url: str
    raw_payload: Dict[str, Any] = Field(default_factory=dict)
    normalized_payload: Dict[str, Any] = Field(default_factory=dict)
    status: PendingShowStatus = "PENDING"
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    geocode_source: Optional[str] = None
    geocode_attempts: int = 0
    reviewer_notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> str:
        normalized = str(value or "").strip().upper()
        if normalized not in PENDING_SHOW_STATUSES:
            raise ValueError(f"status must be one of: {', '.join(PENDING_SHOW_STATUSES)}")
        return normalized

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def normalized(self) -> NormalizedShow:
        show = NormalizedShow.model_validate(self.normalized_payload)
        if self.has_coordinates:
            show = show.model_copy(
                update={
                    "coordinates": Coordinates(
                        latitude=self.latitude,
                        longitude=self.longitude,
                        source=self.geocode_source or "nominatim",
                    )
                }
            )
        return show

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PendingShow":
        data = dict(row)
        return cls(
            id=data["id"],
            source_url=data["source_url"],
            raw_payload=_decode_json(data.get("raw_payload")) or {},
            normalized_payload=_decode_json(data.get("normalized_payload")) or {},
            status=data.get("status") or "PENDING",
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            geocode_source=data.get("geocode_source"),
            geocode_attempts=int(data.get("geocode_attempts") or 0),
            reviewer_notes=data.get("reviewer_notes"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            reviewed_at=data.get("reviewed_at"),
        )
