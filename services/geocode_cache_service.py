"""
Geocode cache - remember successful exact-address lookups so re-scrapes of
the same show do not hit Nominatim again.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any, Dict, Optional

from app.models.pending_show import Coordinates
from services.db_service import execute, fetchrow

_PUNCT_RE = re.compile(r"[^\w\s,#-]")
_WS_RE = re.compile(r"\s+")


def normalize_address(address: str) -> str:
    cleaned = _PUNCT_RE.sub(" ", (address or "").lower())
    cleaned = _WS_RE.sub(" ", cleaned)
    cleaned = re.sub(r"\s*,\s*", ", ", cleaned)
    return cleaned.strip(" ,")


def address_hash(address: str) -> str:
    return hashlib.sha256(normalize_address(address).encode("utf-8")).hexdigest()


async def get_cached(address: str) -> Optional[Coordinates]:
    row = await fetchrow(
        """
        SELECT lat, lng, formatted_address
        FROM geocode_cache
        WHERE address_hash = $1
        """,
        address_hash(address),
    )
    if not row or row["lat"] is None or row["lng"] is None:
        return None
    return Coordinates(
        latitude=float(row["lat"]),
        longitude=float(row["lng"]),
        source="cache",
        display_name=row["formatted_address"],
    )


async def store(address: str, coords: Coordinates, raw: Optional[Dict[str, Any]] = None) -> None:
    await execute(
        """
        INSERT INTO geocode_cache (address_hash, address_norm, formatted_address, lat, lng, raw)
        VALUES ($1, $2, $3, $4, $5, CAST($6 AS JSONB))
        ON CONFLICT (address_hash) DO UPDATE SET
            formatted_address = EXCLUDED.formatted_address,
            lat = EXCLUDED.lat,
            lng = EXCLUDED.lng,
            raw = EXCLUDED.raw
        """,
        address_hash(address),
        normalize_address(address),
        coords.display_name,
        coords.latitude,
        coords.longitude,
        json.dumps(raw or {}, ensure_ascii=False),
    )
