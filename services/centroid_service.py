"""
City/state centroid fallback for shows whose exact address never geocoded.
"""

from __future__ import annotations

from typing import Optional

from app.core.us_states import STATE_CENTROIDS, to_state_code
from app.models.pending_show import Coordinates
from services.db_service import fetchrow


async def lookup_city_centroid(city: str, state: str) -> Optional[Coordinates]:
    row = await fetchrow(
        """
        SELECT lat, lng
        FROM geocode_centroids
        WHERE LOWER(city) = LOWER($1) AND state = $2
        LIMIT 1
        """,
        city.strip(),
        state,
    )
    if not row:
        return None
    return Coordinates(
        latitude=float(row["lat"]),
        longitude=float(row["lng"]),
        source="centroid",
        display_name=f"{city.strip()}, {state}",
    )


def state_centroid(state: str) -> Optional[Coordinates]:
    point = STATE_CENTROIDS.get(state)
    if point is None:
        return None
    return Coordinates(latitude=point[0], longitude=point[1], source="centroid", display_name=state)


async def resolve_centroid(city: Optional[str], state: Optional[str]) -> Optional[Coordinates]:
    """City centroid from the table when known, else the state's built-in centroid."""
    code = to_state_code(state)
    if code is None:
        return None
    if city and city.strip():
        found = await lookup_city_centroid(city, code)
        if found is not None:
            return found
    return state_centroid(code)
