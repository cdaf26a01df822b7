"""
Pending Show Service - durable review queue for scraped card shows.

Writes for one source are serialized with a transaction-scoped advisory lock
keyed on the source URL, so overlapping crawl cycles cannot both decide
"no match" and insert the same show twice.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from pydantic import ValidationError

from app.core.errors import InvalidTransition
from app.core.logging import get_logger
from app.models.pending_show import (
    PENDING_SHOW_STATUSES,
    Coordinates,
    NormalizedShow,
    PendingShow,
)
from services.db_service import (
    execute,
    execute_with_conn,
    fetch,
    fetch_with_conn,
    fetchrow,
    fetchrow_with_conn,
    run_in_transaction,
)
from services.show_dedupe_service import (
    DATE_WINDOW_DAYS,
    TITLE_THRESHOLD,
    ExistingCandidate,
    find_match,
    merge_shows,
)

logger = get_logger()

ALLOWED_STATUS_TRANSITIONS = {
    "PENDING": {"APPROVED", "REJECTED"},
    "APPROVED": set(),
    "REJECTED": set(),
}

# How far before the incoming start date existing rows are still considered.
MATCH_LOOKBACK_DAYS = 31

_PENDING_COLUMNS = """
    id,
    source_url,
    raw_payload,
    normalized_payload,
    status,
    latitude,
    longitude,
    geocode_source,
    geocode_attempts,
    reviewer_notes,
    created_at,
    updated_at,
    reviewed_at
"""

PERSIST_INSERTED = "inserted"
PERSIST_MERGED = "merged"
PERSIST_UNCHANGED = "unchanged"
PERSIST_SKIPPED_DECIDED = "skipped_decided"


@dataclass(frozen=True)
class PersistResult:
    action: str
    id: Optional[UUID]
    status: Optional[str] = None

    @property
    def wrote(self) -> bool:
        return self.action in (PERSIST_INSERTED, PERSIST_MERGED)


def _coords_columns(show: NormalizedShow) -> Tuple[Optional[float], Optional[float], Optional[str]]:
    if show.coordinates is None:
        return None, None, None
    return show.coordinates.latitude, show.coordinates.longitude, show.coordinates.source


def _comparable(show: NormalizedShow) -> Tuple[Dict[str, Any], Optional[Tuple[float, float]]]:
    coords = None
    if show.coordinates is not None:
        coords = (round(show.coordinates.latitude, 6), round(show.coordinates.longitude, 6))
    return show.payload(), coords


def _to_existing(row: Any) -> Optional[ExistingCandidate]:
    try:
        pending = PendingShow.from_row(dict(row))
        show = pending.normalized()
    except (ValidationError, ValueError) as exc:
        logger.warning("pending_show_unreadable_row", row_id=str(dict(row).get("id")), error=str(exc))
        return None
    return ExistingCandidate(
        id=pending.id,
        status=pending.status,
        source_url=pending.source_url,
        show=show,
        raw_payload=pending.raw_payload,
    )


async def _load_existing_with_conn(conn: Any, show: NormalizedShow) -> List[ExistingCandidate]:
    if show.start_date is not None:
        floor = (show.start_date - timedelta(days=MATCH_LOOKBACK_DAYS)).isoformat()
        rows = await fetch_with_conn(
            conn,
            f"""
            SELECT {_PENDING_COLUMNS}
            FROM pending_shows
            WHERE source_url = $1
              AND (
                    normalized_payload->>'start_date' IS NULL
                 OR normalized_payload->>'end_date' >= $2
              )
            ORDER BY created_at ASC
            """,
            show.source_url,
            floor,
        )
    else:
        rows = await fetch_with_conn(
            conn,
            f"""
            SELECT {_PENDING_COLUMNS}
            FROM pending_shows
            WHERE source_url = $1
            ORDER BY created_at ASC
            """,
            show.source_url,
        )
    existing = [_to_existing(row) for row in rows or []]
    return [item for item in existing if item is not None]


async def insert_or_merge(
    show: NormalizedShow,
    raw_payload: Dict[str, Any],
    *,
    title_threshold: float = TITLE_THRESHOLD,
    date_window_days: int = DATE_WINDOW_DAYS,
) -> PersistResult:
    """
    Persist one normalized show for review.

    - no match: insert as PENDING
    - match on a PENDING row: merge (latest non-empty values win), or no
      write at all when nothing changed
    - match on an APPROVED/REJECTED row: no write, decided items stay decided
    """
    async with run_in_transaction() as conn:
        await execute_with_conn(
            conn,
            "SELECT pg_advisory_xact_lock(hashtext($1))",
            show.source_url,
        )
        existing = await _load_existing_with_conn(conn, show)
        match = find_match(
            show,
            existing,
            title_threshold=title_threshold,
            date_window_days=date_window_days,
        )

        if match is None:
            lat, lng, geocode_source = _coords_columns(show)
            row = await fetchrow_with_conn(
                conn,
                """
                INSERT INTO pending_shows (
                    source_url,
                    raw_payload,
                    normalized_payload,
                    status,
                    latitude,
                    longitude,
                    geocode_source
                ) VALUES ($1, CAST($2 AS JSONB), CAST($3 AS JSONB), 'PENDING', $4, $5, $6)
                RETURNING id
                """,
                show.source_url,
                json.dumps(raw_payload, ensure_ascii=False, default=str),
                json.dumps(show.payload(), ensure_ascii=False),
                lat,
                lng,
                geocode_source,
            )
            new_id = row["id"] if row else None
            logger.info("pending_show_inserted", id=str(new_id), source_url=show.source_url, name=show.name)
            return PersistResult(action=PERSIST_INSERTED, id=new_id, status="PENDING")

        if match.status != "PENDING":
            logger.info(
                "pending_show_match_already_decided",
                id=str(match.id),
                status=match.status,
                source_url=show.source_url,
                name=show.name,
            )
            return PersistResult(action=PERSIST_SKIPPED_DECIDED, id=match.id, status=match.status)

        merged = merge_shows(match.show, show)
        if _comparable(merged) == _comparable(match.show):
            return PersistResult(action=PERSIST_UNCHANGED, id=match.id, status=match.status)

        lat, lng, geocode_source = _coords_columns(merged)
        await execute_with_conn(
            conn,
            """
            UPDATE pending_shows
            SET
                raw_payload = CAST($2 AS JSONB),
                normalized_payload = CAST($3 AS JSONB),
                latitude = COALESCE($4, latitude),
                longitude = COALESCE($5, longitude),
                geocode_source = COALESCE($6, geocode_source),
                updated_at = NOW()
            WHERE id = $1 AND status = 'PENDING'
            """,
            match.id,
            json.dumps(raw_payload, ensure_ascii=False, default=str),
            json.dumps(merged.payload(), ensure_ascii=False),
            lat,
            lng,
            geocode_source,
        )
        logger.info("pending_show_merged", id=str(match.id), source_url=show.source_url, name=merged.name)
        return PersistResult(action=PERSIST_MERGED, id=match.id, status="PENDING")


async def get_pending_show(show_id: UUID) -> Optional[PendingShow]:
    row = await fetchrow(
        f"SELECT {_PENDING_COLUMNS} FROM pending_shows WHERE id = $1",
        show_id,
    )
    if not row:
        return None
    return PendingShow.from_row(dict(row))


async def list_by_status(
    status: str,
    *,
    limit: int = 50,
    offset: int = 0,
) -> List[PendingShow]:
    normalized = (status or "").strip().upper()
    if normalized not in PENDING_SHOW_STATUSES:
        raise ValueError(f"Invalid status: {status}")
    rows = await fetch(
        f"""
        SELECT {_PENDING_COLUMNS}
        FROM pending_shows
        WHERE status = $1
        ORDER BY created_at DESC
        LIMIT $2 OFFSET $3
        """,
        normalized,
        max(1, int(limit)),
        max(0, int(offset)),
    )
    return [PendingShow.from_row(dict(row)) for row in rows or []]


async def set_status(
    show_id: UUID,
    status: str,
    reviewer_notes: Optional[str] = None,
) -> PendingShow:
    """
    Review decision. Only PENDING rows can move (to APPROVED or REJECTED);
    asking for the current status again is a no-op.
    """
    new_status = (status or "").strip().upper()
    if new_status not in PENDING_SHOW_STATUSES:
        raise ValueError(f"Invalid target status: {status}")

    async with run_in_transaction() as conn:
        row = await fetchrow_with_conn(
            conn,
            f"SELECT {_PENDING_COLUMNS} FROM pending_shows WHERE id = $1 FOR UPDATE",
            show_id,
        )
        if row is None:
            raise LookupError("pending_show_not_found")

        current = PendingShow.from_row(dict(row))
        if current.status == new_status:
            return current

        if new_status not in ALLOWED_STATUS_TRANSITIONS.get(current.status, set()):
            raise InvalidTransition(current.status, new_status)

        updated = await fetchrow_with_conn(
            conn,
            f"""
            UPDATE pending_shows
            SET
                status = $2,
                reviewer_notes = COALESCE($3, reviewer_notes),
                reviewed_at = $4,
                updated_at = $4
            WHERE id = $1
            RETURNING {_PENDING_COLUMNS}
            """,
            show_id,
            new_status,
            reviewer_notes,
            datetime.now(timezone.utc),
        )

    logger.info("pending_show_status_changed", id=str(show_id), old_status=current.status, status=new_status)
    return PendingShow.from_row(dict(updated))


async def update_normalized_payload(show_id: UUID, show: NormalizedShow) -> bool:
    """
    Replace the normalized payload of a PENDING row (inspection re-normalize).
    Decided rows are left alone; returns whether a row was updated.
    """
    result = await execute(
        """
        UPDATE pending_shows
        SET normalized_payload = CAST($2 AS JSONB), updated_at = NOW()
        WHERE id = $1 AND status = 'PENDING'
        """,
        show_id,
        json.dumps(show.payload(), ensure_ascii=False),
    )
    updated = str(result).endswith(" 1")
    if updated:
        logger.info("pending_show_renormalized", id=str(show_id), name=show.name)
    else:
        logger.warning("pending_show_renormalize_skipped", id=str(show_id))
    return updated


# ---------------------------------------------------------------------------
# Geocode backfill helpers
# ---------------------------------------------------------------------------

async def list_missing_coordinates(limit: int = 50) -> List[PendingShow]:
    rows = await fetch(
        f"""
        SELECT {_PENDING_COLUMNS}
        FROM pending_shows
        WHERE status = 'PENDING'
          AND (latitude IS NULL OR longitude IS NULL)
        ORDER BY geocode_attempts ASC, created_at ASC
        LIMIT $1
        """,
        max(1, int(limit)),
    )
    return [PendingShow.from_row(dict(row)) for row in rows or []]


async def update_coordinates(show_id: UUID, coords: Coordinates) -> None:
    async with run_in_transaction() as conn:
        await execute_with_conn(
            conn,
            """
            UPDATE pending_shows
            SET latitude = $2, longitude = $3, geocode_source = $4, updated_at = NOW()
            WHERE id = $1
            """,
            show_id,
            coords.latitude,
            coords.longitude,
            coords.source,
        )


async def increment_geocode_attempts(show_id: UUID) -> int:
    async with run_in_transaction() as conn:
        row = await fetchrow_with_conn(
            conn,
            """
            UPDATE pending_shows
            SET geocode_attempts = geocode_attempts + 1, updated_at = NOW()
            WHERE id = $1
            RETURNING geocode_attempts
            """,
            show_id,
        )
    return int(row["geocode_attempts"]) if row else 0


# ---------------------------------------------------------------------------
# Catalog hand-off
# ---------------------------------------------------------------------------

def published_show_payload(pending: PendingShow) -> Dict[str, Any]:
    """
    Shape an APPROVED show for the external catalog. The pipeline never writes
    the catalog itself.
    """
    if pending.status != "APPROVED":
        raise ValueError(f"only APPROVED shows can be published (got {pending.status})")
    show = pending.normalized()
    location = ", ".join(p for p in (show.venue_name, show.address) if p) or show.location_text
    return {
        "title": show.name,
        "description": show.description,
        "start_date": show.start_date.isoformat() if show.start_date else None,
        "end_date": show.end_date.isoformat() if show.end_date else None,
        "start_time": show.start_time,
        "end_time": show.end_time,
        "location": location,
        "address": show.address,
        "city": show.city,
        "state": show.state,
        "zip_code": show.zip_code,
        "entry_fee": show.entry_fee,
        "categories": list(show.categories),
        "features": list(show.features),
        "latitude": pending.latitude,
        "longitude": pending.longitude,
        "website_url": show.url,
        "contact_name": show.contact_name,
        "contact_phone": show.contact_phone,
        "contact_email": show.contact_email,
        "source_url": pending.source_url,
        "pending_show_id": str(pending.id),
    }
