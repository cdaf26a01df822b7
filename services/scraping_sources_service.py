"""
Scraping Sources Service - source registry and health tracking for card-show crawls.

Sources are created administratively. The crawler only touches the health
columns (priority_score, error_streak, last_*_at, needs_attention); `enabled`
belongs to admins and is never flipped by the pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from app.core.logging import get_logger
from app.core.us_states import to_state_code
from app.models.scraping_source import (
    DEFAULT_PRIORITY_SCORE,
    MAX_PRIORITY_SCORE,
    MIN_PRIORITY_SCORE,
    ScrapingSource,
    normalize_source_url,
)
from services.db_service import (
    execute,
    execute_with_conn,
    fetch,
    fetchrow,
    fetchrow_with_conn,
    run_in_transaction,
)

logger = get_logger()

_SOURCE_COLUMNS = """
    url,
    priority_score,
    enabled,
    state,
    last_success_at,
    last_error_at,
    error_streak,
    needs_attention,
    last_error,
    notes,
    created_at,
    updated_at
"""


# ---------------------------------------------------------------------------
# Pure priority math
# ---------------------------------------------------------------------------

def decay_priority(priority_score: int, error_streak: int, k: int = 1) -> int:
    """
    New priority after a failed cycle. `error_streak` is the streak including
    the failure being recorded, so repeated failures decay progressively faster.
    """
    decayed = int(priority_score) - int(k) * max(0, int(error_streak))
    return max(MIN_PRIORITY_SCORE, min(MAX_PRIORITY_SCORE, decayed))


def boost_priority(priority_score: int, show_count: int, cap: int = 5) -> int:
    bump = max(0, min(int(show_count), int(cap)))
    return max(MIN_PRIORITY_SCORE, min(MAX_PRIORITY_SCORE, int(priority_score) + bump))


@dataclass(frozen=True)
class HealthUpdate:
    priority_score: int
    error_streak: int
    needs_attention: bool
    success: bool
    last_error: Optional[str]
    newly_flagged: bool


def compute_health_update(
    source: ScrapingSource,
    *,
    success: bool,
    show_count: int = 0,
    error_message: Optional[str] = None,
    decay_k: int = 1,
    attention_threshold: int = 5,
    boost_cap: int = 5,
) -> HealthUpdate:
    if success:
        return HealthUpdate(
            priority_score=boost_priority(source.priority_score, show_count, boost_cap),
            error_streak=0,
            needs_attention=False,
            success=True,
            last_error=None,
            newly_flagged=False,
        )

    streak = source.error_streak + 1
    flagged = streak >= attention_threshold
    return HealthUpdate(
        priority_score=decay_priority(source.priority_score, streak, decay_k),
        error_streak=streak,
        needs_attention=flagged,
        success=False,
        last_error=(error_message or "")[:500] or None,
        newly_flagged=flagged and not source.needs_attention,
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

async def list_enabled_sources(
    limit: Optional[int] = None,
    *,
    state: Optional[str] = None,
) -> List[ScrapingSource]:
    """
    Enabled sources, highest priority first; among equals the one that has
    gone longest without a success (never succeeded first) wins.

    `state` restricts the batch to sources tagged with that state.
    """
    where = ["enabled = TRUE"]
    params: list = []
    if state is not None:
        code = to_state_code(state)
        if code is None:
            raise ValueError(f"unknown US state: {state!r}")
        params.append(code)
        where.append(f"state = ${len(params)}")
    sql = f"""
        SELECT {_SOURCE_COLUMNS}
        FROM scraping_sources
        WHERE {" AND ".join(where)}
        ORDER BY priority_score DESC, last_success_at ASC NULLS FIRST, url ASC
    """
    if limit is not None:
        params.append(max(1, int(limit)))
        sql += f" LIMIT ${len(params)}"
    rows = await fetch(sql, *params)
    return [ScrapingSource.from_row(dict(row)) for row in rows or []]


async def get_source(url: str) -> Optional[ScrapingSource]:
    row = await fetchrow(
        f"SELECT {_SOURCE_COLUMNS} FROM scraping_sources WHERE url = $1",
        url,
    )
    if not row:
        return None
    return ScrapingSource.from_row(dict(row))


async def register_source(
    url: str,
    *,
    priority_score: int = DEFAULT_PRIORITY_SCORE,
    notes: Optional[str] = None,
    state: Optional[str] = None,
) -> ScrapingSource:
    """
    Admin helper: add a source, or return the existing one untouched.
    """
    clean_url = normalize_source_url(url)
    state_code = to_state_code(state) if state else None
    if state and state_code is None:
        raise ValueError(f"unknown US state: {state!r}")
    score = max(MIN_PRIORITY_SCORE, min(MAX_PRIORITY_SCORE, int(priority_score)))
    row = await fetchrow(
        f"""
        INSERT INTO scraping_sources (url, priority_score, notes, state)
        VALUES ($1, $2, $3, $4)
        ON CONFLICT (url) DO UPDATE SET url = EXCLUDED.url
        RETURNING {_SOURCE_COLUMNS}
        """,
        clean_url,
        score,
        notes,
        state_code,
    )
    logger.info("scraping_source_registered", url=clean_url, priority_score=score, state=state_code)
    return ScrapingSource.from_row(dict(row))


async def set_source_enabled(url: str, enabled: bool) -> bool:
    result = await execute(
        """
        UPDATE scraping_sources
        SET enabled = $2, updated_at = NOW()
        WHERE url = $1
        """,
        url,
        bool(enabled),
    )
    updated = str(result).endswith(" 1")
    if updated:
        logger.info("scraping_source_enabled_changed", url=url, enabled=bool(enabled))
    return updated


# ---------------------------------------------------------------------------
# Health tracker
# ---------------------------------------------------------------------------

async def record_outcome(
    url: str,
    *,
    success: bool,
    show_count: int = 0,
    error_message: Optional[str] = None,
    decay_k: int = 1,
    attention_threshold: int = 5,
    boost_cap: int = 5,
) -> Optional[HealthUpdate]:
    """
    Apply one cycle's outcome to a source as a single read-modify-write.

    The row is locked with SELECT ... FOR UPDATE so two overlapping cycles
    cannot lose each other's streak increments. Returns None for URLs that
    are not registered (ad-hoc --url runs).
    """
    async with run_in_transaction() as conn:
        row = await fetchrow_with_conn(
            conn,
            f"SELECT {_SOURCE_COLUMNS} FROM scraping_sources WHERE url = $1 FOR UPDATE",
            url,
        )
        if not row:
            logger.info("scraping_source_outcome_unregistered", url=url, success=success)
            return None

        source = ScrapingSource.from_row(dict(row))
        update = compute_health_update(
            source,
            success=success,
            show_count=show_count,
            error_message=error_message,
            decay_k=decay_k,
            attention_threshold=attention_threshold,
            boost_cap=boost_cap,
        )
        now = datetime.now(timezone.utc)

        if update.success:
            await execute_with_conn(
                conn,
                """
                UPDATE scraping_sources
                SET
                    priority_score = $2,
                    error_streak = 0,
                    needs_attention = FALSE,
                    last_error = NULL,
                    last_success_at = $3,
                    updated_at = $3
                WHERE url = $1
                """,
                url,
                update.priority_score,
                now,
            )
        else:
            await execute_with_conn(
                conn,
                """
                UPDATE scraping_sources
                SET
                    priority_score = $2,
                    error_streak = $3,
                    needs_attention = $4,
                    last_error = $5,
                    last_error_at = $6,
                    updated_at = $6
                WHERE url = $1
                """,
                url,
                update.priority_score,
                update.error_streak,
                update.needs_attention,
                update.last_error,
                now,
            )

    if update.needs_attention:
        logger.warning(
            "scraping_source_needs_attention",
            url=url,
            error_streak=update.error_streak,
            priority_score=update.priority_score,
            newly_flagged=update.newly_flagged,
        )
    else:
        logger.info(
            "scraping_source_outcome_recorded",
            url=url,
            success=update.success,
            error_streak=update.error_streak,
            priority_score=update.priority_score,
        )
    return update
