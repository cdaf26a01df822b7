from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from difflib import SequenceMatcher
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from app.core.logging import get_logger
from app.models.pending_show import NormalizedShow

logger = get_logger()

TITLE_THRESHOLD = float(os.getenv("SHOW_DEDUPE_TITLE_THRESHOLD", "0.85"))
DATE_WINDOW_DAYS = int(os.getenv("SHOW_DEDUPE_DATE_WINDOW_DAYS", "0"))
# Without dates to corroborate, titles must be (nearly) identical.
UNDATED_TITLE_THRESHOLD = 0.97

_NON_WORD_RE = re.compile(r"[^\w\s]")
_WS_RE = re.compile(r"\s+")
_STOPWORDS = {"the", "a", "an", "and", "of", "at", "in", "&"}


@dataclass
class ExistingCandidate:
    id: Optional[UUID]
    status: str
    source_url: str
    show: NormalizedShow
    raw_payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CollapsedShow:
    show: NormalizedShow
    raw_items: List[Dict[str, Any]] = field(default_factory=list)
    chunk_indexes: List[int] = field(default_factory=list)

    def raw_payload(self) -> Dict[str, Any]:
        return {"items": list(self.raw_items), "chunk_indexes": sorted(set(self.chunk_indexes))}


def _normalize_title(value: Optional[str]) -> str:
    if not value:
        return ""
    cleaned = _NON_WORD_RE.sub(" ", value.lower())
    return _WS_RE.sub(" ", cleaned).strip()


def _tokens(value: str) -> set[str]:
    return {tok for tok in value.split() if tok not in _STOPWORDS}


def title_similarity(a: Optional[str], b: Optional[str]) -> float:
    """
    Case-insensitive fuzzy title score in [0, 1]. A title whose words are all
    contained in the other (at least two words) scores 1.0.
    """
    a_norm = _normalize_title(a)
    b_norm = _normalize_title(b)
    if not a_norm or not b_norm:
        return 0.0
    if a_norm == b_norm:
        return 1.0
    a_tokens, b_tokens = _tokens(a_norm), _tokens(b_norm)
    shorter, longer = sorted((a_tokens, b_tokens), key=len)
    if len(shorter) >= 2 and shorter <= longer:
        return 1.0
    return SequenceMatcher(None, a_norm, b_norm).ratio()


def _date_range(show: NormalizedShow) -> Optional[Tuple[date, date]]:
    if show.start_date is None:
        return None
    return show.start_date, show.end_date or show.start_date


def dates_overlap(a: NormalizedShow, b: NormalizedShow, window_days: int = DATE_WINDOW_DAYS) -> Optional[bool]:
    """None when either side has no date."""
    ra, rb = _date_range(a), _date_range(b)
    if ra is None or rb is None:
        return None
    slack = timedelta(days=max(0, window_days))
    return ra[0] <= rb[1] + slack and rb[0] <= ra[1] + slack


def _same_place(a: NormalizedShow, b: NormalizedShow) -> bool:
    for attr in ("venue_name", "city"):
        va, vb = _normalize_title(getattr(a, attr)), _normalize_title(getattr(b, attr))
        if va and va == vb:
            return True
    return False


def match_score(
    a: NormalizedShow,
    b: NormalizedShow,
    *,
    title_threshold: float = TITLE_THRESHOLD,
    date_window_days: int = DATE_WINDOW_DAYS,
) -> Optional[float]:
    """
    Score for "a and b are the same show", or None when they are not.

    Rule: same source, fuzzy title overlap, overlapping dates. Records missing
    a date need a near-identical title; records missing a name need identical
    dates at the same venue or city.
    """
    if a.source_url != b.source_url:
        return None

    overlap = dates_overlap(a, b, date_window_days)
    if not a.name or not b.name:
        if a.name or b.name:
            return None
        if overlap and _date_range(a) == _date_range(b) and _same_place(a, b):
            return 1.0
        return None

    score = title_similarity(a.name, b.name)
    if overlap is None:
        return score if score >= UNDATED_TITLE_THRESHOLD else None
    if not overlap:
        return None
    return score if score >= title_threshold else None


def find_match(
    normalized: NormalizedShow,
    existing_candidates: Sequence[ExistingCandidate],
    *,
    title_threshold: float = TITLE_THRESHOLD,
    date_window_days: int = DATE_WINDOW_DAYS,
) -> Optional[ExistingCandidate]:
    best: Optional[ExistingCandidate] = None
    best_score = -1.0
    for candidate in existing_candidates:
        score = match_score(
            normalized,
            candidate.show,
            title_threshold=title_threshold,
            date_window_days=date_window_days,
        )
        if score is not None and score > best_score:
            best, best_score = candidate, score
    return best


def merge_shows(existing: NormalizedShow, incoming: NormalizedShow) -> NormalizedShow:
    """Field-wise merge: the incoming (latest) value wins unless it is empty."""
    merged: Dict[str, Any] = existing.model_dump()
    for key, value in incoming.model_dump().items():
        if value is None or value == [] or value == "":
            continue
        merged[key] = value
    return NormalizedShow.model_validate(merged)


def collapse_candidates(
    items: Sequence[Tuple[NormalizedShow, Dict[str, Any], int]],
    *,
    title_threshold: float = TITLE_THRESHOLD,
    date_window_days: int = DATE_WINDOW_DAYS,
) -> List[CollapsedShow]:
    """
    Merge listings of one run that describe the same show (typically one
    listing split across two chunks). Input order is chunk order, so later
    fragments win field conflicts.
    """
    collapsed: List[CollapsedShow] = []
    for show, raw, chunk_index in items:
        target: Optional[CollapsedShow] = None
        best_score = -1.0
        for group in collapsed:
            score = match_score(
                show,
                group.show,
                title_threshold=title_threshold,
                date_window_days=date_window_days,
            )
            if score is not None and score > best_score:
                target, best_score = group, score
        if target is None:
            collapsed.append(CollapsedShow(show=show, raw_items=[raw], chunk_indexes=[chunk_index]))
            continue
        target.show = merge_shows(target.show, show)
        target.raw_items.append(raw)
        target.chunk_indexes.append(chunk_index)
        logger.debug(
            "show_dedupe_collapsed",
            source_url=show.source_url,
            name=target.show.name,
            chunk_index=chunk_index,
        )
    return collapsed
