"""
Pending show inspector - re-run normalization over a stored record's raw items.

Used from the scraper CLI (`--inspect-id`) after normalizer fixes: the raw
AI items kept in `raw_payload` are normalized again and compared with the
stored `normalized_payload`. Writing the result back is opt-in and only
allowed while the row is still PENDING.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import UUID

from app.core.errors import CandidateRejected
from app.core.logging import get_logger
from app.models.pending_show import NormalizedShow, PendingShow
from app.models.show_extraction import ExtractedCandidate
from services.pending_show_service import get_pending_show, update_normalized_payload
from services.show_dedupe_service import merge_shows
from services.show_normalization_service import ShowNormalizer

logger = get_logger()


@dataclass
class InspectionReport:
    pending: PendingShow
    renormalized: Optional[NormalizedShow]
    rejections: List[str] = field(default_factory=list)
    applied: bool = False

    @property
    def changed_fields(self) -> List[str]:
        if self.renormalized is None:
            return []
        before = self.pending.normalized_payload
        after = self.renormalized.payload()
        return sorted(key for key in after if before.get(key) != after[key])

    def format(self) -> str:
        def _dump(data: Dict[str, Any]) -> str:
            return json.dumps(data, indent=2, ensure_ascii=False, default=str)

        rule = "-" * 40
        lines = [
            f"Pending show {self.pending.id}",
            f"Source URL: {self.pending.source_url}",
            f"Status: {self.pending.status}",
        ]
        if self.pending.has_coordinates:
            lines.append(
                f"Coordinates: {self.pending.latitude}, {self.pending.longitude} ({self.pending.geocode_source})"
            )
        else:
            lines.append(f"Coordinates: none ({self.pending.geocode_attempts} geocode attempts)")
        lines += ["", "Raw payload:", rule, _dump(self.pending.raw_payload)]
        lines += ["", "Stored normalized payload:", rule, _dump(self.pending.normalized_payload)]
        if self.renormalized is None:
            lines += ["", "Re-normalized: every raw item was rejected"]
        else:
            lines += ["", "Re-normalized payload:", rule, _dump(self.renormalized.payload())]
            changed = self.changed_fields
            lines.append("Changed fields: " + (", ".join(changed) if changed else "none"))
        for reason in self.rejections:
            lines.append(f"- rejected item: {reason}")
        if self.applied:
            lines.append("Re-normalized payload written back.")
        return "\n".join(lines)


def _raw_items(raw_payload: Dict[str, Any]) -> List[Any]:
    items = raw_payload.get("items")
    if isinstance(items, list):
        return items
    # rows written before the {"items", "chunk_indexes"} envelope hold the item itself
    return [raw_payload] if raw_payload else []


def renormalize(
    pending: PendingShow,
    normalizer: Optional[ShowNormalizer] = None,
) -> InspectionReport:
    """Normalize every stored raw item again and merge them in stored order."""
    normalizer = normalizer or ShowNormalizer()
    merged: Optional[NormalizedShow] = None
    rejections: List[str] = []
    for index, item in enumerate(_raw_items(pending.raw_payload)):
        candidate = ExtractedCandidate(source_url=pending.source_url, raw_payload=item, chunk_index=index)
        try:
            show = normalizer.normalize(candidate)
        except CandidateRejected as exc:
            rejections.append(exc.reason)
            continue
        merged = show if merged is None else merge_shows(merged, show)
    return InspectionReport(pending=pending, renormalized=merged, rejections=rejections)


async def inspect_pending_show(
    show_id: UUID,
    *,
    apply: bool = False,
    normalizer: Optional[ShowNormalizer] = None,
) -> Optional[InspectionReport]:
    pending = await get_pending_show(show_id)
    if pending is None:
        logger.warning("pending_show_inspect_not_found", id=str(show_id))
        return None

    report = renormalize(pending, normalizer)
    logger.info(
        "pending_show_inspected",
        id=str(show_id),
        status=pending.status,
        changed_fields=report.changed_fields,
        rejected_items=len(report.rejections),
    )
    if apply and report.renormalized is not None and report.changed_fields:
        report.applied = await update_normalized_payload(show_id, report.renormalized)
    return report
