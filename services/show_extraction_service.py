from __future__ import annotations

import json
import re
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple

from app.core.errors import ExtractionError, MalformedJSONError
from app.core.logging import get_logger
from app.core.retry import RetryPolicy
from app.models.pending_show import CARD_CATEGORIES, SHOW_FEATURES
from app.models.show_extraction import ExtractedCandidate, RawChunk
from services.openai_service import OpenAIService

logger = get_logger()

SHOW_KEYS = (
    "name",
    "startDate",
    "endDate",
    "venueName",
    "address",
    "city",
    "state",
    "zipCode",
    "entryFee",
    "description",
    "url",
    "categories",
    "features",
    "showHours",
    "contactName",
    "contactPhone",
    "contactEmail",
)

_WRAPPER_KEYS = ("shows", "events", "results", "data")
_CODE_FENCE_RE = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*\n?|\n?\s*```\s*$")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def _build_system_prompt(today: date) -> str:
    keys = ", ".join(SHOW_KEYS)
    return (
        "You extract trading card show listings from raw HTML snippets of event calendars.\n"
        f"TODAY is {today.isoformat()}. Listings without a year refer to the next upcoming "
        "occurrence of that date.\n"
        "Return ONLY a JSON array. No prose, no markdown, no code fences. "
        "Each element is one show object with these keys (omit or use null when unknown):\n"
        f"{keys}\n"
        "Field rules:\n"
        "- name: the show's title exactly as listed.\n"
        "- startDate / endDate: dates as written on the page (e.g. 'March 5, 2025' or "
        "'3/5/2025'). For multi-day shows give both; for single-day shows give startDate only.\n"
        "- venueName, address, city, state, zipCode: copy what the page shows; do not invent "
        "missing parts. state is the US state (name or 2-letter code).\n"
        "- entryFee: admission as written ('$5', 'Free', '$3 adults / kids free').\n"
        "- showHours: opening hours as written ('9am-3pm').\n"
        f"- categories: any of {', '.join(CARD_CATEGORIES)} that the listing clearly mentions.\n"
        f"- features: any of {', '.join(SHOW_FEATURES)} that the listing clearly mentions.\n"
        "- url: the listing's own link if present.\n"
        "Ignore navigation, ads, past-results pages and non-show content. "
        "If the snippet contains no card shows, return []."
    )


def _build_user_prompt(chunk: RawChunk, source_hint: Optional[str]) -> str:
    parts = [f"Source URL: {chunk.source_url}", f"Chunk: {chunk.sequence_index}"]
    if source_hint:
        parts.append(f"Source notes: {source_hint}")
    parts.append("HTML snippet:")
    parts.append(chunk.html_fragment.strip())
    return "\n".join(parts) + "\n"


def strip_code_fences(text: str) -> str:
    """Remove a leading ```json fence and trailing ``` fence if present."""
    return _CODE_FENCE_RE.sub("", text or "").strip()


def _remove_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA_RE.sub(r"\1", text)


def _decode_leading_json(body: str) -> Tuple[Any, int]:
    decoder = json.JSONDecoder()
    try:
        return decoder.raw_decode(body)
    except json.JSONDecodeError:
        # trailing commas are only touched when the text as given does not decode
        return decoder.raw_decode(_remove_trailing_commas(body))


def _items_from_decoded(data: Any) -> List[Dict[str, Any]]:
    if isinstance(data, list):
        items = data
    elif isinstance(data, dict):
        items = None
        for key in _WRAPPER_KEYS:
            if isinstance(data.get(key), list):
                items = data[key]
                break
        if items is None:
            # a lone show object
            items = [data] if data else []
    else:
        raise MalformedJSONError(f"unexpected JSON type: {type(data).__name__}")

    return [item for item in items if isinstance(item, dict) and item]


def _salvage_array_objects(text: str, array_start: int) -> List[Dict[str, Any]]:
    """
    Collect every complete top-level object of a truncated JSON array.
    """
    found: List[Dict[str, Any]] = []
    depth = 0
    in_string = False
    escaped = False
    obj_start: Optional[int] = None

    for idx in range(array_start, len(text)):
        ch = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch in "[{":
            depth += 1
            if ch == "{" and depth == 2:
                obj_start = idx
        elif ch in "]}":
            if ch == "}" and depth == 2 and obj_start is not None:
                try:
                    obj, _end = _decode_leading_json(text[obj_start : idx + 1])
                except json.JSONDecodeError:
                    obj = None
                if isinstance(obj, dict) and obj:
                    found.append(obj)
                obj_start = None
            depth -= 1
            if depth <= 0:
                break
    return found


def parse_show_payload(raw_text: str) -> List[Dict[str, Any]]:
    """
    Turn an AI response into a list of show dicts.

    Accepts fenced or bare JSON, an array, an object wrapping an array, or a
    single object. Truncated arrays are salvaged up to the last complete
    element. `[]` is a valid, empty result.
    """
    text = strip_code_fences(raw_text)
    if not text:
        raise ExtractionError("empty AI response", kind="empty_response", retryable=False)

    starts = [pos for pos in (text.find("["), text.find("{")) if pos >= 0]
    if not starts:
        raise MalformedJSONError("no JSON found in AI response", raw_text=raw_text)
    body = text[min(starts):]

    try:
        data, _end = _decode_leading_json(body)
    except json.JSONDecodeError as exc:
        array_start = body.find("[")
        salvaged = _salvage_array_objects(body, array_start) if array_start >= 0 else []
        if not salvaged:
            raise MalformedJSONError(f"unparseable AI JSON: {exc.msg}", raw_text=raw_text) from exc
        logger.warning(
            "show_extraction_json_salvaged",
            salvaged_items=len(salvaged),
            error=exc.msg,
        )
        return salvaged

    return _items_from_decoded(data)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ExtractionError) and exc.retryable


class ShowExtractionService:
    """
    One AI call (plus policy-driven retries) per chunk.

    Chunks are independent: a failed or timed-out chunk raises ExtractionError
    with its source URL and index and affects nothing else.
    """

    def __init__(
        self,
        *,
        model: Optional[str] = None,
        openai_client: Optional[OpenAIService] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_s: float = 20.0,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self._openai = openai_client or OpenAIService(model=model, timeout_s=timeout_s)
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay_s=5.0)
        self.timeout_s = timeout_s
        self._today = today or date.today

    def build_prompts(self, chunk: RawChunk, source_hint: Optional[str] = None) -> tuple[str, str]:
        return _build_system_prompt(self._today()), _build_user_prompt(chunk, source_hint)

    async def extract(
        self,
        chunk: RawChunk,
        source_hint: Optional[str] = None,
    ) -> List[ExtractedCandidate]:
        if not chunk.html_fragment or not chunk.html_fragment.strip():
            return []

        system_prompt, user_prompt = self.build_prompts(chunk, source_hint)

        def _on_retry(attempt: int, exc: BaseException, delay: float) -> None:
            logger.debug(
                "show_extraction_retry",
                source_url=chunk.source_url,
                chunk_index=chunk.sequence_index,
                attempt=attempt,
                error=str(exc),
                delay_s=round(delay, 2),
            )

        try:
            result = await self.retry_policy.run(
                lambda: self._openai.complete(system_prompt, user_prompt, timeout_s=self.timeout_s),
                retry_if=_is_retryable,
                on_retry=_on_retry,
            )
            items = parse_show_payload(result.text)
        except ExtractionError as exc:
            raise exc.with_context(source_url=chunk.source_url, chunk_index=chunk.sequence_index)

        logger.debug(
            "show_extraction_chunk_done",
            source_url=chunk.source_url,
            chunk_index=chunk.sequence_index,
            candidates=len(items),
        )
        return [
            ExtractedCandidate(
                source_url=chunk.source_url,
                raw_payload=item,
                chunk_index=chunk.sequence_index,
            )
            for item in items
        ]
