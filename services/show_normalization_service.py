"""
Show normalization - map raw AI show dicts onto NormalizedShow.

Nothing here guesses: unparseable dates stay empty, unparseable locations are
kept as raw text, unknown category hints are dropped. A candidate without a
name AND without a date carries no usable information and is rejected.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import urljoin, urlparse

from dateutil import parser as date_parser
from pydantic import ValidationError

from app.core.errors import CandidateRejected
from app.core.logging import get_logger
from app.core.us_states import CODE_TO_STATE, STATE_CODES, to_state_code
from app.models.pending_show import NormalizedShow
from app.models.show_extraction import ExtractedCandidate

logger = get_logger()

_HTML_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")

# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def _sanitize_null_bytes(text: str) -> str:
    # PostgreSQL TEXT/JSONB cannot hold NUL
    return text.replace("\x00", "")


def _strip_html(value: str) -> str:
    without_tags = _HTML_TAG_RE.sub(" ", value or "")
    return _WHITESPACE_RE.sub(" ", html.unescape(without_tags)).strip()


def _as_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, bool)):
        return None
    if isinstance(value, (int, float)):
        value = str(value)
    elif isinstance(value, (list, tuple)):
        value = ", ".join(str(v) for v in value if isinstance(v, (str, int, float)))
    if not isinstance(value, str):
        return None
    cleaned = _strip_html(_sanitize_null_bytes(value))
    if cleaned.lower() in ("", "null", "none", "n/a", "tbd", "tba", "unknown"):
        return None
    return cleaned


def _pick(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, "", [], {}):
            return value
    return None


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

_MONTH_NAMES = (
    r"jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?"
    r"|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?"
)
_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

_ISO_DATE_RE = re.compile(r"\b(?P<year>\d{4})-(?P<month>\d{1,2})-(?P<day>\d{1,2})(?=T|\b)")
# "T10:00:00", "T10:00:00.000Z", "T10:00-05:00"
_ISO_TIME_RE = re.compile(
    r"(?<=\d)T\d{1,2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}(?::?\d{2})?)?(?!\w)",
    re.IGNORECASE,
)
_NUMERIC_DATE_RE = re.compile(r"\b(?P<month>\d{1,2})/(?P<day>\d{1,2})(?:/(?P<year>\d{4}|\d{2}))?\b")
_MONTH_DAY_RE = re.compile(rf"\b(?P<month>{_MONTH_NAMES})\.?\s+(?P<day>\d{{1,2}})\b", re.IGNORECASE)
_DAY_MONTH_RE = re.compile(rf"\b(?P<day>\d{{1,2}})\s+(?P<month>{_MONTH_NAMES})\b", re.IGNORECASE)
_DAY_CONTINUATION_RE = re.compile(
    r"\s*(?:-|–|—|to|thru|through|&|and)\s*(?P<day>\d{1,2})\b(?!\s*(?:[:/]|am\b|pm\b))",
    re.IGNORECASE,
)
_DAY_RANGE_MONTH_RE = re.compile(
    rf"\b(?P<day>\d{{1,2}})\s*(?:-|–|—|to|thru|through|&|and)\s*(?P<end_day>\d{{1,2}})\s+(?P<month>{_MONTH_NAMES})\b",
    re.IGNORECASE,
)
_YEAR_RE = re.compile(r"\b(?:19|20)\d{2}\b")
# "March 5, 25"
_SHORT_YEAR_RE = re.compile(r"\s*,\s*'?(?P<year>\d{2})\s*$")
_ORDINAL_RE = re.compile(r"\b(\d{1,2})(?:st|nd|rd|th)\b", re.IGNORECASE)
_WEEKDAY_RE = re.compile(
    r"\b(?:mon|tue|tues|wed|thu|thur|thurs|fri|sat|sun)(?:day|sday|nesday|rsday|urday)?\b\.?,?",
    re.IGNORECASE,
)
_TIME_RE = re.compile(r"\b\d{1,2}(?::\d{2})?\s*(?:a\.?m\.?|p\.?m\.?)(?=\W|$)|\b\d{1,2}:\d{2}\b", re.IGNORECASE)
_TRAILING_STATE_CODE_RE = re.compile(r"[\s,]+(?:%s)\s*$" % "|".join(sorted(CODE_TO_STATE)))
_TRAILING_STATE_NAME_RE = re.compile(
    r"[\s,]+(?:%s)\s*$" % "|".join(sorted(STATE_CODES, key=len, reverse=True)),
    re.IGNORECASE,
)


def _clean_date_text(text: str) -> str:
    cleaned = _strip_html(text)
    cleaned = _ISO_TIME_RE.sub(" ", cleaned)
    cleaned = _TIME_RE.sub(" ", cleaned)
    cleaned = _ORDINAL_RE.sub(r"\1", cleaned)
    cleaned = _WEEKDAY_RE.sub(" ", cleaned)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip(" ,;@")
    cleaned = _TRAILING_STATE_CODE_RE.sub("", cleaned)
    cleaned = _TRAILING_STATE_NAME_RE.sub("", cleaned)
    return cleaned.strip(" ,;-")


def _infer_year(month: int, day: int, *, today: date, anchor: Optional[date]) -> date:
    if anchor is not None:
        resolved = date(anchor.year, month, day)
        if resolved < anchor:
            resolved = date(anchor.year + 1, month, day)
        return resolved
    year = today.year
    if month < today.month:
        year += 1
    return date(year, month, day)


def _build_date(
    month: int,
    day: int,
    year: Optional[int],
    *,
    today: date,
    anchor: Optional[date],
) -> Optional[date]:
    try:
        if year is not None:
            return date(year, month, day)
        return _infer_year(month, day, today=today, anchor=anchor)
    except ValueError:
        return None


def parse_date_text(
    text: Optional[str],
    *,
    today: date,
    anchor: Optional[date] = None,
) -> Tuple[Optional[date], Optional[date]]:
    """
    Parse free text holding one date or a date range.

    Returns (first, second); second is None when the text holds a single date.
    Dates without a year fall in the current year, or next year when their
    month has already passed (relative to `anchor` when given).
    """
    if not text:
        return None, None
    cleaned = _clean_date_text(str(text))
    if not cleaned:
        return None, None

    iso = list(_ISO_DATE_RE.finditer(cleaned))
    if iso:
        found = [
            _build_date(int(m["month"]), int(m["day"]), int(m["year"]), today=today, anchor=anchor)
            for m in iso[:2]
        ]
        return found[0], (found[1] if len(found) > 1 else None)

    numeric = list(_NUMERIC_DATE_RE.finditer(cleaned))
    if numeric:
        found = []
        for m in numeric[:2]:
            year = m["year"]
            year_int = None
            if year:
                year_int = int(year) + 2000 if len(year) == 2 else int(year)
            found.append(
                _build_date(int(m["month"]), int(m["day"]), year_int, today=today, anchor=anchor)
            )
        first = found[0]
        second = found[1] if len(found) > 1 else None
        if first and second and second < first and not numeric[1]["year"]:
            second = _build_date(second.month, second.day, None, today=today, anchor=first)
        return first, second

    parts: List[Tuple[int, int]] = []
    tail = 0
    matches = list(_MONTH_DAY_RE.finditer(cleaned))
    if matches:
        for m in matches[:2]:
            parts.append((_MONTHS[m["month"][:3].lower()], int(m["day"])))
            tail = m.end()
        if len(parts) == 1:
            cont = _DAY_CONTINUATION_RE.match(cleaned, tail)
            if cont:
                parts.append((parts[0][0], int(cont["day"])))
                tail = cont.end()
    else:
        day_range = _DAY_RANGE_MONTH_RE.search(cleaned)
        if day_range:
            month = _MONTHS[day_range["month"][:3].lower()]
            parts = [(month, int(day_range["day"])), (month, int(day_range["end_day"]))]
            tail = day_range.end()
        else:
            for m in list(_DAY_MONTH_RE.finditer(cleaned))[:2]:
                parts.append((_MONTHS[m["month"][:3].lower()], int(m["day"])))
                tail = m.end()

    if parts:
        years = [int(y) for y in _YEAR_RE.findall(cleaned)]
        if not years:
            short_year = _SHORT_YEAR_RE.match(cleaned, tail)
            if short_year:
                years = [2000 + int(short_year["year"])]
        first_year = years[0] if years else None
        second_year = years[1] if len(years) > 1 else first_year

        first = _build_date(*parts[0], first_year, today=today, anchor=anchor)
        second = None
        if len(parts) > 1:
            if first_year is None:
                second = _build_date(*parts[1], None, today=today, anchor=first or anchor)
            else:
                second = _build_date(*parts[1], second_year, today=today, anchor=anchor)
                if first and second and second < first and len(years) == 1:
                    # "Dec 30 - Jan 2, 2026": the single year belongs to the end
                    first = _build_date(*parts[0], first_year - 1, today=today, anchor=anchor)
        return first, second

    # Fallback for other orderings; require something that looks like a day
    without_years = _YEAR_RE.sub(" ", cleaned)
    if not re.search(r"\b\d{1,2}\b", without_years):
        return None, None
    try:
        parsed = date_parser.parse(cleaned, default=datetime(today.year, 1, 1))
    except (ValueError, OverflowError):
        return None, None
    if _YEAR_RE.search(cleaned):
        return parsed.date(), None
    return _build_date(parsed.month, parsed.day, None, today=today, anchor=anchor), None


def normalize_dates(
    start_raw: Any,
    end_raw: Any,
    *,
    today: date,
) -> Tuple[Optional[date], Optional[date]]:
    """
    Resolve ISO start/end. A single date yields start == end; an end before
    the start collapses onto the start.
    """
    start, end = parse_date_text(_as_text(start_raw), today=today)
    end_text = _as_text(end_raw)
    if end_text:
        end_first, end_second = parse_date_text(end_text, today=today, anchor=start)
        end = end_second or end_first or end
    if start is None and end is not None:
        start = end
    if start is not None and (end is None or end < start):
        end = start
    return start, end


# ---------------------------------------------------------------------------
# Location
# ---------------------------------------------------------------------------

_ZIP_RE = re.compile(r"\b\d{5}(?:-\d{4})?\b")
_STREET_START_RE = re.compile(r"^\d")


@dataclass(frozen=True)
class LocationParts:
    venue_name: Optional[str]
    address: Optional[str]
    city: str
    state: str
    zip_code: Optional[str]


def _split_trailing_state(segment: str) -> Optional[Tuple[str, str]]:
    words = segment.split()
    for n in (2, 1):
        if len(words) <= n:
            continue
        tail = " ".join(words[-n:])
        bare = tail.replace(".", "")
        # lower-case two-letter words ("in", "or", "me") are not state codes
        if len(bare) == 2 and not bare.isupper():
            continue
        code = to_state_code(tail)
        if code:
            return " ".join(words[:-n]), code
    return None


def split_location(text: Optional[str]) -> Optional[LocationParts]:
    """
    Split 'Venue, 123 Main St, Springfield, IL 62701' into parts.

    Returns None unless there are at least two comma-separated parts and the
    last one ends in a recognizable US state.
    """
    if not text:
        return None
    parts = [p.strip() for p in text.split(",") if p.strip()]
    if len(parts) < 2:
        return None

    zip_code: Optional[str] = None
    last = parts[-1]
    zip_match = _ZIP_RE.search(last)
    if zip_match:
        zip_code = zip_match.group(0)
        last = (last[: zip_match.start()] + last[zip_match.end():]).strip()
        if not last:
            parts = parts[:-1]
            if len(parts) < 2:
                return None
            last = parts[-1]

    rest = parts[:-1]
    state = to_state_code(last)
    if state:
        city = rest.pop()
    else:
        trailing = _split_trailing_state(last)
        if not trailing:
            return None
        city, state = trailing

    city = city.strip()
    if not city or _STREET_START_RE.match(city):
        return None

    venue_name: Optional[str] = None
    address: Optional[str] = None
    if rest:
        if _STREET_START_RE.match(rest[0]):
            address = ", ".join(rest)
        else:
            venue_name = rest[0]
            address = ", ".join(rest[1:]) or None

    return LocationParts(
        venue_name=venue_name,
        address=address,
        city=city,
        state=state,
        zip_code=zip_code,
    )


# ---------------------------------------------------------------------------
# Entry fee, hours, contact
# ---------------------------------------------------------------------------

_DOLLAR_AMOUNT_RE = re.compile(r"\$\s*(\d+(?:\.\d{1,2})?)")
_BARE_AMOUNT_RE = re.compile(r"^\s*(\d+(?:\.\d{1,2})?)\s*(?:usd|dollars?)?\s*$", re.IGNORECASE)
_AMOUNT_WITH_UNIT_RE = re.compile(r"\b(\d+(?:\.\d{1,2})?)\s*(?:usd|dollars?)\b", re.IGNORECASE)


def parse_entry_fee(value: Any) -> Tuple[Optional[float], Optional[str]]:
    """
    Returns (amount, original_text). 'Free' and anything without a clear
    amount give amount None.
    """
    if isinstance(value, bool):
        return None, None
    if isinstance(value, (int, float)):
        return (float(value) if value > 0 else None), str(value)
    text = _as_text(value)
    if not text:
        return None, None
    for pattern in (_DOLLAR_AMOUNT_RE, _BARE_AMOUNT_RE, _AMOUNT_WITH_UNIT_RE):
        match = pattern.search(text)
        if match:
            amount = float(match.group(1))
            return (amount if amount > 0 else None), text
    return None, text


_HOURS_RE = re.compile(
    r"\b(?P<h1>\d{1,2})(?::(?P<m1>\d{2}))?\s*(?P<ap1>a\.?m\.?|p\.?m\.?)?"
    r"\s*(?:-|–|—|to|until|till)\s*"
    r"(?P<h2>\d{1,2})(?::(?P<m2>\d{2}))?\s*(?P<ap2>a\.?m\.?|p\.?m\.?)",
    re.IGNORECASE,
)


def _to_24h(hour: int, meridiem: Optional[str]) -> int:
    if not meridiem:
        return hour
    is_pm = meridiem.lower().startswith("p")
    if hour == 12:
        return 12 if is_pm else 0
    return hour + 12 if is_pm else hour


def parse_show_hours(text: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """'9am - 3pm' -> ('09:00', '15:00'). No match -> (None, None)."""
    if not text:
        return None, None
    match = _HOURS_RE.search(text)
    if not match:
        return None, None
    h1, h2 = int(match["h1"]), int(match["h2"])
    if h1 > 12 or h2 > 12:
        return None, None
    m1, m2 = int(match["m1"] or 0), int(match["m2"] or 0)
    end_h = _to_24h(h2, match["ap2"])
    start_h = _to_24h(h1, match["ap1"] or match["ap2"])
    if not match["ap1"] and start_h > end_h:
        # "9-3pm": the start is in the morning
        start_h = _to_24h(h1, "am")
    return f"{start_h:02d}:{m1:02d}", f"{end_h:02d}:{m2:02d}"


_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_PHONE_RE = re.compile(r"(?:\+?1[-\s.]?)?(?:\(\d{3}\)|\d{3})[-\s.]?\d{3}[-\s.]\d{4}")
_CONTACT_LABEL_RE = re.compile(
    r"^(?:contact|call|phone|tel|email|e-mail)\b\s*:?\s*|\s*\b(?:at|call|phone|tel|email|e-mail)\s*:?\s*$",
    re.IGNORECASE,
)


def split_contact(text: Optional[str]) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """Returns (name, phone, email) from a combined contact string."""
    if not text:
        return None, None, None
    email_match = _EMAIL_RE.search(text)
    phone_match = _PHONE_RE.search(text)
    email = email_match.group(0) if email_match else None
    phone = phone_match.group(0).strip() if phone_match else None

    cut_points = [m.start() for m in (email_match, phone_match) if m]
    name_part = text[: min(cut_points)] if cut_points else text
    name = _CONTACT_LABEL_RE.sub("", name_part.strip(" ,;:-|()")).strip(" ,;:-|()")
    if len(name) <= 1:
        name = None
    return name, phone, email


# ---------------------------------------------------------------------------
# Controlled vocabularies
# ---------------------------------------------------------------------------

_CATEGORY_SYNONYMS: Dict[str, str] = {
    "sports cards": "Sports Cards",
    "sports card": "Sports Cards",
    "baseball cards": "Sports Cards",
    "football cards": "Sports Cards",
    "basketball cards": "Sports Cards",
    "hockey cards": "Sports Cards",
    "pokemon": "Pokemon",
    "pokémon": "Pokemon",
    "magic: the gathering": "Magic: The Gathering",
    "magic the gathering": "Magic: The Gathering",
    "mtg": "Magic: The Gathering",
    "yu-gi-oh": "Yu-Gi-Oh",
    "yu-gi-oh!": "Yu-Gi-Oh",
    "yugioh": "Yu-Gi-Oh",
    "comics": "Comics",
    "comic books": "Comics",
    "memorabilia": "Memorabilia",
    "sports memorabilia": "Memorabilia",
    "vintage": "Vintage",
    "vintage cards": "Vintage",
    "other": "Other",
}

_FEATURE_SYNONYMS: Dict[str, str] = {
    "on-site grading": "On-site Grading",
    "onsite grading": "On-site Grading",
    "on site grading": "On-site Grading",
    "grading": "On-site Grading",
    "autograph guests": "Autograph Guests",
    "autograph guest": "Autograph Guests",
    "autographs": "Autograph Guests",
    "autograph signings": "Autograph Guests",
    "food vendors": "Food Vendors",
    "food vendor": "Food Vendors",
    "concessions": "Food Vendors",
    "door prizes": "Door Prizes",
    "door prize": "Door Prizes",
    "auction": "Auction",
    "live auction": "Auction",
    "card breakers": "Card Breakers",
    "card breaks": "Card Breakers",
    "box breaks": "Card Breakers",
}

# Phrases specific enough to trust when found in free text (name/description).
_TEXT_CATEGORY_PHRASES = (
    "pokemon", "pokémon", "magic: the gathering", "magic the gathering", "yu-gi-oh",
    "yugioh", "sports cards", "baseball cards", "football cards", "basketball cards",
    "hockey cards", "comic books", "sports memorabilia", "vintage cards",
)
_TEXT_FEATURE_PHRASES = (
    "on-site grading", "onsite grading", "autograph guests", "autograph signings",
    "food vendors", "door prizes", "live auction", "card breaks", "box breaks",
)


def _iter_hints(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield from (part.strip() for part in re.split(r"[,;/|]", value))
    elif isinstance(value, (list, tuple)):
        for item in value:
            if isinstance(item, str):
                yield item.strip()


def _map_vocabulary(
    hints: Any,
    texts: Iterable[Optional[str]],
    synonyms: Mapping[str, str],
    text_phrases: Iterable[str],
) -> List[str]:
    found: List[str] = []

    def _add(value: str) -> None:
        if value not in found:
            found.append(value)

    for hint in _iter_hints(hints):
        mapped = synonyms.get(hint.lower())
        if mapped:
            _add(mapped)

    haystack = " ".join(t.lower() for t in texts if t)
    if haystack:
        for phrase in text_phrases:
            if re.search(rf"(?<![\w-]){re.escape(phrase)}(?![\w-])", haystack):
                _add(synonyms[phrase])
    return found


def map_categories(hints: Any, *texts: Optional[str]) -> List[str]:
    return _map_vocabulary(hints, texts, _CATEGORY_SYNONYMS, _TEXT_CATEGORY_PHRASES)


def map_features(hints: Any, *texts: Optional[str]) -> List[str]:
    return _map_vocabulary(hints, texts, _FEATURE_SYNONYMS, _TEXT_FEATURE_PHRASES)


# ---------------------------------------------------------------------------
# URL
# ---------------------------------------------------------------------------


def _normalize_show_url(value: Any, source_url: str) -> Optional[str]:
    text = _as_text(value)
    if not text or any(ch.isspace() for ch in text):
        return source_url
    absolute = urljoin(source_url, text)
    if urlparse(absolute).scheme not in ("http", "https"):
        return source_url
    return absolute


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class ShowNormalizer:
    def __init__(self, *, today: Optional[Callable[[], date]] = None) -> None:
        self._today = today or date.today

    def normalize(self, candidate: ExtractedCandidate) -> NormalizedShow:
        payload = candidate.raw_payload
        if not isinstance(payload, Mapping):
            raise CandidateRejected("payload is not an object", source_url=candidate.source_url)

        today = self._today()
        name = _as_text(_pick(payload, "name", "title", "showName", "show_name"))
        start_date, end_date = normalize_dates(
            _pick(payload, "startDate", "start_date", "date", "dates"),
            _pick(payload, "endDate", "end_date"),
            today=today,
        )
        if not name and start_date is None:
            raise CandidateRejected("missing both name and date", source_url=candidate.source_url)

        description = _as_text(_pick(payload, "description", "details", "notes"))

        venue_name = _as_text(_pick(payload, "venueName", "venue_name", "venue"))
        address = _as_text(_pick(payload, "address", "venueAddress", "venue_address", "streetAddress"))
        city = _as_text(_pick(payload, "city"))
        raw_state = _as_text(_pick(payload, "state"))
        state = to_state_code(raw_state)
        zip_code = _as_text(_pick(payload, "zipCode", "zip_code", "zip", "postalCode"))
        if zip_code:
            zip_match = _ZIP_RE.search(zip_code)
            zip_code = zip_match.group(0) if zip_match else None
        location_text: Optional[str] = None

        combined = _as_text(_pick(payload, "location", "locationText", "location_text"))
        for raw_location in (address if address and "," in address else None, combined):
            if not raw_location:
                continue
            parts = split_location(raw_location)
            if parts is None:
                location_text = location_text or raw_location
                continue
            if raw_location == address:
                address = parts.address
            else:
                address = address or parts.address
            venue_name = venue_name or parts.venue_name
            city = city or parts.city
            state = state or parts.state
            zip_code = zip_code or parts.zip_code

        if raw_state and not state:
            location_text = location_text or ", ".join(p for p in (venue_name, address, city, raw_state) if p)

        fee_value = _pick(payload, "entryFee", "entry_fee", "admission", "fee", "price")
        entry_fee, entry_fee_text = parse_entry_fee(fee_value)

        show_hours = _as_text(_pick(payload, "showHours", "show_hours", "hours", "time", "times"))
        start_time, end_time = parse_show_hours(show_hours)
        if start_time is None:
            start_time, end_time = parse_show_hours(description)

        contact_name = _as_text(_pick(payload, "contactName", "contact_name"))
        contact_phone = _as_text(_pick(payload, "contactPhone", "contact_phone", "phone"))
        contact_email = _as_text(_pick(payload, "contactEmail", "contact_email", "email"))
        combined_contact = _as_text(_pick(payload, "contact", "contactInfo", "contact_info"))
        if combined_contact:
            c_name, c_phone, c_email = split_contact(combined_contact)
            contact_name = contact_name or c_name
            contact_phone = contact_phone or c_phone
            contact_email = contact_email or c_email

        try:
            return NormalizedShow(
                source_url=candidate.source_url,
                name=name,
                description=description,
                url=_normalize_show_url(_pick(payload, "url", "link", "showUrl", "website"), candidate.source_url),
                start_date=start_date,
                end_date=end_date,
                start_time=start_time,
                end_time=end_time,
                show_hours=show_hours,
                venue_name=venue_name,
                address=address,
                city=city,
                state=state,
                zip_code=zip_code,
                location_text=location_text,
                entry_fee=entry_fee,
                entry_fee_text=entry_fee_text,
                categories=map_categories(_pick(payload, "categories", "category"), name, description),
                features=map_features(_pick(payload, "features", "amenities"), name, description),
                contact_name=contact_name,
                contact_phone=contact_phone,
                contact_email=contact_email,
            )
        except ValidationError as exc:
            raise CandidateRejected(
                f"invalid normalized show: {exc.errors()[0].get('msg')}",
                source_url=candidate.source_url,
            ) from exc
