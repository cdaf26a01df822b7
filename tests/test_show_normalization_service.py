from __future__ import annotations

from datetime import date

import pytest

from app.core.errors import CandidateRejected
from app.models.show_extraction import ExtractedCandidate
from services.show_normalization_service import (
    ShowNormalizer,
    map_categories,
    map_features,
    normalize_dates,
    parse_date_text,
    parse_entry_fee,
    parse_show_hours,
    split_contact,
    split_location,
)

URL = "https://cardshows.example.com/calendar"
TODAY = date(2025, 1, 15)


def _normalize(payload):
    normalizer = ShowNormalizer(today=lambda: TODAY)
    return normalizer.normalize(ExtractedCandidate(source_url=URL, raw_payload=payload, chunk_index=0))


def test_single_date_sets_start_and_end():
    start, end = normalize_dates("March 5, 2025", None, today=TODAY)
    assert start == date(2025, 3, 5)
    assert end == date(2025, 3, 5)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("March 5-7, 2025", (date(2025, 3, 5), date(2025, 3, 7))),
        ("Sat. March 8th, 2025 9am-3pm", (date(2025, 3, 8), None)),
        ("2025-04-12", (date(2025, 4, 12), None)),
        ("4/12/2025", (date(2025, 4, 12), None)),
        ("Dec 30 - Jan 2, 2026", (date(2025, 12, 30), date(2026, 1, 2))),
        ("2025-03-05T10:00:00", (date(2025, 3, 5), None)),
        ("2025-03-05T10:00:00-05:00", (date(2025, 3, 5), None)),
        ("2025-03-05T09:00:00Z - 2025-03-06T17:00:00Z", (date(2025, 3, 5), date(2025, 3, 6))),
        ("5-6 March 2025", (date(2025, 3, 5), date(2025, 3, 6))),
        ("March 5, 25", (date(2025, 3, 5), None)),
        ("March 5 & 6", (date(2025, 3, 5), date(2025, 3, 6))),
    ],
)
def test_parse_date_text(text, expected):
    assert parse_date_text(text, today=TODAY) == expected


def test_normalize_accepts_iso_datetimes():
    show = _normalize({"name": "Spring Card Expo", "startDate": "2025-03-05T10:00:00", "endDate": "2025-03-06T16:00:00"})
    assert show.start_date == date(2025, 3, 5)
    assert show.end_date == date(2025, 3, 6)


def test_dates_without_year_roll_forward():
    assert parse_date_text("June 7", today=TODAY)[0] == date(2025, 6, 7)
    assert parse_date_text("Jan 10", today=date(2025, 3, 1))[0] == date(2026, 1, 10)


def test_unparseable_date_stays_empty():
    assert parse_date_text("Every weekend", today=TODAY) == (None, None)


def test_end_before_start_collapses_to_start():
    start, end = normalize_dates("2025-05-10", "2025-05-01", today=TODAY)
    assert start == end == date(2025, 5, 10)


def test_split_location_full_address():
    parts = split_location("Holiday Inn, 123 Main St, Springfield, IL 62701")
    assert parts is not None
    assert parts.venue_name == "Holiday Inn"
    assert parts.address == "123 Main St"
    assert parts.city == "Springfield"
    assert parts.state == "IL"
    assert parts.zip_code == "62701"


def test_split_location_city_state_name():
    parts = split_location("Springfield, Illinois")
    assert parts is not None
    assert (parts.city, parts.state, parts.venue_name, parts.address) == ("Springfield", "IL", None, None)


def test_split_location_unrecognized_is_none():
    assert split_location("Springfield IL") is None
    assert split_location("Fairgrounds, Somewhere") is None


def test_parse_entry_fee():
    assert parse_entry_fee("$5") == (5.0, "$5")
    assert parse_entry_fee("Free") == (None, "Free")
    assert parse_entry_fee("$3 adults / kids free") == (3.0, "$3 adults / kids free")
    assert parse_entry_fee(7) == (7.0, "7")
    assert parse_entry_fee(None) == (None, None)


def test_parse_show_hours():
    assert parse_show_hours("9am - 3pm") == ("09:00", "15:00")
    assert parse_show_hours("10:30 AM to 4 PM") == ("10:30", "16:00")
    assert parse_show_hours("9-3pm") == ("09:00", "15:00")
    assert parse_show_hours("all day") == (None, None)


def test_split_contact():
    assert split_contact("John Smith 555-123-4567 john@example.com") == (
        "John Smith",
        "555-123-4567",
        "john@example.com",
    )
    assert split_contact("call (555) 987-6543") == (None, "(555) 987-6543", None)


def test_vocabulary_mapping_drops_unknown_hints():
    assert map_categories(["Sports Cards", "pokemon", "stamps"]) == ["Sports Cards", "Pokemon"]
    assert map_categories("MTG; comics") == ["Magic: The Gathering", "Comics"]
    assert map_features(None, "Free admission, door prizes and on-site grading!") == [
        "On-site Grading",
        "Door Prizes",
    ]


def test_normalize_full_listing():
    show = _normalize(
        {
            "name": "Spring Card Show",
            "startDate": "March 5, 2025",
            "location": "Holiday Inn, 123 Main St, Springfield, IL 62701",
            "entryFee": "$5",
            "showHours": "9am-3pm",
            "categories": ["Sports Cards", "pokemon", "stamps"],
            "contact": "Jane Doe jane@example.com",
            "url": "/shows/spring",
        }
    )
    assert show.name == "Spring Card Show"
    assert show.start_date == show.end_date == date(2025, 3, 5)
    assert (show.venue_name, show.address, show.city, show.state, show.zip_code) == (
        "Holiday Inn",
        "123 Main St",
        "Springfield",
        "IL",
        "62701",
    )
    assert show.entry_fee == 5.0
    assert (show.start_time, show.end_time) == ("09:00", "15:00")
    assert show.categories == ["Sports Cards", "Pokemon"]
    assert show.contact_name == "Jane Doe"
    assert show.contact_email == "jane@example.com"
    assert show.url == "https://cardshows.example.com/shows/spring"
    assert show.geocode_query() == "123 Main St, Springfield, IL 62701"


def test_normalize_keeps_unparseable_location_as_text():
    show = _normalize({"name": "Mystery Show", "startDate": "2025-06-01", "location": "The old barn by the lake"})
    assert show.city is None
    assert show.state is None
    assert show.location_text == "The old barn by the lake"
    assert show.url == URL


def test_normalize_free_entry():
    show = _normalize({"name": "Free Show", "startDate": "2025-06-01", "entryFee": "Free"})
    assert show.entry_fee is None
    assert show.entry_fee_text == "Free"


def test_name_only_and_date_only_candidates_are_kept():
    assert _normalize({"name": "Undated Show"}).start_date is None
    assert _normalize({"startDate": "2025-06-01", "city": "Reno", "state": "NV"}).name is None


def test_candidate_without_name_and_date_is_rejected():
    with pytest.raises(CandidateRejected, match="missing both name and date"):
        _normalize({"description": "Great show, tons of dealers", "city": "Reno"})


def test_candidate_with_placeholder_values_is_rejected():
    with pytest.raises(CandidateRejected):
        _normalize({"name": "TBD", "startDate": "TBA"})
