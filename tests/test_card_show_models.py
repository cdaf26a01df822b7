from __future__ import annotations

from datetime import date
from uuid import uuid4

import pytest
from pydantic import ValidationError

from app.core.us_states import to_state_code
from app.models.crawl_config import SPORTS_COLLECTORS_DIGEST_HINT, CrawlConfig
from app.models.pending_show import NormalizedShow, PendingShow
from app.models.scraping_source import ScrapingSource

URL = "https://cardshows.example.com/calendar"


def test_prompt_hint_matches_domain_and_subdomains():
    config = CrawlConfig()
    assert config.prompt_hint_for("https://sportscollectorsdigest.com/show-calendar") == SPORTS_COLLECTORS_DIGEST_HINT
    assert config.prompt_hint_for("https://www.sportscollectorsdigest.com/shows") == SPORTS_COLLECTORS_DIGEST_HINT
    assert config.prompt_hint_for("https://notsportscollectorsdigest.com/") is None


def test_crawl_config_rejects_tiny_chunks():
    with pytest.raises(ValidationError):
        CrawlConfig(chunk_max_bytes=100)


def test_to_state_code():
    assert to_state_code("il") == "IL"
    assert to_state_code("Illinois") == "IL"
    assert to_state_code("District of Columbia") == "DC"
    assert to_state_code("Ontario") is None
    assert to_state_code(None) is None


def test_normalized_show_validates_state_and_vocabulary():
    assert NormalizedShow(source_url=URL, name="A", state="nv").state == "NV"
    with pytest.raises(ValidationError):
        NormalizedShow(source_url=URL, name="A", state="Nevada")
    with pytest.raises(ValidationError):
        NormalizedShow(source_url=URL, name="A", categories=["Stamps"])
    with pytest.raises(ValidationError):
        NormalizedShow(source_url=URL, name="A", entry_fee=-1)


def test_geocode_query_prefers_full_address():
    show = NormalizedShow(
        source_url=URL,
        name="A",
        address="123 Main St",
        city="Springfield",
        state="IL",
        zip_code="62701",
    )
    assert show.geocode_query() == "123 Main St, Springfield, IL 62701"
    assert NormalizedShow(source_url=URL, name="A", city="Reno", state="NV").geocode_query() == "Reno, NV"
    assert NormalizedShow(source_url=URL, name="A").geocode_query() is None


def test_pending_show_from_row_decodes_json_and_coordinates():
    pending = PendingShow.from_row(
        {
            "id": uuid4(),
            "source_url": URL,
            "raw_payload": '{"items": []}',
            "normalized_payload": '{"source_url": "%s", "name": "A", "start_date": "2025-03-05"}' % URL,
            "status": "pending",
            "latitude": 39.5,
            "longitude": -119.8,
            "geocode_source": "centroid",
        }
    )
    assert pending.status == "PENDING"
    show = pending.normalized()
    assert show.start_date == date(2025, 3, 5)
    assert show.coordinates.source == "centroid"


def test_scraping_source_requires_http_url():
    assert ScrapingSource(url="https://www.example.com/shows").domain == "example.com"
    with pytest.raises(ValidationError):
        ScrapingSource(url="example.com/shows")
