from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, List, Optional
from uuid import uuid4

import pytest

from app.core.errors import ExtractionError, FetchError
from app.core.retry import RetryPolicy
from app.models.crawl_config import CrawlConfig
from app.models.scraping_source import ScrapingSource
from app.models.show_extraction import ExtractedCandidate, RawChunk
from services import crawl_orchestrator, pending_show_service
from services.crawl_orchestrator import STAGE_SKIPPED, CrawlOrchestrator
from services.page_fetcher_service import FetchedPage
from services.pending_show_service import PERSIST_INSERTED, PersistResult

GOOD = "https://good.example.com/shows"
BROKEN = "https://broken.example.com/shows"
DISABLED = "https://disabled.example.com/shows"


def _page_html(listings: int) -> str:
    return "".join(f"<div class='show'>Listing {i} - Spring Card Show</div>\n" * 12 for i in range(listings))


class FakeFetcher:
    def __init__(self, pages: Dict[str, str], failures: Optional[Dict[str, str]] = None) -> None:
        self.pages = pages
        self.failures = failures or {}
        self.fetched: List[str] = []

    async def fetch(self, url: str) -> FetchedPage:
        self.fetched.append(url)
        if url in self.failures:
            raise FetchError(url, self.failures[url])
        return FetchedPage(url=url, final_url=url, status_code=200, html=self.pages[url])


class FakeExtractor:
    """Per-chunk behaviour: a list of dicts, an exception, or 'hang'."""

    def __init__(self, behaviour) -> None:
        self.behaviour = behaviour
        self.seen: List[int] = []

    async def extract(self, chunk: RawChunk, source_hint=None) -> List[ExtractedCandidate]:
        self.seen.append(chunk.sequence_index)
        outcome = self.behaviour(chunk)
        if outcome == "hang":
            await asyncio.sleep(60)
        if isinstance(outcome, BaseException):
            raise outcome
        return [
            ExtractedCandidate(source_url=chunk.source_url, raw_payload=item, chunk_index=chunk.sequence_index)
            for item in outcome
        ]


def _config(**kwargs) -> CrawlConfig:
    options = dict(
        chunk_max_bytes=512,
        geocoding_enabled=False,
        extract_timeout_s=0.05,
        extract_retry=RetryPolicy(max_attempts=1, backoff_mode="none", max_delay_s=0.0, jitter=0.0),
        min_html_bytes=0,
    )
    options.update(kwargs)
    return CrawlConfig(**options)


@pytest.fixture
def recorded(monkeypatch):
    calls = {"health": [], "persisted": [], "listed": []}

    async def fake_list_enabled_sources(limit=None, state=None):
        calls["listed"].append({"limit": limit, "state": state})
        return [
            ScrapingSource(url=GOOD, priority_score=80),
            ScrapingSource(url=DISABLED, enabled=False),
            ScrapingSource(url=BROKEN, priority_score=20),
        ]

    async def fake_get_source(url):
        return ScrapingSource(url=url, enabled=url != DISABLED)

    async def fake_record_outcome(url, **kwargs):
        calls["health"].append((url, kwargs))
        return None

    async def fake_insert_or_merge(show, raw_payload, **kwargs):
        calls["persisted"].append((show, raw_payload))
        return PersistResult(action=PERSIST_INSERTED, id=None, status="PENDING")

    monkeypatch.setattr(crawl_orchestrator, "list_enabled_sources", fake_list_enabled_sources)
    monkeypatch.setattr(crawl_orchestrator, "get_source", fake_get_source)
    monkeypatch.setattr(crawl_orchestrator, "record_outcome", fake_record_outcome)
    monkeypatch.setattr(crawl_orchestrator, "insert_or_merge", fake_insert_or_merge)
    return calls


SHOW_NAMES = (
    "Reno Card Expo",
    "Tahoe Sports Fair",
    "Sparks Pokemon Meetup",
    "Carson Vintage Swap",
    "Elko Comic Bazaar",
    "Fallon Memorabilia Day",
    "Winnemucca Hobby Night",
    "Ely Collectors Market",
)


def _one_show_per_chunk(chunk: RawChunk):
    name = SHOW_NAMES[chunk.sequence_index % len(SHOW_NAMES)]
    return [{"name": name, "startDate": "2025-06-01", "city": "Reno", "state": "NV"}]


@pytest.mark.asyncio
async def test_disabled_sources_are_never_fetched(recorded):
    fetcher = FakeFetcher({GOOD: _page_html(1)}, failures={BROKEN: "HTTP 500"})
    orchestrator = CrawlOrchestrator(
        _config(),
        fetcher=fetcher,
        extractor=FakeExtractor(_one_show_per_chunk),
    )

    summary = await orchestrator.run()

    assert DISABLED not in fetcher.fetched
    assert sorted(fetcher.fetched) == sorted([GOOD, BROKEN])
    assert summary.sources_total == 2


@pytest.mark.asyncio
async def test_single_url_run_skips_disabled_source(recorded):
    fetcher = FakeFetcher({})
    orchestrator = CrawlOrchestrator(_config(), fetcher=fetcher, extractor=FakeExtractor(_one_show_per_chunk))

    summary = await orchestrator.run(url=DISABLED)

    assert fetcher.fetched == []
    assert summary.results[0].stage == STAGE_SKIPPED
    assert recorded["health"] == []


@pytest.mark.asyncio
async def test_fetch_failure_is_isolated_and_recorded(recorded):
    fetcher = FakeFetcher({GOOD: _page_html(1)}, failures={BROKEN: "HTTP 500"})
    orchestrator = CrawlOrchestrator(_config(), fetcher=fetcher, extractor=FakeExtractor(_one_show_per_chunk))

    summary = await orchestrator.run()

    by_url = {r.url: r for r in summary.results}
    assert by_url[GOOD].success is True
    assert by_url[BROKEN].success is False
    assert by_url[BROKEN].error == "HTTP 500"
    health = dict(recorded["health"])
    assert health[GOOD]["success"] is True
    assert health[BROKEN]["success"] is False
    assert health[BROKEN]["error_message"] == "HTTP 500"
    assert summary.sources_succeeded == 1
    assert summary.sources_failed == 1
    assert "FAIL  " + BROKEN in summary.format()


@pytest.mark.asyncio
async def test_timed_out_chunk_does_not_stop_other_chunks(recorded):
    def behaviour(chunk: RawChunk):
        if chunk.sequence_index == 1:
            return "hang"
        return _one_show_per_chunk(chunk)

    fetcher = FakeFetcher({GOOD: _page_html(3)})
    extractor = FakeExtractor(behaviour)
    orchestrator = CrawlOrchestrator(_config(), fetcher=fetcher, extractor=extractor)

    result = await orchestrator.process_source(GOOD)

    assert result.chunks_total >= 3
    assert result.chunks_failed == 1
    assert result.chunks_ok == result.chunks_total - 1
    assert result.success is True
    assert sorted(extractor.seen) == list(range(result.chunks_total))
    names = {show.name for show, _ in recorded["persisted"]}
    assert SHOW_NAMES[1] not in names
    assert SHOW_NAMES[0] in names and SHOW_NAMES[2] in names


@pytest.mark.asyncio
async def test_failure_recorded_only_when_all_chunks_fail(recorded):
    fetcher = FakeFetcher({GOOD: _page_html(2)})
    extractor = FakeExtractor(lambda chunk: ExtractionError("HTTP 503", kind="server_error", retryable=True))
    orchestrator = CrawlOrchestrator(_config(), fetcher=fetcher, extractor=extractor)

    result = await orchestrator.process_source(GOOD)

    assert result.success is False
    assert result.chunks_ok == 0
    assert "chunks failed extraction" in result.error
    assert recorded["health"][0][1]["success"] is False
    assert recorded["persisted"] == []


@pytest.mark.asyncio
async def test_page_with_no_shows_still_counts_as_success(recorded):
    fetcher = FakeFetcher({GOOD: _page_html(1)})
    orchestrator = CrawlOrchestrator(_config(), fetcher=fetcher, extractor=FakeExtractor(lambda chunk: []))

    result = await orchestrator.process_source(GOOD)

    assert result.success is True
    assert result.shows == 0
    assert recorded["health"][0][1]["show_count"] == 0


@pytest.mark.asyncio
async def test_rejected_candidates_are_counted_not_persisted(recorded):
    def behaviour(chunk: RawChunk):
        return [{"description": "no name, no date"}, {"name": "Real Show", "startDate": "2025-06-01"}]

    fetcher = FakeFetcher({GOOD: "<div>" + "x" * 200 + "</div>"})
    orchestrator = CrawlOrchestrator(_config(), fetcher=fetcher, extractor=FakeExtractor(behaviour))

    result = await orchestrator.process_source(GOOD)

    assert result.candidates == 2
    assert result.rejected == 1
    assert [show.name for show, _ in recorded["persisted"]] == ["Real Show"]


@pytest.mark.asyncio
async def test_listing_repeated_across_chunks_is_persisted_once(recorded):
    def behaviour(chunk: RawChunk):
        if chunk.sequence_index == 0:
            return [{"name": "Spring Card Show", "startDate": "2025-03-05", "venueName": "Holiday Inn"}]
        return [{"name": "Spring Card Show", "startDate": "2025-03-05", "city": "Springfield", "state": "IL"}]

    fetcher = FakeFetcher({GOOD: _page_html(2)})
    orchestrator = CrawlOrchestrator(_config(), fetcher=fetcher, extractor=FakeExtractor(behaviour))

    result = await orchestrator.process_source(GOOD)

    assert result.shows == 1
    assert len(recorded["persisted"]) == 1
    show, raw_payload = recorded["persisted"][0]
    assert show.venue_name == "Holiday Inn"
    assert show.city == "Springfield"
    assert raw_payload["chunk_indexes"] == list(range(result.chunks_total))


@pytest.mark.asyncio
async def test_dry_run_writes_nothing(recorded):
    fetcher = FakeFetcher({GOOD: _page_html(1)}, failures={BROKEN: "HTTP 500"})
    orchestrator = CrawlOrchestrator(
        _config(dry_run=True),
        fetcher=fetcher,
        extractor=FakeExtractor(_one_show_per_chunk),
    )

    summary = await orchestrator.run()

    assert summary.dry_run is True
    assert recorded["health"] == []
    assert recorded["persisted"] == []
    assert summary.format().startswith("Crawl finished (dry run): 2 sources")


@pytest.mark.asyncio
async def test_unexpected_error_stays_with_its_source(recorded):
    class ExplodingFetcher(FakeFetcher):
        async def fetch(self, url: str) -> FetchedPage:
            if url == BROKEN:
                raise RuntimeError("parser bug")
            return await super().fetch(url)

    fetcher = ExplodingFetcher({GOOD: _page_html(1)})
    orchestrator = CrawlOrchestrator(_config(), fetcher=fetcher, extractor=FakeExtractor(_one_show_per_chunk))

    summary = await orchestrator.run()

    by_url = {r.url: r for r in summary.results}
    assert by_url[GOOD].success is True
    assert by_url[BROKEN].success is False
    assert "RuntimeError" in by_url[BROKEN].error


@pytest.mark.asyncio
async def test_geocoding_failure_keeps_show_with_null_coordinates(recorded):
    class FailingGeocoder:
        async def geocode(self, address, *, expected_state=None):
            return None

    def behaviour(chunk: RawChunk):
        return [
            {
                "name": "Spring Card Show",
                "startDate": "2025-03-05",
                "address": "123 Main St",
                "city": "Springfield",
                "state": "IL",
            }
        ]

    fetcher = FakeFetcher({GOOD: "<div>" + "x" * 200 + "</div>"})
    orchestrator = CrawlOrchestrator(
        _config(geocoding_enabled=True),
        fetcher=fetcher,
        extractor=FakeExtractor(behaviour),
        geocoder=FailingGeocoder(),
    )

    result = await orchestrator.process_source(GOOD)

    assert result.geocode_missing == 1
    show, _ = recorded["persisted"][0]
    assert show.coordinates is None


class RecordingGeocoder:
    created: List["RecordingGeocoder"] = []

    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs
        RecordingGeocoder.created.append(self)

    async def __aenter__(self) -> "RecordingGeocoder":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    async def geocode(self, address, *, expected_state=None):
        return None


@pytest.mark.asyncio
async def test_dry_run_geocoder_reads_cache_but_never_stores(recorded, monkeypatch):
    RecordingGeocoder.created = []
    monkeypatch.setattr(crawl_orchestrator, "NominatimService", RecordingGeocoder)
    fetcher = FakeFetcher({GOOD: _page_html(1), BROKEN: _page_html(1)})
    orchestrator = CrawlOrchestrator(
        _config(dry_run=True, geocoding_enabled=True),
        fetcher=fetcher,
        extractor=FakeExtractor(_one_show_per_chunk),
        use_database=True,
    )

    await orchestrator.run()

    options = RecordingGeocoder.created[0].kwargs
    assert options["use_cache"] is True
    assert options["store_cache"] is False
    assert recorded["persisted"] == []


@pytest.mark.asyncio
async def test_state_filter_is_passed_to_source_listing(recorded):
    fetcher = FakeFetcher({GOOD: _page_html(1), BROKEN: _page_html(1)})
    orchestrator = CrawlOrchestrator(
        _config(state="Nevada", limit=2),
        fetcher=fetcher,
        extractor=FakeExtractor(_one_show_per_chunk),
    )

    await orchestrator.run()

    assert recorded["listed"] == [{"limit": 2, "state": "NV"}]


@pytest.mark.asyncio
async def test_missing_components_fail_the_source_not_the_run(recorded):
    orchestrator = CrawlOrchestrator(_config())

    result = await orchestrator.process_source(GOOD)

    assert result.success is False
    assert result.error.startswith("RuntimeError")


# ---- full-size page through the real chunker ----


def _large_listing_page(rows: int = 130) -> str:
    body = "".join(
        f'<div class="show-row">Card show listing row {i}: ' + "x" * 950 + "</div>\n" for i in range(rows)
    )
    return f"<html><head><script>var tracking = 1;</script></head><body>{body}</body></html>"


LISTINGS = {
    0: [{"name": SHOW_NAMES[0], "startDate": "June 1, 2025", "city": "Reno", "state": "NV"}],
    1: [{"name": SHOW_NAMES[1], "startDate": "June 8, 2025", "city": "Tahoe City", "state": "CA"}],
    # one listing cut in half at the chunk 2/3 boundary
    2: [{"name": SHOW_NAMES[2], "startDate": "June 14, 2025", "venueName": "Sparks Convention Center"}],
    3: [
        {"name": SHOW_NAMES[2], "startDate": "June 14, 2025", "city": "Sparks", "state": "NV"},
        {"name": SHOW_NAMES[3], "startDate": "June 21-22, 2025", "city": "Carson City", "state": "NV"},
    ],
    4: [{"name": SHOW_NAMES[4], "startDate": "2025-06-28T09:00:00", "city": "Elko", "state": "NV"}],
}


def _listings_by_chunk(chunk: RawChunk):
    return LISTINGS.get(chunk.sequence_index, [])


@pytest.mark.asyncio
async def test_full_size_page_with_split_listing_yields_one_row_per_show(recorded):
    html = _large_listing_page()
    assert len(html.encode("utf-8")) > 120_000
    fetcher = FakeFetcher({GOOD: html})
    orchestrator = CrawlOrchestrator(
        _config(chunk_max_bytes=25_000),
        fetcher=fetcher,
        extractor=FakeExtractor(_listings_by_chunk),
    )

    result = await orchestrator.process_source(GOOD)

    assert result.chunks_total >= 5
    assert result.chunks_ok == result.chunks_total
    assert len(recorded["persisted"]) == 5
    split = next(show for show, _ in recorded["persisted"] if show.name == SHOW_NAMES[2])
    assert split.venue_name == "Sparks Convention Center"
    assert split.city == "Sparks"
    assert all(show.start_date is not None for show, _ in recorded["persisted"])


class InMemoryQueue:
    """Backs the real insert_or_merge with a list of pending_shows rows."""

    def __init__(self) -> None:
        self.rows: List[Dict] = []

    @asynccontextmanager
    async def transaction(self, *args, **kwargs):
        yield self

    async def execute_with_conn(self, conn, sql, *args, **kwargs):
        flat = " ".join(sql.split())
        if flat.startswith("UPDATE pending_shows"):
            row = next(r for r in self.rows if r["id"] == args[0])
            row.update(raw_payload=args[1], normalized_payload=args[2])
            return "UPDATE 1"
        return "SELECT 1"

    async def fetch_with_conn(self, conn, sql, *args, **kwargs):
        return [dict(r) for r in self.rows if r["source_url"] == args[0]]

    async def fetchrow_with_conn(self, conn, sql, *args, **kwargs):
        row = {
            "id": uuid4(),
            "source_url": args[0],
            "raw_payload": args[1],
            "normalized_payload": args[2],
            "status": "PENDING",
            "latitude": args[3],
            "longitude": args[4],
            "geocode_source": args[5],
            "geocode_attempts": 0,
        }
        self.rows.append(row)
        return {"id": row["id"]}


@pytest.mark.asyncio
async def test_rerunning_the_same_page_is_idempotent(recorded, monkeypatch):
    queue = InMemoryQueue()
    monkeypatch.setattr(pending_show_service, "run_in_transaction", queue.transaction)
    monkeypatch.setattr(pending_show_service, "execute_with_conn", queue.execute_with_conn)
    monkeypatch.setattr(pending_show_service, "fetch_with_conn", queue.fetch_with_conn)
    monkeypatch.setattr(pending_show_service, "fetchrow_with_conn", queue.fetchrow_with_conn)
    monkeypatch.setattr(crawl_orchestrator, "insert_or_merge", pending_show_service.insert_or_merge)
    html = _large_listing_page()

    first = await CrawlOrchestrator(
        _config(chunk_max_bytes=25_000),
        fetcher=FakeFetcher({GOOD: html}),
        extractor=FakeExtractor(_listings_by_chunk),
    ).process_source(GOOD)
    snapshot = [dict(row) for row in queue.rows]

    second = await CrawlOrchestrator(
        _config(chunk_max_bytes=25_000),
        fetcher=FakeFetcher({GOOD: html}),
        extractor=FakeExtractor(_listings_by_chunk),
    ).process_source(GOOD)

    assert first.inserted == 5
    assert second.inserted == 0
    assert second.merged == 0
    assert second.unchanged == 5
    assert queue.rows == snapshot
