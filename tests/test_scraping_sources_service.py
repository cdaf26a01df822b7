from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest

from app.models.scraping_source import ScrapingSource
from services import scraping_sources_service
from services.scraping_sources_service import (
    boost_priority,
    compute_health_update,
    decay_priority,
)

URL = "https://cardshows.example.com/calendar"


def _row(**overrides):
    row = {
        "url": URL,
        "priority_score": 50,
        "enabled": True,
        "last_success_at": None,
        "last_error_at": None,
        "error_streak": 0,
        "needs_attention": False,
        "last_error": None,
        "notes": None,
        "created_at": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "updated_at": datetime(2025, 1, 1, tzinfo=timezone.utc),
    }
    row.update(overrides)
    return row


def test_decay_priority_is_progressive_and_floored():
    assert decay_priority(50, 1, k=1) == 49
    assert decay_priority(50, 4, k=2) == 42
    assert decay_priority(3, 10, k=1) == 0


def test_boost_priority_is_capped():
    assert boost_priority(50, 2) == 52
    assert boost_priority(50, 40) == 55
    assert boost_priority(98, 5) == 100
    assert boost_priority(50, 0) == 50


def test_compute_health_update_success_resets_streak():
    source = ScrapingSource(url=URL, priority_score=40, error_streak=4, needs_attention=True)
    update = compute_health_update(source, success=True, show_count=3)
    assert update.success is True
    assert update.error_streak == 0
    assert update.needs_attention is False
    assert update.priority_score == 43
    assert update.last_error is None


def test_compute_health_update_failure_flags_after_threshold():
    source = ScrapingSource(url=URL, priority_score=50, error_streak=4)
    update = compute_health_update(
        source,
        success=False,
        error_message="HTTP 503",
        attention_threshold=5,
    )
    assert update.error_streak == 5
    assert update.needs_attention is True
    assert update.newly_flagged is True
    assert update.priority_score == 45
    assert update.last_error == "HTTP 503"


def test_compute_health_update_already_flagged_is_not_newly_flagged():
    source = ScrapingSource(url=URL, error_streak=7, needs_attention=True)
    update = compute_health_update(source, success=False, error_message="timeout")
    assert update.needs_attention is True
    assert update.newly_flagged is False


class FakeConn:
    pass


def _patch_transaction(monkeypatch, row):
    executed = []

    @asynccontextmanager
    async def fake_tx(*args, **kwargs):
        yield FakeConn()

    async def fake_fetchrow_with_conn(conn, sql, *args, **kwargs):
        assert "FOR UPDATE" in sql
        return row

    async def fake_execute_with_conn(conn, sql, *args, **kwargs):
        executed.append((sql, args))
        return "UPDATE 1"

    monkeypatch.setattr(scraping_sources_service, "run_in_transaction", fake_tx)
    monkeypatch.setattr(scraping_sources_service, "fetchrow_with_conn", fake_fetchrow_with_conn)
    monkeypatch.setattr(scraping_sources_service, "execute_with_conn", fake_execute_with_conn)
    return executed


@pytest.mark.asyncio
async def test_record_outcome_failure_writes_single_update(monkeypatch):
    executed = _patch_transaction(monkeypatch, _row(error_streak=2, priority_score=30))

    update = await scraping_sources_service.record_outcome(URL, success=False, error_message="HTTP 500")

    assert update is not None
    assert update.error_streak == 3
    assert update.priority_score == 27
    assert len(executed) == 1
    sql, args = executed[0]
    assert "last_error_at" in sql
    assert args[0] == URL
    assert args[1:5] == (27, 3, False, "HTTP 500")


@pytest.mark.asyncio
async def test_record_outcome_success_resets_health(monkeypatch):
    executed = _patch_transaction(monkeypatch, _row(error_streak=6, needs_attention=True))

    update = await scraping_sources_service.record_outcome(URL, success=True, show_count=12)

    assert update is not None
    assert update.error_streak == 0
    assert update.priority_score == 55
    sql, args = executed[0]
    assert "error_streak = 0" in sql
    assert "needs_attention = FALSE" in sql
    assert args[1] == 55


@pytest.mark.asyncio
async def test_record_outcome_unregistered_url_returns_none(monkeypatch):
    executed = _patch_transaction(monkeypatch, None)

    update = await scraping_sources_service.record_outcome(URL, success=False, error_message="x")

    assert update is None
    assert executed == []


@pytest.mark.asyncio
async def test_list_enabled_sources_orders_by_priority_then_staleness(monkeypatch):
    captured = {}

    async def fake_fetch(sql, *args, **kwargs):
        captured["sql"] = sql
        captured["args"] = args
        return [_row(), _row(url="https://other.example.com/shows", priority_score=10)]

    monkeypatch.setattr(scraping_sources_service, "fetch", fake_fetch)

    sources = await scraping_sources_service.list_enabled_sources(limit=2)

    assert [s.url for s in sources] == [URL, "https://other.example.com/shows"]
    assert "WHERE enabled = TRUE" in captured["sql"]
    assert "priority_score DESC, last_success_at ASC NULLS FIRST" in captured["sql"]
    assert captured["args"] == (2,)


@pytest.mark.asyncio
async def test_list_enabled_sources_filters_by_state(monkeypatch):
    captured = {}

    async def fake_fetch(sql, *args, **kwargs):
        captured["sql"] = sql
        captured["args"] = args
        return [_row(state="TX")]

    monkeypatch.setattr(scraping_sources_service, "fetch", fake_fetch)

    sources = await scraping_sources_service.list_enabled_sources(limit=5, state="texas")

    assert sources[0].state == "TX"
    assert "enabled = TRUE AND state = $1" in captured["sql"]
    assert "LIMIT $2" in captured["sql"]
    assert captured["args"] == ("TX", 5)


@pytest.mark.asyncio
async def test_list_enabled_sources_rejects_unknown_state():
    with pytest.raises(ValueError):
        await scraping_sources_service.list_enabled_sources(state="Ontario")


@pytest.mark.asyncio
async def test_register_source_rejects_non_http_urls():
    with pytest.raises(ValueError):
        await scraping_sources_service.register_source("ftp://example.com/shows")
