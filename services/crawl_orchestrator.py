"""
Crawl orchestrator - one crawl cycle over the enabled sources.

Per source: FETCHING -> CHUNKING -> EXTRACTING -> NORMALIZING -> DEDUPING ->
PERSISTED, or FAILED at the stage reached. Failures are contained per source
(fetch) and per chunk (extraction); nothing a single source does can abort
the cycle. A source counts as successful when its page was fetched and at
least one chunk was extracted.
"""

from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

from app.core.errors import CandidateRejected, ExtractionError, FetchError
from app.core.logging import get_logger
from app.models.crawl_config import CrawlConfig
from app.models.pending_show import NormalizedShow
from app.models.show_extraction import ExtractedCandidate, RawChunk
from services.html_chunker import chunk_html
from services.nominatim_service import NominatimService
from services.page_fetcher_service import PageFetcherService
from services.pending_show_service import (
    PERSIST_INSERTED,
    PERSIST_MERGED,
    PERSIST_SKIPPED_DECIDED,
    PERSIST_UNCHANGED,
    insert_or_merge,
)
from services.scraping_sources_service import get_source, list_enabled_sources, record_outcome
from services.show_dedupe_service import CollapsedShow, collapse_candidates
from services.show_extraction_service import ShowExtractionService
from services.show_normalization_service import ShowNormalizer

logger = get_logger()

STAGE_FETCHING = "FETCHING"
STAGE_CHUNKING = "CHUNKING"
STAGE_EXTRACTING = "EXTRACTING"
STAGE_NORMALIZING = "NORMALIZING"
STAGE_DEDUPING = "DEDUPING"
STAGE_PERSISTED = "PERSISTED"
STAGE_SKIPPED = "SKIPPED"


@dataclass
class SourceRunResult:
    url: str
    stage: str = STAGE_FETCHING
    success: bool = False
    failed: bool = False
    error: Optional[str] = None
    chunks_total: int = 0
    chunks_ok: int = 0
    chunks_failed: int = 0
    candidates: int = 0
    rejected: int = 0
    shows: int = 0
    geocoded: int = 0
    geocode_missing: int = 0
    inserted: int = 0
    merged: int = 0
    unchanged: int = 0
    skipped_decided: int = 0
    persist_failed: int = 0
    health_recorded: bool = False

    @property
    def persisted(self) -> int:
        return self.inserted + self.merged

    def fail(self, error: str) -> None:
        self.failed = True
        self.error = error


@dataclass
class CrawlSummary:
    results: List[SourceRunResult] = field(default_factory=list)
    dry_run: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def sources_total(self) -> int:
        return len([r for r in self.results if r.stage != STAGE_SKIPPED])

    @property
    def sources_succeeded(self) -> int:
        return len([r for r in self.results if r.success])

    @property
    def sources_failed(self) -> int:
        return len([r for r in self.results if r.stage != STAGE_SKIPPED and not r.success])

    @property
    def candidates_persisted(self) -> int:
        return sum(r.persisted for r in self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "sources_total": self.sources_total,
            "sources_succeeded": self.sources_succeeded,
            "sources_failed": self.sources_failed,
            "candidates_persisted": self.candidates_persisted,
            "results": [asdict(r) for r in self.results],
        }

    def format(self) -> str:
        mode = " (dry run)" if self.dry_run else ""
        lines = [
            f"Crawl finished{mode}: {self.sources_total} sources, "
            f"{self.sources_succeeded} succeeded, {self.sources_failed} failed, "
            f"{self.candidates_persisted} shows persisted"
        ]
        for r in self.results:
            if r.stage == STAGE_SKIPPED:
                lines.append(f"  SKIP  {r.url}  {r.error or ''}".rstrip())
                continue
            if not r.success:
                lines.append(f"  FAIL  {r.url}  [{r.stage}] {r.error or 'unknown error'}")
                continue
            lines.append(
                f"  OK    {r.url}  chunks {r.chunks_ok}/{r.chunks_total}, "
                f"candidates {r.candidates}, rejected {r.rejected}, shows {r.shows}, "
                f"inserted {r.inserted}, merged {r.merged}, unchanged {r.unchanged}, "
                f"decided {r.skipped_decided}"
            )
        return "\n".join(lines)


class CrawlOrchestrator:
    def __init__(
        self,
        config: Optional[CrawlConfig] = None,
        *,
        fetcher: Optional[PageFetcherService] = None,
        extractor: Optional[ShowExtractionService] = None,
        normalizer: Optional[ShowNormalizer] = None,
        geocoder: Optional[NominatimService] = None,
        use_database: bool = True,
    ) -> None:
        self.config = config or CrawlConfig()
        self.fetcher = fetcher
        self.extractor = extractor
        self.normalizer = normalizer or ShowNormalizer()
        self.geocoder = geocoder
        self.use_database = use_database
        self.log = logger.bind(component="crawl_orchestrator")

    @property
    def persists(self) -> bool:
        return self.use_database and not self.config.dry_run

    @asynccontextmanager
    async def _components(self) -> AsyncIterator[None]:
        cfg = self.config
        owned: List[str] = []
        async with AsyncExitStack() as stack:
            if self.fetcher is None:
                self.fetcher = await stack.enter_async_context(
                    PageFetcherService(
                        timeout_s=cfg.fetch_timeout_s,
                        min_html_bytes=cfg.min_html_bytes,
                        retry_policy=cfg.fetch_retry,
                    )
                )
                owned.append("fetcher")
            if self.extractor is None:
                self.extractor = ShowExtractionService(
                    model=cfg.model,
                    retry_policy=cfg.extract_retry,
                    timeout_s=cfg.extract_timeout_s,
                )
                owned.append("extractor")
            if self.geocoder is None and cfg.geocoding_enabled:
                self.geocoder = await stack.enter_async_context(
                    NominatimService(
                        timeout_s=cfg.geocode_timeout_s,
                        retry_policy=cfg.geocode_retry,
                        use_cache=self.use_database,
                        store_cache=self.persists,
                    )
                )
                owned.append("geocoder")
            try:
                yield
            finally:
                for name in owned:
                    setattr(self, name, None)

    async def _select_urls(self, url: Optional[str]) -> Tuple[List[str], List[SourceRunResult]]:
        skipped: List[SourceRunResult] = []
        if url:
            if self.use_database:
                source = await get_source(url)
                if source is not None and not source.enabled:
                    self.log.info("crawl_source_disabled_skipped", url=url)
                    skipped.append(SourceRunResult(url=url, stage=STAGE_SKIPPED, error="source disabled"))
                    return [], skipped
            return [url], skipped

        sources = await list_enabled_sources(limit=self.config.limit, state=self.config.state)
        urls = [s.url for s in sources if s.enabled]
        return urls, skipped

    async def run(self, *, url: Optional[str] = None) -> CrawlSummary:
        summary = CrawlSummary(dry_run=self.config.dry_run)
        urls, skipped = await self._select_urls(url)
        summary.results.extend(skipped)
        self.log.info("crawl_started", sources=len(urls), state=self.config.state, dry_run=self.config.dry_run)

        if urls:
            sem = asyncio.Semaphore(self.config.source_concurrency)

            async def _guarded(source_url: str) -> SourceRunResult:
                async with sem:
                    return await self.process_source(source_url)

            async with self._components():
                results = await asyncio.gather(*(_guarded(u) for u in urls))
            summary.results.extend(results)

        summary.finished_at = datetime.now(timezone.utc)
        self.log.info(
            "crawl_finished",
            sources_total=summary.sources_total,
            sources_succeeded=summary.sources_succeeded,
            sources_failed=summary.sources_failed,
            candidates_persisted=summary.candidates_persisted,
            dry_run=summary.dry_run,
        )
        return summary

    async def process_source(self, url: str) -> SourceRunResult:
        result = SourceRunResult(url=url)
        log = self.log.bind(source_url=url)
        try:
            await self._process(url, result, log)
        except Exception as exc:
            # source boundary: anything unexpected stays with this source
            result.fail(f"{exc.__class__.__name__}: {exc}")
            log.error("crawl_source_crashed", stage=result.stage, error=str(exc), exc_info=True)

        if result.failed:
            log.warning("crawl_source_failed", stage=result.stage, error=result.error, success=result.success)
        if self.persists:
            await self._record_health(result, log)
        return result

    async def _process(self, url: str, result: SourceRunResult, log: Any) -> None:
        cfg = self.config
        if self.fetcher is None or self.extractor is None:
            raise RuntimeError("CrawlOrchestrator has no fetcher/extractor; call run() or inject them")

        # ---- FETCHING ----
        result.stage = STAGE_FETCHING
        try:
            page = await self.fetcher.fetch(url)
        except FetchError as exc:
            result.fail(exc.reason)
            return

        # ---- CHUNKING ----
        result.stage = STAGE_CHUNKING
        chunks = chunk_html(
            page.html,
            cfg.chunk_max_bytes,
            source_url=url,
            tolerance=cfg.chunk_boundary_tolerance,
        )
        if cfg.max_chunks_per_source and len(chunks) > cfg.max_chunks_per_source:
            log.info("crawl_chunks_truncated", chunks=len(chunks), kept=cfg.max_chunks_per_source)
            chunks = chunks[: cfg.max_chunks_per_source]
        result.chunks_total = len(chunks)
        if not chunks:
            result.fail("no content left after cleanup")
            return

        # ---- EXTRACTING ----
        result.stage = STAGE_EXTRACTING
        outcomes = await self._extract_chunks(chunks, cfg.prompt_hint_for(url), log)
        candidates: List[ExtractedCandidate] = []
        for outcome in outcomes:
            if isinstance(outcome, ExtractionError):
                result.chunks_failed += 1
            else:
                result.chunks_ok += 1
                candidates.extend(outcome)
        result.candidates = len(candidates)
        if result.chunks_ok == 0:
            result.fail(f"all {result.chunks_total} chunks failed extraction")
            return
        result.success = True

        # ---- NORMALIZING (+ geocoding) ----
        result.stage = STAGE_NORMALIZING
        normalized: List[Tuple[NormalizedShow, Dict[str, Any], int]] = []
        for candidate in candidates:
            try:
                show = self.normalizer.normalize(candidate)
            except CandidateRejected as exc:
                result.rejected += 1
                log.debug(
                    "crawl_candidate_rejected",
                    chunk_index=candidate.chunk_index,
                    reason=exc.reason,
                )
                continue
            normalized.append((show, candidate.raw_payload, candidate.chunk_index))

        collapsed = collapse_candidates(
            normalized,
            title_threshold=cfg.dedupe_title_threshold,
            date_window_days=cfg.dedupe_date_window_days,
        )
        result.shows = len(collapsed)
        await self._geocode_shows(collapsed, result, log)

        if not self.persists:
            for group in collapsed:
                log.info(
                    "crawl_dry_run_show",
                    name=group.show.name,
                    start_date=str(group.show.start_date) if group.show.start_date else None,
                    city=group.show.city,
                    state=group.show.state,
                    chunk_indexes=group.chunk_indexes,
                )
            return

        # ---- DEDUPING + persist ----
        result.stage = STAGE_DEDUPING
        for group in collapsed:
            try:
                persisted = await insert_or_merge(
                    group.show,
                    group.raw_payload(),
                    title_threshold=cfg.dedupe_title_threshold,
                    date_window_days=cfg.dedupe_date_window_days,
                )
            except Exception as exc:
                result.persist_failed += 1
                log.error("crawl_persist_failed", name=group.show.name, error=str(exc))
                continue
            if persisted.action == PERSIST_INSERTED:
                result.inserted += 1
            elif persisted.action == PERSIST_MERGED:
                result.merged += 1
            elif persisted.action == PERSIST_UNCHANGED:
                result.unchanged += 1
            elif persisted.action == PERSIST_SKIPPED_DECIDED:
                result.skipped_decided += 1
        result.stage = STAGE_PERSISTED
        log.info(
            "crawl_source_done",
            chunks_ok=result.chunks_ok,
            chunks_failed=result.chunks_failed,
            candidates=result.candidates,
            rejected=result.rejected,
            inserted=result.inserted,
            merged=result.merged,
            unchanged=result.unchanged,
            skipped_decided=result.skipped_decided,
        )

    async def _extract_chunks(
        self,
        chunks: List[RawChunk],
        hint: Optional[str],
        log: Any,
    ) -> List[Union[List[ExtractedCandidate], ExtractionError]]:
        if self.extractor is None:
            raise RuntimeError("CrawlOrchestrator has no extractor; call run() or inject one")
        sem = asyncio.Semaphore(self.config.chunk_concurrency)
        # outer bound covers every retry of one chunk; the per-call timeout lives in the extractor
        policy = self.config.extract_retry
        budget = self.config.extract_timeout_s * max(1, policy.max_attempts) + policy.max_delay_s * max(
            0, policy.max_attempts - 1
        )

        async def _one(chunk: RawChunk) -> Union[List[ExtractedCandidate], ExtractionError]:
            async with sem:
                try:
                    return await asyncio.wait_for(self.extractor.extract(chunk, hint), timeout=budget)
                except asyncio.TimeoutError:
                    err = ExtractionError(
                        f"chunk exceeded {budget:.0f}s",
                        kind="timeout",
                        source_url=chunk.source_url,
                        chunk_index=chunk.sequence_index,
                    )
                except ExtractionError as exc:
                    err = exc.with_context(source_url=chunk.source_url, chunk_index=chunk.sequence_index)
                except Exception as exc:
                    # chunk boundary: unexpected extractor bugs fail this chunk only
                    err = ExtractionError(
                        f"{exc.__class__.__name__}: {exc}",
                        kind="unknown",
                        source_url=chunk.source_url,
                        chunk_index=chunk.sequence_index,
                    )
                log.debug(
                    "crawl_chunk_failed",
                    chunk_index=chunk.sequence_index,
                    kind=err.kind,
                    error=err.reason,
                )
                return err

        return list(await asyncio.gather(*(_one(c) for c in chunks)))

    async def _geocode_shows(self, collapsed: List[CollapsedShow], result: SourceRunResult, log: Any) -> None:
        if self.geocoder is None or not self.config.geocoding_enabled:
            return
        budget = self.config.max_geocode_per_source
        for idx, group in enumerate(collapsed):
            query = group.show.geocode_query()
            if not query:
                result.geocode_missing += 1
                continue
            if idx >= budget:
                result.geocode_missing += 1
                continue
            try:
                coords = await self.geocoder.geocode(query, expected_state=group.show.state)
            except Exception as exc:
                # stays PENDING with null coordinates; the backfill pass retries later
                log.warning("crawl_geocode_failed", query=query, error=str(exc))
                coords = None
            if coords is None:
                result.geocode_missing += 1
                continue
            group.show = group.show.model_copy(update={"coordinates": coords})
            result.geocoded += 1

    async def _record_health(self, result: SourceRunResult, log: Any) -> None:
        cfg = self.config
        try:
            update = await record_outcome(
                result.url,
                success=result.success,
                show_count=result.shows,
                error_message=result.error,
                decay_k=cfg.priority_decay_k,
                attention_threshold=cfg.attention_threshold,
                boost_cap=cfg.success_boost_cap,
            )
        except Exception as exc:
            log.error("crawl_health_update_failed", error=str(exc))
            return
        result.health_recorded = update is not None
