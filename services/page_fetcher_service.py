from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

import httpx

from app.config import settings
from app.core.errors import FetchError
from app.core.logging import get_logger
from app.core.retry import RetryPolicy

logger = get_logger()


@dataclass(frozen=True)
class FetchedPage:
    url: str
    final_url: str
    status_code: int
    html: str
    content_type: Optional[str] = None

    @property
    def size_bytes(self) -> int:
        return len(self.html.encode("utf-8"))


class PageFetcherService:
    """
    Fetches one listing page per source per cycle.

    Retrying is left to the extraction layer, so the default policy makes a
    single attempt. The whole request (connect, redirects, body) is bounded by
    `timeout_s`; anything that goes wrong surfaces as FetchError.
    """

    def __init__(
        self,
        *,
        user_agent: Optional[str] = None,
        timeout_s: float = 25.0,
        min_html_bytes: int = 100,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        """
        Args:
            user_agent: User-Agent header for requests
            timeout_s: Total time budget for one fetch in seconds
            min_html_bytes: Bodies smaller than this are treated as failures
            retry_policy: Attempts/backoff; defaults to a single attempt
        """
        self.user_agent = user_agent or settings.SCRAPER_USER_AGENT
        self.timeout_s = timeout_s
        self.min_html_bytes = max(0, min_html_bytes)
        self.retry_policy = retry_policy or RetryPolicy.no_retry()
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "PageFetcherService":
        self._client = httpx.AsyncClient(
            timeout=self.timeout_s,
            headers={
                "User-Agent": self.user_agent,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.5",
            },
            follow_redirects=True,
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._client:
            await self._client.aclose()

    async def _fetch_once(self, url: str) -> FetchedPage:
        if self._client is None:
            raise RuntimeError(f"{self.__class__.__name__} HTTP client not initialized")
        try:
            response = await asyncio.wait_for(self._client.get(url), timeout=self.timeout_s)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise FetchError(url, f"timeout after {self.timeout_s}s") from exc
        except httpx.HTTPError as exc:
            raise FetchError(url, f"transport error: {exc.__class__.__name__}: {exc}") from exc

        if response.status_code >= 400:
            raise FetchError(
                url,
                f"HTTP {response.status_code}",
                status_code=response.status_code,
            )

        html = response.text or ""
        size = len(html.encode("utf-8"))
        if size < self.min_html_bytes:
            raise FetchError(
                url,
                f"response too small ({size} bytes)",
                status_code=response.status_code,
            )

        return FetchedPage(
            url=url,
            final_url=str(response.url),
            status_code=response.status_code,
            html=html,
            content_type=response.headers.get("content-type"),
        )

    async def fetch(self, url: str) -> FetchedPage:
        """
        Fetch a source page.

        Args:
            url: Source URL

        Returns:
            FetchedPage with decoded HTML

        Raises:
            FetchError: On timeout, transport error, HTTP >= 400 or a near-empty body
        """
        if self._client is None:
            raise RuntimeError(f"{self.__class__.__name__} HTTP client not initialized")

        def _should_retry(exc: BaseException) -> bool:
            if not isinstance(exc, FetchError):
                return False
            return exc.status_code is None or exc.status_code >= 500 or exc.status_code == 429

        page = await self.retry_policy.run(
            lambda: self._fetch_once(url),
            retry_if=_should_retry,
            on_retry=lambda attempt, exc, delay: logger.info(
                "page_fetch_retry", url=url, attempt=attempt, error=str(exc), delay_s=round(delay, 2)
            ),
        )
        logger.debug(
            "page_fetched",
            url=url,
            status_code=page.status_code,
            size_bytes=page.size_bytes,
        )
        return page

    async def fetch_html(self, url: str) -> str:
        page = await self.fetch(url)
        return page.html
