# -*- coding: utf-8 -*-
"""
NominatimService: OSM Nominatim geocoding for card-show addresses
- Geocodes one exact address to lat/lng, US only
- Process-wide rate limit (1 request/second by default)
- Transient failures are retried by a RetryPolicy, then give up with None
- Low-confidence results (outside US bounds, wrong state, state/country-level
  matches) are rejected: None, never a guess
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Optional

import httpx

from app.config import settings
from app.core.errors import GeocodeError
from app.core.logging import get_logger
from app.core.retry import RetryPolicy
from app.core.us_states import to_state_code
from app.models.pending_show import Coordinates
from services import geocode_cache_service

logger = get_logger()

DEFAULT_TIMEOUT_S = 5.0

# US bounds (incl. Alaska and Hawaii)
US_LAT_MIN = 18.0
US_LAT_MAX = 72.0
US_LNG_MIN = -180.0
US_LNG_MAX = -66.0

# Nominatim place_rank: 4 country, 8 state, 12 county, 16 city, 26 street, 30 house
DEFAULT_MIN_PLACE_RANK = 16

# Module-level rate limiting (shared across all instances)
_nominatim_last_request: float = 0
_nominatim_lock = asyncio.Lock()


def _result_state(result: Dict[str, Any]) -> Optional[str]:
    address = result.get("address") or {}
    iso = address.get("ISO3166-2-lvl4") or ""
    if iso.upper().startswith("US-"):
        return iso[3:].upper()
    return to_state_code(address.get("state"))


class NominatimService:
    """
    Geocoding service using OSM's Nominatim API.
    """

    def __init__(
        self,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        min_delay_s: Optional[float] = None,
        min_place_rank: int = DEFAULT_MIN_PLACE_RANK,
        use_cache: bool = True,
        store_cache: Optional[bool] = None,
        base_url: Optional[str] = None,
        user_agent: Optional[str] = None,
    ):
        self.timeout_s = timeout_s
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay_s=1.0)
        self.min_delay_s = settings.NOMINATIM_RATE_LIMIT_DELAY if min_delay_s is None else min_delay_s
        self.min_place_rank = min_place_rank
        self.use_cache = use_cache
        # dry runs read the cache but never write it
        self.store_cache = use_cache if store_cache is None else store_cache
        self.base_url = base_url or settings.NOMINATIM_BASE_URL
        self.user_agent = user_agent or settings.NOMINATIM_USER_AGENT
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s),
            headers={"User-Agent": self.user_agent},
        )

    async def __aenter__(self) -> "NominatimService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    async def _enforce_rate_limit(self) -> None:
        global _nominatim_last_request
        async with _nominatim_lock:
            elapsed = time.time() - _nominatim_last_request
            if elapsed < self.min_delay_s:
                sleep_time = self.min_delay_s - elapsed
                logger.debug(
                    "geocoding_rate_limit_delay",
                    elapsed_s=round(elapsed, 3),
                    sleep_time_s=round(sleep_time, 3),
                )
                await asyncio.sleep(sleep_time)
            _nominatim_last_request = time.time()

    async def _geocode_once(
        self,
        query: str,
        expected_state: Optional[str],
    ) -> Optional[Coordinates]:
        """
        One request. Returns None for "no confident answer"; raises
        GeocodeError for failures worth retrying.
        """
        await self._enforce_rate_limit()

        params = {
            "q": query.strip(),
            "format": "jsonv2",
            "limit": 1,
            "addressdetails": 1,
            "countrycodes": "us",
        }
        try:
            response = await asyncio.wait_for(
                self._client.get(self.base_url, params=params),
                timeout=self.timeout_s,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise GeocodeError(f"timeout after {self.timeout_s}s") from exc
        except httpx.TransportError as exc:
            raise GeocodeError(f"network error: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise GeocodeError(
                f"HTTP {response.status_code}",
                retryable=True,
            )
        if response.status_code >= 400:
            raise GeocodeError(f"HTTP {response.status_code}", retryable=False)

        try:
            data = response.json()
        except ValueError as exc:
            raise GeocodeError("invalid JSON from Nominatim", retryable=False) from exc

        if not data:
            logger.debug("geocoding_empty_response", query=query)
            return None

        result = data[0]
        try:
            lat = float(result.get("lat"))
            lng = float(result.get("lon"))
        except (TypeError, ValueError):
            return None

        if not (US_LAT_MIN <= lat <= US_LAT_MAX and US_LNG_MIN <= lng <= US_LNG_MAX):
            logger.debug("geocoding_outside_us_bounds", query=query, lat=lat, lng=lng)
            return None

        place_rank = result.get("place_rank")
        if place_rank is not None and int(place_rank) < self.min_place_rank:
            logger.debug("geocoding_low_precision", query=query, place_rank=place_rank)
            return None

        if expected_state:
            found_state = _result_state(result)
            if found_state and found_state != expected_state.upper():
                logger.debug(
                    "geocoding_state_mismatch",
                    query=query,
                    expected_state=expected_state,
                    found_state=found_state,
                )
                return None

        return Coordinates(
            latitude=lat,
            longitude=lng,
            source="nominatim",
            display_name=result.get("display_name"),
        )

    async def geocode(
        self,
        address: str,
        *,
        expected_state: Optional[str] = None,
    ) -> Optional[Coordinates]:
        """
        Geocode an exact address. Never raises for lookup failures: a show
        whose address cannot be resolved is stored with null coordinates.
        """
        if not address or not address.strip():
            return None

        if self.use_cache:
            cached = await geocode_cache_service.get_cached(address)
            if cached is not None:
                return cached

        def _on_retry(attempt: int, exc: BaseException, delay: float) -> None:
            logger.info(
                "geocoding_retry",
                query=address,
                attempt=attempt,
                error=str(exc),
                delay_s=round(delay, 2),
            )

        try:
            coords = await self.retry_policy.run(
                lambda: self._geocode_once(address, expected_state),
                retry_if=lambda exc: isinstance(exc, GeocodeError) and exc.retryable,
                on_retry=_on_retry,
            )
        except GeocodeError as exc:
            logger.warning(
                "geocoding_failed",
                query=address,
                attempts=self.retry_policy.max_attempts,
                error=str(exc),
            )
            return None

        if coords is not None and self.store_cache:
            await geocode_cache_service.store(address, coords, {"display_name": coords.display_name})
        return coords
