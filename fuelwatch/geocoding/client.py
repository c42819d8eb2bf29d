import logging
from urllib.parse import quote

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from fuelwatch.core.errors import ResolutionError
from fuelwatch.core.fuel import Coordinates
from fuelwatch.core.settings import settings

logger = logging.getLogger(__name__)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ResolutionError) and exc.retryable


class PostcodeGeocoder:
    """postcodes.io lookup. Every call is bounded by a timeout and retried on transient failures."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base = (base_url or settings.GEOCODER_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.GEOCODER_TIMEOUT_SECONDS
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.GEOCODER_MAX_ATTEMPTS)
        self.transport = transport

    async def _lookup_once(self, postcode: str) -> Coordinates:
        url = f"{self.base}/postcodes/{quote(postcode)}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                r = await client.get(url)
        except httpx.TimeoutException:
            raise ResolutionError(postcode, f"Geocoder timed out for {postcode}", retryable=True)
        except httpx.TransportError as e:
            raise ResolutionError(postcode, f"Geocoder unreachable: {e}", retryable=True)

        if r.status_code == 404:
            raise ResolutionError(postcode, f"Postcode not found: {postcode}")
        if r.status_code == 429 or r.status_code >= 500:
            raise ResolutionError(postcode, f"Geocoder error: {r.status_code}", retryable=True)
        if r.status_code != 200:
            raise ResolutionError(postcode, f"Geocoder error: {r.status_code}")

        try:
            result = r.json().get("result") or {}
            lat = float(result["latitude"])
            lng = float(result["longitude"])
        except (ValueError, TypeError, KeyError, AttributeError):
            raise ResolutionError(postcode, f"Invalid geocoder response for {postcode}")
        return Coordinates(lat=lat, lng=lng)

    async def lookup(self, postcode: str) -> Coordinates:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.5, max=4),
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await self._lookup_once(postcode)
