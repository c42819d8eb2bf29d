import logging

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from fuelwatch.core.errors import FeedError
from fuelwatch.core.settings import settings

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
MAX_PAGES = 1000


class _Transient(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class FeedClient:
    """
    Pull client for the upstream station/price feed.

    The feed pages with ``{"data": [...], "pagination": {"cursor": ..., "hasMore": ...}}``.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base = (base_url if base_url is not None else settings.FEED_API_URL).rstrip("/")
        self.token = token if token is not None else settings.FEED_API_TOKEN
        self.timeout = timeout if timeout is not None else settings.FEED_TIMEOUT_SECONDS
        self.transport = transport

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}", "Accept": "application/json"}

    async def _get_once(self, client: httpx.AsyncClient, path: str, params: dict | None) -> dict:
        try:
            r = await client.get(f"{self.base}{path}", params=params, headers=self._headers())
        except httpx.TimeoutException:
            raise _Transient(f"Feed request timed out: {path}")
        except httpx.TransportError as e:
            raise _Transient(f"Feed unreachable: {e}")

        if r.status_code == 429 or r.status_code >= 500:
            raise _Transient(f"Feed error: {r.status_code}", r.status_code)
        if r.status_code != 200:
            raise FeedError(f"Feed error: {r.status_code}", r.status_code)
        try:
            return r.json()
        except ValueError:
            raise FeedError("Feed returned invalid JSON", r.status_code)

    async def get_json(self, client: httpx.AsyncClient, path: str, params: dict | None = None) -> dict:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(MAX_ATTEMPTS),
                wait=wait_exponential(multiplier=1, max=10),
                retry=retry_if_exception(lambda e: isinstance(e, _Transient)),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    return await self._get_once(client, path, params)
        except _Transient as e:
            raise FeedError(f"{e} after {MAX_ATTEMPTS} attempts", e.status_code) from e

    async def fetch_all_stations(self) -> list[dict]:
        if not self.base:
            raise FeedError("FEED_API_URL is not configured")

        items: list[dict] = []
        cursor: str | None = None
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            for _ in range(MAX_PAGES):
                params = {"cursor": cursor} if cursor else None
                payload = await self.get_json(client, "/v1/stations", params)
                if not isinstance(payload, dict):
                    raise FeedError("Feed returned an unexpected payload")

                items.extend(payload.get("data") or [])
                page = payload.get("pagination") or {}
                cursor = page.get("cursor")
                if not page.get("hasMore") or not cursor:
                    break
            else:
                raise FeedError(f"Feed pagination exceeded {MAX_PAGES} pages")

        logger.info("fetched %d stations from feed", len(items))
        return items
