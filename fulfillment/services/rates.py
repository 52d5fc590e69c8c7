"""
Exchange Rate Provider

Fetches live USD-based quotes from a CurrencyLayer-compatible endpoint and
turns them into a `RateTable`. Quotes are memoized in-process and, when a
Redis cache is supplied, shared across instances for the configured TTL.
"""

import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

import httpx
from redis.exceptions import RedisError

from fulfillment.cache import CacheManager
from fulfillment.config.logging import get_logger
from fulfillment.config.settings import CurrencySettings
from fulfillment.database.models import Currency
from fulfillment.errors import RateProviderError
from fulfillment.services.currency import RateTable

logger = get_logger(__name__)

QUOTES_KEY = "quotes"


class ExchangeRateProvider:
    """
    Source of the current rate table.

    Example:
        provider = ExchangeRateProvider(settings.currency, cache=rates_cache)
        rates = await provider.get_rate_table()
    """

    def __init__(
        self,
        settings: CurrencySettings,
        cache: Optional[CacheManager] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.cache = cache
        self._client = http_client
        self._owns_client = http_client is None
        self._clock = clock
        self._memo: Optional[Tuple[float, RateTable]] = None

    def _client_or_create(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.request_timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _memo_fresh(self) -> bool:
        if self._memo is None:
            return False
        stored_at, _ = self._memo
        return self._clock() - stored_at < self.settings.cache_ttl_seconds

    async def get_rate_table(self) -> RateTable:
        """
        Current rate table.

        Order of lookup: static quotes from settings, in-process memo, Redis,
        live provider. When the provider fails, a stale memo is served;
        with nothing cached the failure is raised.

        Raises:
            RateProviderError: If no quotes can be obtained
        """
        if self.settings.quotes:
            return RateTable.from_quotes(self.settings.quotes)

        if self._memo_fresh():
            return self._memo[1]

        cached = await self._read_cache()
        if cached is not None:
            table = self._table_from_payload(cached)
            self._memo = (self._clock(), table)
            return table

        return await self.refresh()

    async def refresh(self) -> RateTable:
        """Fetch live quotes, bypassing every cache."""
        try:
            payload = await self._fetch()
        except RateProviderError as e:
            if self._memo is not None:
                logger.warning("Serving stale exchange rates", error=str(e))
                return self._memo[1]
            raise

        table = self._table_from_payload(payload)
        self._memo = (self._clock(), table)
        await self._write_cache(payload)

        logger.info(
            "Exchange rates refreshed",
            currencies=sorted(c.value for c in table.per_ngn),
            fetched_at=payload["fetched_at"],
        )
        return table

    async def _fetch(self) -> Dict[str, Any]:
        params = {"currencies": ",".join(c.value for c in Currency)}
        if self.settings.access_key is not None:
            params["access_key"] = self.settings.access_key.get_secret_value()

        try:
            response = await self._client_or_create().get(self.settings.provider_url, params=params)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Exchange rate request failed", error=str(e))
            raise RateProviderError(f"Exchange rate request failed: {e}") from e

        if not isinstance(data, dict) or not data.get("success") or not isinstance(data.get("quotes"), dict):
            logger.error(
                "Exchange rate provider returned no quotes",
                response=data.get("error") if isinstance(data, dict) else data,
            )
            raise RateProviderError("Exchange rate provider returned no quotes")

        return {
            "quotes": data["quotes"],
            "fetched_at": data.get("timestamp") or int(time.time()),
        }

    def _table_from_payload(self, payload: Dict[str, Any]) -> RateTable:
        fetched_at = datetime.fromtimestamp(int(payload["fetched_at"]), tz=timezone.utc)
        return RateTable.from_quotes(payload["quotes"], fetched_at=fetched_at)

    async def _read_cache(self) -> Optional[Dict[str, Any]]:
        if self.cache is None:
            return None
        try:
            return await self.cache.get(QUOTES_KEY)
        except RedisError as e:
            logger.warning("Rate cache read failed", error=str(e))
            return None

    async def _write_cache(self, payload: Dict[str, Any]) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set(QUOTES_KEY, payload, ttl=self.settings.cache_ttl_seconds)
        except RedisError as e:
            logger.warning("Rate cache write failed", error=str(e))
