"""
Home-currency normalisation.

Rates are cached process-wide for a bounded window. A stale cache triggers a
single refresh of every tracked currency (concurrent callers wait for the
same refresh). When the refresh fails we keep serving the last known rates,
then the static fallback, and wait a full cache window before trying again.
Conversion never blocks a transaction: an unknown currency is returned
unconverted.
"""

import asyncio
import time
from collections.abc import Callable
from decimal import Decimal, InvalidOperation

import httpx
from loguru import logger

CENT = Decimal("0.01")


class CurrencyNormalizer:
    def __init__(
        self,
        home_currency: str = "ARS",
        urls: dict[str, str] | None = None,
        fallback_rates: dict[str, Decimal] | None = None,
        ttl_seconds: float = 1800,
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.home_currency = home_currency.upper()
        self.urls = {k.upper(): v for k, v in (urls or {}).items()}
        self.fallback_rates = {k.upper(): Decimal(str(v)) for k, v in (fallback_rates or {}).items()}
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._clock = clock
        self._rates: dict[str, Decimal] = {}
        self._fetched_at: float | None = None
        self._failed_at: float | None = None
        self._lock = asyncio.Lock()

    def prime(self, rates: dict[str, Decimal], fetched_at: float | None = None) -> None:
        """Seed the cache, e.g. at startup or in tests."""
        self._rates = {k.upper(): Decimal(str(v)) for k, v in rates.items()}
        self._fetched_at = self._clock() if fetched_at is None else fetched_at

    def _is_fresh(self) -> bool:
        return (
            self._fetched_at is not None
            and bool(self._rates)
            and self._clock() - self._fetched_at < self.ttl_seconds
        )

    def _backing_off(self) -> bool:
        return self._failed_at is not None and self._clock() - self._failed_at < self.ttl_seconds

    def _last_known(self) -> dict[str, Decimal]:
        return dict(self._rates) if self._rates else dict(self.fallback_rates)

    async def get_rates(self) -> dict[str, Decimal]:
        if self._is_fresh():
            return dict(self._rates)
        if self._backing_off():
            return self._last_known()

        async with self._lock:
            # Another task may have refreshed, or failed to, while we waited.
            if self._is_fresh():
                return dict(self._rates)
            if self._backing_off():
                return self._last_known()
            try:
                rates = await self._fetch_all()
            except (httpx.HTTPError, KeyError, TypeError, ValueError, InvalidOperation) as e:
                self._failed_at = self._clock()
                source = "cached" if self._rates else "fallback"
                logger.warning("Rate refresh failed, using {} rates until {}s pass: {}", source, self.ttl_seconds, e)
                return self._last_known()

            self._rates = rates
            self._fetched_at = self._clock()
            self._failed_at = None
            logger.info("Exchange rates refreshed: {}", {k: str(v) for k, v in rates.items()})
            return dict(rates)

    async def _fetch_all(self) -> dict[str, Decimal]:
        if not self.urls:
            raise ValueError("no rate endpoints configured")

        if self._client is not None:
            return await self._fetch_with(self._client)
        async with httpx.AsyncClient() as client:
            return await self._fetch_with(client)

    async def _fetch_with(self, client: httpx.AsyncClient) -> dict[str, Decimal]:
        currencies = list(self.urls)
        values = await asyncio.gather(
            *(self._fetch_one(client, self.urls[c]) for c in currencies)
        )
        return dict(zip(currencies, values))

    async def _fetch_one(self, client: httpx.AsyncClient, url: str) -> Decimal:
        response = await client.get(url, timeout=self.timeout_seconds)
        response.raise_for_status()
        rate = Decimal(str(response.json()["venta"]))
        if not rate.is_finite() or rate <= 0:
            raise ValueError(f"bad rate from {url}: {rate}")
        return rate

    async def convert(self, amount: Decimal, currency: str | None) -> Decimal:
        """Convert ``amount`` in ``currency`` to the home currency."""
        if not currency or currency.upper() == self.home_currency:
            return amount

        rates = await self.get_rates()
        rate = rates.get(currency.upper())
        if rate is None:
            logger.warning("No rate for {}, keeping amount unconverted", currency)
            return amount
        return (amount * rate).quantize(CENT)
