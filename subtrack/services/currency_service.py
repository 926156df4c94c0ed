"""
Currency Service — exchange rates and amount conversion
========================================================

PURPOSE:
    1. **ExchangeRateClient** — GET {api_url}/{api_key}/latest/{base} against
       an exchangerate-api.com compatible endpoint.
    2. **ExchangeRateCache** — per-base-currency rate tables with a
       freshness window. Injectable (clock) so tests can age entries.
    3. **CurrencyService.convert()** — amount conversion between two
       supported currencies.

DEGRADED MODE:
    When the rate API is unreachable, answers non-2xx, reports
    result != "success", or no API key is configured, rates are derived
    from FALLBACK_USD_VALUE (approximate) and cached for the shorter
    fallback window so the real API is retried soon. Every fallback is
    logged at WARNING.

CACHE POLICY:
    One canonical freshness window (settings.exchange_rate_ttl_seconds,
    default 1 hour). Entries expire independently per base currency.
    Writes are last-writer-wins; concurrent refreshes fetch the same
    external truth, so no locking.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

import httpx

from subtrack.config import settings
from subtrack.core.errors import RateUnavailable
from subtrack.models.currency import (
    CURRENCY_SYMBOLS,
    CurrencyCode,
    ExchangeRateTable,
    parse_currency,
)

logger = logging.getLogger(__name__)

__all__ = [
    "CurrencyService",
    "ExchangeRateCache",
    "ExchangeRateClient",
    "FALLBACK_USD_VALUE",
    "FetchResult",
    "fallback_table",
    "format_amount",
    "get_currency_service",
]

Clock = Callable[[], datetime]

# Value of one unit of each currency in USD (approximate, static).
FALLBACK_USD_VALUE: Dict[CurrencyCode, float] = {
    CurrencyCode.USD: 1.0,
    CurrencyCode.EUR: 1.08,
    CurrencyCode.GBP: 1.27,
    CurrencyCode.JPY: 0.0067,
    CurrencyCode.AUD: 0.66,
    CurrencyCode.CAD: 0.74,
    CurrencyCode.INR: 0.012,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def fallback_table(base: CurrencyCode, now: datetime) -> ExchangeRateTable:
    """Rate table for *base* derived from the static USD values."""
    base_value = FALLBACK_USD_VALUE[base]
    rates = {code.value: base_value / value for code, value in FALLBACK_USD_VALUE.items()}
    return ExchangeRateTable(
        base_currency=base,
        rates=rates,
        fetched_at=now,
        is_fallback=True,
        source="fallback",
    )


def format_amount(amount: float, currency) -> str:
    """Render *amount* with the currency symbol and two decimals."""
    code = parse_currency(currency)
    symbol = CURRENCY_SYMBOLS[code]
    sign = "-" if amount < 0 else ""
    return f"{sign}{symbol}{abs(amount):,.2f}"


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FetchResult:
    success: bool
    rates: Optional[Dict[str, float]] = None
    error: Optional[str] = None
    status_code: int = 0


_http_client: Optional[httpx.AsyncClient] = None


def _get_http_client() -> httpx.AsyncClient:
    """Return shared httpx.AsyncClient, creating on first use."""
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.exchange_rate_timeout_s),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )
    return _http_client


async def close_http_client() -> None:
    """Gracefully close the shared rate-API client at shutdown."""
    global _http_client
    if _http_client and not _http_client.is_closed:
        await _http_client.aclose()
        _http_client = None


class ExchangeRateClient:
    """Async HTTP client for the exchange-rate API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = (base_url or settings.exchange_rate_api_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.exchange_rate_api_key
        self._timeout = timeout or settings.exchange_rate_timeout_s
        self._http_client = http_client

    async def latest(self, base: CurrencyCode) -> FetchResult:
        """GET /latest/{base}. Never raises; failures come back as FetchResult."""
        if not self._api_key:
            return FetchResult(success=False, error="exchange rate API key not configured")

        url = f"{self._base_url}/{self._api_key}/latest/{base.value}"
        client = self._http_client or _get_http_client()
        try:
            resp = await client.get(url, timeout=self._timeout)
        except httpx.HTTPError as e:
            return FetchResult(success=False, error=f"{type(e).__name__}: {e}")

        if resp.status_code != 200:
            return FetchResult(success=False, error=f"HTTP {resp.status_code}", status_code=resp.status_code)

        try:
            data = resp.json()
        except ValueError:
            return FetchResult(success=False, error="invalid JSON", status_code=resp.status_code)

        if not isinstance(data, dict):
            return FetchResult(success=False, error="bad payload", status_code=resp.status_code)

        rates = data.get("conversion_rates")
        if data.get("result") != "success" or not isinstance(rates, dict):
            error = data.get("error-type", "unsuccessful result")
            return FetchResult(success=False, error=error, status_code=resp.status_code)

        return FetchResult(
            success=True,
            rates={str(k): float(v) for k, v in rates.items()},
            status_code=resp.status_code,
        )


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class ExchangeRateCache:
    """Rate tables keyed by base currency, each with its own age."""

    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        fallback_ttl_seconds: Optional[int] = None,
        clock: Clock = _utcnow,
    ):
        self.ttl = timedelta(seconds=ttl_seconds if ttl_seconds is not None else settings.exchange_rate_ttl_seconds)
        self.fallback_ttl = timedelta(
            seconds=fallback_ttl_seconds
            if fallback_ttl_seconds is not None
            else settings.exchange_rate_fallback_ttl_seconds
        )
        self._clock = clock
        self._tables: Dict[CurrencyCode, ExchangeRateTable] = {}

    def get(self, base: CurrencyCode) -> Optional[ExchangeRateTable]:
        """Return the cached table for *base* if still fresh."""
        table = self._tables.get(base)
        if table is None:
            return None
        window = self.fallback_ttl if table.is_fallback else self.ttl
        if self._clock() - table.fetched_at >= window:
            return None
        return table

    def put(self, table: ExchangeRateTable) -> None:
        self._tables[table.base_currency] = table

    def clear(self) -> None:
        self._tables.clear()

    def __len__(self) -> int:
        return len(self._tables)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class CurrencyService:
    """Converts amounts between supported currencies."""

    def __init__(
        self,
        client: Optional[ExchangeRateClient] = None,
        cache: Optional[ExchangeRateCache] = None,
        clock: Clock = _utcnow,
    ):
        self._client = client or ExchangeRateClient()
        self._clock = clock
        self._cache = cache or ExchangeRateCache(clock=clock)

    @property
    def cache(self) -> ExchangeRateCache:
        return self._cache

    async def get_rates(self, base) -> ExchangeRateTable:
        """Fresh rate table for *base*, fetching or falling back as needed."""
        base = parse_currency(base)
        cached = self._cache.get(base)
        if cached is not None:
            return cached

        result = await self._client.latest(base)
        now = self._clock()
        if result.success:
            table = ExchangeRateTable(base_currency=base, rates=result.rates, fetched_at=now)
            logger.info("Fetched exchange rates for %s (%d currencies)", base.value, len(table.rates))
        else:
            logger.warning(
                "Exchange rate fetch for %s failed (%s); using fallback rates",
                base.value, result.error,
            )
            table = fallback_table(base, now)

        self._cache.put(table)
        return table

    async def convert(self, amount: float, from_currency, to_currency) -> float:
        """Convert *amount* from one currency to another.

        Same-currency conversion returns *amount* unchanged without touching
        the cache or network. Raises RateUnavailable if the table for
        *from_currency* has no rate for *to_currency*.
        """
        src = parse_currency(from_currency)
        dst = parse_currency(to_currency)
        if src == dst:
            return amount

        table = await self.get_rates(src)
        rate = table.rate_for(dst)
        if rate is None:
            raise RateUnavailable(src.value, dst.value)
        return amount * rate


_service: Optional[CurrencyService] = None


def get_currency_service() -> CurrencyService:
    """Process-wide CurrencyService (shared rate cache)."""
    global _service
    if _service is None:
        _service = CurrencyService()
    return _service
