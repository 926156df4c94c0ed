"""
Tests for the currency conversion service: HTTP client, cache freshness,
fallback rates and conversion.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from subtrack.core.errors import RateUnavailable, UnknownCurrency
from subtrack.models.currency import CurrencyCode, ExchangeRateTable, parse_currency
from subtrack.services import currency_service
from subtrack.services.currency_service import (
    CurrencyService,
    ExchangeRateCache,
    ExchangeRateClient,
    FetchResult,
    fallback_table,
    format_amount,
)


class FakeClient:
    """Stands in for ExchangeRateClient; records every fetch."""

    def __init__(self, rates=None, fail=False):
        self.rates = rates or {}
        self.fail = fail
        self.calls = []

    async def latest(self, base):
        self.calls.append(base)
        if self.fail:
            return FetchResult(success=False, error="HTTP 503", status_code=503)
        return FetchResult(success=True, rates=dict(self.rates.get(base.value, {})), status_code=200)


def _mock_http(response=None, side_effect=None):
    mock_instance = AsyncMock()
    mock_instance.is_closed = False
    if side_effect is not None:
        mock_instance.get = AsyncMock(side_effect=side_effect)
    else:
        mock_instance.get = AsyncMock(return_value=response)
    return mock_instance


def _response(status_code, payload):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    return resp


@pytest.fixture
def service(clock):
    client = FakeClient(rates={
        "USD": {"EUR": 0.9, "GBP": 0.8, "JPY": 150.0},
        "EUR": {"USD": 1.1},
    })
    svc = CurrencyService(client=client, cache=ExchangeRateCache(3600, 300, clock=clock), clock=clock)
    return svc, client


class TestParseCurrency:
    def test_case_insensitive(self):
        assert parse_currency("eur") == CurrencyCode.EUR

    def test_unknown_rejected(self):
        with pytest.raises(UnknownCurrency) as exc:
            parse_currency("XYZ")
        assert exc.value.code == "STK-FX-002"


class TestExchangeRateTable:
    def test_base_rate_forced_to_one(self):
        table = ExchangeRateTable(CurrencyCode.USD, {"USD": 0.5, "EUR": 0.9}, datetime.now(timezone.utc))
        assert table.rates["USD"] == 1.0

    def test_missing_rate_is_none(self):
        table = ExchangeRateTable(CurrencyCode.USD, {"EUR": 0.9}, datetime.now(timezone.utc))
        assert table.rate_for(CurrencyCode.INR) is None


class TestConvert:
    @pytest.mark.asyncio
    async def test_same_currency_no_fetch(self, service):
        svc, client = service
        assert await svc.convert(42.5, "USD", "USD") == 42.5
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_uses_rate_from_base_table(self, service):
        svc, _ = service
        assert await svc.convert(100.0, "USD", "EUR") == pytest.approx(90.0)

    @pytest.mark.asyncio
    async def test_missing_target_raises_rate_unavailable(self, service):
        svc, _ = service
        with pytest.raises(RateUnavailable) as exc:
            await svc.convert(10.0, "USD", "INR")
        assert exc.value.base == "USD"
        assert exc.value.target == "INR"

    @pytest.mark.asyncio
    async def test_fresh_table_is_reused(self, service, clock):
        svc, client = service
        await svc.convert(1.0, "USD", "EUR")
        clock.advance(minutes=59)
        await svc.convert(1.0, "USD", "GBP")
        assert client.calls == [CurrencyCode.USD]

    @pytest.mark.asyncio
    async def test_stale_table_is_refetched(self, service, clock):
        svc, client = service
        await svc.convert(1.0, "USD", "EUR")
        clock.advance(hours=1)
        await svc.convert(1.0, "USD", "EUR")
        assert client.calls == [CurrencyCode.USD, CurrencyCode.USD]

    @pytest.mark.asyncio
    async def test_tables_cached_per_base(self, service):
        svc, client = service
        await svc.convert(1.0, "USD", "EUR")
        await svc.convert(1.0, "EUR", "USD")
        assert client.calls == [CurrencyCode.USD, CurrencyCode.EUR]
        assert len(svc.cache) == 2


class TestFallback:
    @pytest.mark.asyncio
    async def test_fetch_failure_uses_fallback(self, clock):
        client = FakeClient(fail=True)
        svc = CurrencyService(client=client, cache=ExchangeRateCache(3600, 300, clock=clock), clock=clock)

        table = await svc.get_rates("EUR")

        assert table.is_fallback is True
        assert table.rates["EUR"] == 1.0
        assert table.rates["USD"] == pytest.approx(1.08)

    @pytest.mark.asyncio
    async def test_fallback_expires_sooner(self, clock):
        client = FakeClient(fail=True)
        svc = CurrencyService(client=client, cache=ExchangeRateCache(3600, 300, clock=clock), clock=clock)

        await svc.get_rates("USD")
        clock.advance(seconds=299)
        await svc.get_rates("USD")
        assert len(client.calls) == 1

        clock.advance(seconds=1)
        await svc.get_rates("USD")
        assert len(client.calls) == 2

    def test_fallback_table_cross_rate(self, clock):
        table = fallback_table(CurrencyCode.GBP, clock())
        assert table.rates["EUR"] == pytest.approx(1.27 / 1.08)


class TestExchangeRateClient:
    @pytest.mark.asyncio
    async def test_success(self):
        http = _mock_http(_response(200, {"result": "success", "conversion_rates": {"USD": 1, "EUR": 0.92}}))
        client = ExchangeRateClient(base_url="https://rates.test/v6", api_key="k", timeout=2.0, http_client=http)

        result = await client.latest(CurrencyCode.USD)

        assert result.success is True
        assert result.rates == {"USD": 1.0, "EUR": 0.92}
        http.get.assert_awaited_once_with("https://rates.test/v6/k/latest/USD", timeout=2.0)

    @pytest.mark.asyncio
    async def test_unsuccessful_result(self):
        http = _mock_http(_response(200, {"result": "error", "error-type": "invalid-key"}))
        client = ExchangeRateClient(base_url="https://rates.test/v6", api_key="k", http_client=http)

        result = await client.latest(CurrencyCode.USD)

        assert result.success is False
        assert result.error == "invalid-key"

    @pytest.mark.asyncio
    async def test_non_200(self):
        http = _mock_http(_response(500, {}))
        client = ExchangeRateClient(base_url="https://rates.test/v6", api_key="k", http_client=http)

        result = await client.latest(CurrencyCode.USD)

        assert result.success is False
        assert result.status_code == 500

    @pytest.mark.asyncio
    async def test_network_error(self):
        http = _mock_http(side_effect=httpx.ConnectError("refused"))
        client = ExchangeRateClient(base_url="https://rates.test/v6", api_key="k", http_client=http)

        result = await client.latest(CurrencyCode.USD)

        assert result.success is False
        assert "ConnectError" in result.error

    @pytest.mark.asyncio
    async def test_missing_api_key_skips_network(self):
        http = _mock_http()
        client = ExchangeRateClient(base_url="https://rates.test/v6", api_key="", http_client=http)

        result = await client.latest(CurrencyCode.USD)

        assert result.success is False
        http.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_shared_client_reused_until_closed(self):
        await currency_service.close_http_client()
        http = _mock_http(_response(200, {"result": "success", "conversion_rates": {"EUR": 0.9}}))

        with patch.object(currency_service.httpx, "AsyncClient", return_value=http) as factory:
            client = ExchangeRateClient(base_url="https://rates.test/v6", api_key="k")
            await client.latest(CurrencyCode.USD)
            await client.latest(CurrencyCode.EUR)
            assert factory.call_count == 1

            await currency_service.close_http_client()

        http.aclose.assert_awaited_once()
        assert currency_service._http_client is None


class TestFormatAmount:
    def test_symbol_and_two_decimals(self):
        assert format_amount(1234.5, "USD") == "$1,234.50"

    def test_jpy_keeps_two_decimals(self):
        assert format_amount(1500, "JPY") == "¥1,500.00"

    def test_negative(self):
        assert format_amount(-3.2, "EUR") == "-€3.20"
