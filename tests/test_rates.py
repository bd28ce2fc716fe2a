"""
Tests for rate sources and the currency converter
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import Mock, patch

import httpx

from ledger_core.currency import Currency, Money
from ledger_core.errors import RateStaleError, RateUnavailableError
from ledger_core.rates import CurrencyConverter, HttpRateSource, RateSource, StaticRateSource
from ledger_core.storage import InMemoryStorage


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class TestStaticRateSource:

    def setup_method(self):
        self.source = StaticRateSource()

    def test_rates_pivot_through_usd(self):
        assert self.source.get_rate(Currency.USD, Currency.EUR) == Decimal("0.92")
        assert self.source.get_rate(Currency.EUR, Currency.USD) == Decimal("1") / Decimal("0.92")
        assert self.source.get_rate(Currency.EUR, Currency.GBP) == Decimal("0.79") / Decimal("0.92")

    def test_unknown_pair(self):
        source = StaticRateSource({"USD": Decimal("1"), "EUR": Decimal("0.9")})
        with pytest.raises(RateUnavailableError):
            source.get_rate(Currency.USD, Currency.JPY)

    def test_set_rate(self):
        self.source.set_rate(Currency.EUR, Decimal("0.95"))
        assert self.source.get_rate(Currency.USD, Currency.EUR) == Decimal("0.95")
        assert self.source.all_rates()["EUR"] == Decimal("0.95")
        with pytest.raises(ValueError):
            self.source.set_rate(Currency.EUR, Decimal("0"))


class TestCurrencyConverter:

    def setup_method(self):
        self.clock = FakeClock()
        self.source = Mock(spec=RateSource)
        self.source.get_rate.return_value = Decimal("0.90")
        self.storage = InMemoryStorage()
        self.converter = CurrencyConverter(self.source, validity_seconds=300,
                                           storage=self.storage, clock=self.clock)

    def test_quotes_are_cached_within_validity(self):
        first = self.converter.get_rate(Currency.USD, Currency.EUR)
        self.clock.advance(299)
        second = self.converter.get_rate(Currency.USD, Currency.EUR)

        assert first is second
        assert self.source.get_rate.call_count == 1
        assert first.expires_at == first.as_of + timedelta(seconds=300)

    def test_expired_quote_is_refetched(self):
        self.converter.get_rate(Currency.USD, Currency.EUR)
        self.clock.advance(301)
        self.source.get_rate.return_value = Decimal("0.91")

        quote = self.converter.get_rate(Currency.USD, Currency.EUR)
        assert quote.rate == Decimal("0.91")
        assert self.source.get_rate.call_count == 2

    def test_same_currency_is_rate_one(self):
        quote = self.converter.get_rate(Currency.USD, Currency.USD)
        assert quote.rate == Decimal("1")
        self.source.get_rate.assert_not_called()

    def test_ensure_fresh(self):
        quote = self.converter.get_rate(Currency.USD, Currency.EUR)
        self.converter.ensure_fresh(quote)
        self.clock.advance(300)
        with pytest.raises(RateStaleError):
            self.converter.ensure_fresh(quote)

    def test_convert_rounds_half_even_to_target_precision(self):
        converted = CurrencyConverter.convert(Money(Decimal("100.00"), Currency.USD), Decimal("0.92"), Currency.EUR)
        assert converted == Money(Decimal("92.00"), Currency.EUR)

        yen = CurrencyConverter.convert(Money(Decimal("1.00"), Currency.USD), Decimal("148.5"), Currency.JPY)
        assert yen.amount == Decimal("148")

    def test_source_errors_propagate(self):
        self.source.get_rate.side_effect = RateUnavailableError("down")
        with pytest.raises(RateUnavailableError):
            self.converter.get_rate(Currency.USD, Currency.GBP)

    def test_rate_history(self):
        quote = self.converter.get_rate(Currency.USD, Currency.EUR)
        self.converter.record_history(quote, correlation_id="corr-1")

        history = self.converter.get_rate_history(Currency.USD, Currency.EUR)
        assert len(history) == 1
        assert history[0]["rate"] == "0.90"
        assert history[0]["correlation_id"] == "corr-1"


class TestHttpRateSource:

    def _source(self, client_cls, response=None):
        client = client_cls.return_value
        if response is not None:
            client.get.return_value = response
        return HttpRateSource("http://rates.local/", timeout=1.0, api_key="secret"), client

    @patch("ledger_core.rates.httpx.Client")
    def test_successful_lookup(self, client_cls):
        response = Mock(status_code=200)
        response.json.return_value = {"rate": "0.91"}
        source, client = self._source(client_cls, response)

        assert source.get_rate(Currency.USD, Currency.EUR) == Decimal("0.91")
        client.get.assert_called_once_with(
            "http://rates.local/rates",
            params={"from": "USD", "to": "EUR"},
            headers={"Authorization": "Bearer secret"}
        )

    @patch("ledger_core.rates.httpx.Client")
    def test_non_200_is_unavailable(self, client_cls):
        source, _ = self._source(client_cls, Mock(status_code=404, text="not found"))
        with pytest.raises(RateUnavailableError):
            source.get_rate(Currency.USD, Currency.EUR)

    @patch("ledger_core.rates.httpx.Client")
    def test_transport_error_is_unavailable(self, client_cls):
        source, client = self._source(client_cls)
        client.get.side_effect = httpx.ConnectError("connection refused")
        with pytest.raises(RateUnavailableError):
            source.get_rate(Currency.USD, Currency.EUR)

    @patch("ledger_core.rates.httpx.Client")
    def test_malformed_payload(self, client_cls):
        response = Mock(status_code=200)
        response.json.return_value = {"price": "0.91"}
        source, _ = self._source(client_cls, response)
        with pytest.raises(RateUnavailableError):
            source.get_rate(Currency.USD, Currency.EUR)

    @patch("ledger_core.rates.httpx.Client")
    def test_close(self, client_cls):
        source, client = self._source(client_cls)
        source.close()
        client.close.assert_called_once()
