"""
Test suite for currency module

Tests Money arithmetic, currency precision and round-half-even quantization.
Monetary math must never drift: every result is checked to the minor unit.
"""

import pytest
from decimal import Decimal

from ledger_core.currency import Money, Currency, quantize, to_decimal
from ledger_core.errors import ValidationError


class TestCurrency:
    """Test Currency enum behavior"""

    def test_currency_precision(self):
        assert Currency.USD.precision == 2
        assert Currency.JPY.precision == 0
        assert Currency.USD.minor_unit == Decimal("0.01")
        assert Currency.JPY.minor_unit == Decimal("1")

    def test_from_code_is_case_insensitive(self):
        assert Currency.from_code("usd") == Currency.USD
        assert Currency.from_code(" eur ") == Currency.EUR
        assert Currency.from_code(Currency.GBP) == Currency.GBP

    def test_from_code_rejects_unknown(self):
        with pytest.raises(ValidationError):
            Currency.from_code("XYZ")


class TestQuantize:
    """Round-half-even at the currency precision"""

    def test_half_even_rounding(self):
        assert quantize(Decimal("10.005"), Currency.USD) == Decimal("10.00")
        assert quantize(Decimal("10.015"), Currency.USD) == Decimal("10.02")
        assert quantize(Decimal("10.0151"), Currency.USD) == Decimal("10.02")

    def test_zero_precision_currency(self):
        assert quantize(Decimal("100.5"), Currency.JPY) == Decimal("100")
        assert quantize(Decimal("101.5"), Currency.JPY) == Decimal("102")

    def test_to_decimal(self):
        assert to_decimal("12.50") == Decimal("12.50")
        assert to_decimal(7) == Decimal("7")
        assert to_decimal(0.1) == Decimal("0.1")

    def test_to_decimal_rejects_garbage(self):
        with pytest.raises(ValidationError):
            to_decimal("abc")
        with pytest.raises(ValidationError):
            to_decimal("NaN")
        with pytest.raises(ValidationError):
            to_decimal("Infinity")


class TestMoney:
    """Test Money value object"""

    def test_money_is_quantized_on_creation(self):
        money = Money(Decimal("19.999"), Currency.USD)
        assert money.amount == Decimal("20.00")
        assert Money("5", Currency.EUR).amount == Decimal("5.00")

    def test_addition_and_subtraction(self):
        a = Money(Decimal("100.10"), Currency.USD)
        b = Money(Decimal("0.25"), Currency.USD)
        assert (a + b).amount == Decimal("100.35")
        assert (a - b).amount == Decimal("99.85")

    def test_mixed_currency_arithmetic_rejected(self):
        usd = Money(Decimal("1.00"), Currency.USD)
        eur = Money(Decimal("1.00"), Currency.EUR)
        with pytest.raises(ValidationError):
            usd + eur
        with pytest.raises(ValidationError):
            usd < eur

    def test_multiplication_and_division_round(self):
        money = Money(Decimal("10.00"), Currency.USD)
        assert (money / 3).amount == Decimal("3.33")
        assert (money * Decimal("0.005")).amount == Decimal("0.05")

    def test_comparisons(self):
        small = Money(Decimal("1.00"), Currency.USD)
        large = Money(Decimal("2.00"), Currency.USD)
        assert small < large
        assert large >= small
        assert max(small, large) == large
        assert Money.zero(Currency.USD).is_zero()
        assert (small - large).is_negative()
        assert large.is_positive()

    def test_equality_and_hash(self):
        a = Money(Decimal("1.50"), Currency.USD)
        b = Money(Decimal("1.5"), Currency.USD)
        assert a == b
        assert hash(a) == hash(b)
        assert a != Money(Decimal("1.50"), Currency.EUR)
        assert a != "1.50"

    def test_dict_round_trip(self):
        money = Money(Decimal("1066.19"), Currency.EUR)
        data = money.to_dict()
        assert data == {"amount": "1066.19", "currency": "EUR"}
        assert Money.from_dict(data) == money

    def test_to_string(self):
        assert Money(Decimal("1234.5"), Currency.USD).to_string() == "USD 1,234.50"
        assert Money(Decimal("1234.5"), Currency.JPY).to_string() == "JPY 1,234"
