"""
Test suite for currency module

Money must never lose precision: every amount is a Decimal quantized to the
currency's minor unit with ROUND_HALF_UP.
"""

import pytest
from decimal import Decimal

from ndalama_hub.currency import Money, Currency, sum_money


class TestCurrency:

    def test_precision(self):
        assert Currency.MWK.precision == 2
        assert Currency.JPY.precision == 0
        assert Currency.MWK.quantum == Decimal('0.01')
        assert Currency.JPY.quantum == Decimal('1')

    def test_lookup_by_code(self):
        assert Currency['ZMW'].code == "ZMW"


class TestMoney:

    def test_quantizes_half_up(self):
        assert Money(Decimal('1.005'), Currency.MWK).amount == Decimal('1.01')
        assert Money(Decimal('1.004'), Currency.MWK).amount == Decimal('1.00')
        assert Money(Decimal('2.5'), Currency.JPY).amount == Decimal('3')

    def test_accepts_strings_and_ints(self):
        assert Money('10.5', Currency.USD).amount == Decimal('10.50')
        assert Money(7, Currency.USD).amount == Decimal('7.00')

    def test_arithmetic(self):
        a = Money(Decimal('100.00'), Currency.MWK)
        b = Money(Decimal('33.33'), Currency.MWK)

        assert (a + b).amount == Decimal('133.33')
        assert (a - b).amount == Decimal('66.67')
        assert (a * Decimal('0.0125')).amount == Decimal('1.25')
        assert (a / 3).amount == Decimal('33.33')
        assert (-b).amount == Decimal('-33.33')

    def test_currency_mismatch_rejected(self):
        with pytest.raises(ValueError, match="Cannot add"):
            Money(Decimal('1'), Currency.MWK) + Money(Decimal('1'), Currency.ZMW)

        with pytest.raises(ValueError, match="Cannot compare"):
            Money(Decimal('1'), Currency.MWK) < Money(Decimal('1'), Currency.ZMW)

    def test_equality_and_hash(self):
        a = Money(Decimal('5.00'), Currency.MWK)
        b = Money(Decimal('5'), Currency.MWK)
        assert a == b
        assert hash(a) == hash(b)
        assert a != Money(Decimal('5'), Currency.ZMW)

    def test_sign_helpers(self):
        assert Money.zero(Currency.MWK).is_zero()
        assert Money('0.01', Currency.MWK).is_positive()
        assert Money('-0.01', Currency.MWK).is_negative()

    def test_to_string(self):
        assert Money(Decimal('1234567.8'), Currency.MWK).to_string() == "MWK 1,234,567.80"
        assert Money(Decimal('1500'), Currency.JPY).to_string() == "JPY 1,500"


class TestHelpers:

    def test_sum_money(self):
        values = [Money('10.10', Currency.MWK), Money('20.20', Currency.MWK)]
        assert sum_money(values, Currency.MWK).amount == Decimal('30.30')
        assert sum_money([], Currency.MWK) == Money.zero(Currency.MWK)
