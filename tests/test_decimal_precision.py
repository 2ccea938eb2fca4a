"""
Regression Tests for Decimal Precision in Swap Amounts
Naira/kobo conversion, token quantization and strict balance comparison
"""

import pytest
from decimal import Decimal

from utils.decimal_precision import MonetaryDecimal


class TestConversion:
    """Test safe conversion to Decimal"""

    def test_float_goes_through_string(self):
        assert MonetaryDecimal.to_decimal(0.1) == Decimal("0.1")

    def test_none_and_garbage_become_zero(self):
        assert MonetaryDecimal.to_decimal(None) == Decimal("0")
        assert MonetaryDecimal.to_decimal("not-a-number") == Decimal("0")

    @pytest.mark.parametrize("value,expected", [
        ("10", Decimal("10")),
        (" 0.5 ", Decimal("0.5")),
        (Decimal("3"), Decimal("3")),
        ("0", None),
        ("-1", None),
        ("NaN", None),
        ("Infinity", None),
        (True, None),
        ("", None),
    ])
    def test_parse_positive(self, value, expected):
        assert MonetaryDecimal.parse_positive(value) == expected


class TestKobo:
    """Paystack amounts are integer kobo"""

    def test_to_kobo(self):
        assert MonetaryDecimal.to_kobo(Decimal("600000")) == 60000000
        assert MonetaryDecimal.to_kobo("1234.565") == 123457

    def test_from_kobo(self):
        assert MonetaryDecimal.from_kobo(30000000) == Decimal("300000.00")
        assert MonetaryDecimal.from_kobo("99") == Decimal("0.99")

    def test_kobo_round_trip_is_exact_at_ngn_precision(self):
        amount = Decimal("987654.32")
        assert MonetaryDecimal.from_kobo(MonetaryDecimal.to_kobo(amount)) == amount


class TestQuantization:
    """Precision per asset"""

    def test_token_amounts_round_down_to_base_unit(self):
        assert MonetaryDecimal.quantize_token("1.0000000019") == Decimal("1.000000001")

    def test_rate_precision(self):
        assert MonetaryDecimal.quantize_rate("1600.123456789") == Decimal("1600.12345679")


class TestBalanceComparison:
    """Admission uses exact comparison, no tolerance"""

    def test_exact_balance_is_sufficient(self):
        assert MonetaryDecimal.is_sufficient_balance(Decimal("600000"), Decimal("600000.00"))

    def test_one_kobo_short_is_insufficient(self):
        assert not MonetaryDecimal.is_sufficient_balance(Decimal("599999.99"), Decimal("600000"))


class TestFormatting:
    def test_format_ngn(self):
        assert MonetaryDecimal.format_ngn(Decimal("1000000")) == "₦1,000,000.00"

    def test_format_token_strips_trailing_zeros(self):
        assert MonetaryDecimal.format_token(Decimal("150.500"), "USDC") == "150.5 USDC"
        assert MonetaryDecimal.format_token(Decimal("0"), "SUI") == "0 SUI"
