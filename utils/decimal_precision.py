#!/usr/bin/env python3
"""
Decimal Precision Utilities for Swap Amounts
Enforces consistent Decimal usage for Naira and token quantities
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, ROUND_DOWN, InvalidOperation, getcontext
from typing import Union, Optional

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 38

Numeric = Union[str, int, float, Decimal]


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    NGN_PRECISION = Decimal("0.01")  # 2 decimal places for NGN (kobo)
    TOKEN_PRECISION = Decimal("0.000000001")  # 9 decimal places (SUI base unit)
    RATE_PRECISION = Decimal("0.00000001")  # 8 decimal places for exchange rates
    KOBO_PER_NAIRA = Decimal("100")

    @classmethod
    def to_decimal(cls, value: Numeric, context: str = "monetary") -> Decimal:
        """Safely convert any numeric value to Decimal with validation"""
        if value is None:
            return Decimal("0")

        if isinstance(value, Decimal):
            return value

        try:
            # Convert to string first to avoid float precision issues
            decimal_value = Decimal(str(value).strip())

            if decimal_value.is_finite() and abs(decimal_value) > Decimal("999999999999"):
                logger.warning(
                    f"Unusually large monetary value: {decimal_value} in context: {context}"
                )

            return decimal_value
        except (InvalidOperation, ValueError, TypeError) as e:
            logger.error(
                f"Failed to convert {value} to Decimal in context {context}: {e}"
            )
            return Decimal("0")

    @classmethod
    def parse_positive(cls, value, context: str = "amount") -> Optional[Decimal]:
        """Return a positive finite Decimal, or None when the value is not one"""
        if value is None or isinstance(value, bool):
            return None
        try:
            decimal_value = value if isinstance(value, Decimal) else Decimal(str(value).strip())
        except (InvalidOperation, ValueError, TypeError):
            logger.debug(f"Rejected non-numeric {context}: {value!r}")
            return None
        if not decimal_value.is_finite() or decimal_value <= 0:
            return None
        return decimal_value

    @classmethod
    def quantize_ngn(cls, amount: Numeric) -> Decimal:
        """Quantize amount to NGN precision (2 decimal places)"""
        decimal_amount = cls.to_decimal(amount, "NGN")
        return decimal_amount.quantize(cls.NGN_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_token(cls, amount: Numeric) -> Decimal:
        """Quantize token amount down to its base unit"""
        decimal_amount = cls.to_decimal(amount, "token")
        return decimal_amount.quantize(cls.TOKEN_PRECISION, rounding=ROUND_DOWN)

    @classmethod
    def quantize_rate(cls, rate: Numeric) -> Decimal:
        """Quantize exchange rate to high precision (8 decimal places)"""
        decimal_rate = cls.to_decimal(rate, "exchange_rate")
        return decimal_rate.quantize(cls.RATE_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def to_kobo(cls, amount_ngn: Numeric) -> int:
        """Naira to integer kobo, as the payment rail expects"""
        return int(cls.quantize_ngn(amount_ngn) * cls.KOBO_PER_NAIRA)

    @classmethod
    def from_kobo(cls, amount_kobo: Numeric) -> Decimal:
        """Integer kobo from the payment rail back to Naira"""
        return cls.quantize_ngn(cls.to_decimal(amount_kobo, "kobo") / cls.KOBO_PER_NAIRA)

    @classmethod
    def is_sufficient_balance(cls, available: Numeric, required: Numeric) -> bool:
        """Strict comparison, no rounding tolerance for admission control"""
        return cls.to_decimal(available, "balance_available") >= cls.to_decimal(
            required, "balance_required"
        )

    @classmethod
    def format_ngn(cls, amount: Numeric) -> str:
        """Format amount as NGN string with proper precision"""
        amount_decimal = cls.quantize_ngn(amount)
        return f"₦{amount_decimal:,.2f}"

    @classmethod
    def format_token(cls, amount: Numeric, token: str) -> str:
        """Format token amount without trailing zeros"""
        amount_decimal = cls.quantize_token(amount)
        formatted = f"{amount_decimal:f}".rstrip("0").rstrip(".")
        return f"{formatted or '0'} {token}"
