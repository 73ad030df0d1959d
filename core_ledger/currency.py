"""
Base Currency Module

The ledger runs in a single base currency. Amounts are fixed-point Decimals
quantized to the currency's precision; NEVER uses float for monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from enum import Enum
from typing import Union

from .errors import ValidationError, RejectionReason

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 code, display symbol and precision of the base currency"""
    INR = ("INR", "₹", 2)

    def __init__(self, code: str, symbol: str, precision: int):
        self.code = code
        self.symbol = symbol
        self.precision = precision


BASE_CURRENCY = Currency.INR

AmountLike = Union[Decimal, int, str, float]


def quantize(value: Decimal, currency: Currency = BASE_CURRENCY) -> Decimal:
    """Round a Decimal to the currency precision"""
    return value.quantize(
        Decimal('0.1') ** currency.precision,
        rounding=ROUND_HALF_UP
    )


def to_amount(value: AmountLike, currency: Currency = BASE_CURRENCY) -> Decimal:
    """
    Convert caller input to a quantized Decimal amount

    Args:
        value: Decimal, int, numeric string or float (converted through str)
        currency: Currency defining precision

    Returns:
        Decimal rounded to the currency precision

    Raises:
        ValidationError: If the value is missing, not numeric, not finite or too large
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(RejectionReason.INVALID_AMOUNT, "Amount is required")

    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(
                RejectionReason.INVALID_AMOUNT,
                f"Amount '{value}' is not a valid number"
            )

    if not amount.is_finite():
        raise ValidationError(RejectionReason.INVALID_AMOUNT, "Amount must be a finite number")

    try:
        return quantize(amount, currency)
    except InvalidOperation:
        # More digits than the decimal context can hold at currency precision
        raise ValidationError(
            RejectionReason.INVALID_AMOUNT,
            f"Amount '{value}' is too large"
        )


def format_amount(amount: Decimal, currency: Currency = BASE_CURRENCY) -> str:
    """Format for display, e.g. ₹15,000 or ₹99.50"""
    if amount == amount.to_integral_value():
        return f"{currency.symbol}{amount:,.0f}"
    return f"{currency.symbol}{amount:,.{currency.precision}f}"
