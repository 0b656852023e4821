from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict

from errors import ValidationError


CENT = Decimal("0.01")

MEMBER_RATE = Decimal("0.10")
CREATOR_RATE = Decimal("0.70")
PLATFORM_RATE = Decimal("0.20")

MAX_SALE_AMOUNT = Decimal("1000000")


def validate_sale_amount(amount, ceiling: Decimal = MAX_SALE_AMOUNT) -> Decimal:
    """
    amount: anything Decimal() accepts (str, int, Decimal)
    returns the amount as a Decimal quantized to cents.
    rejects non-finite, negative, above-ceiling and sub-cent amounts.
    """
    if isinstance(amount, float):
        # go through str so 49.99 stays 49.99
        amount = str(amount)
    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid sale amount: {amount!r}")

    if not value.is_finite():
        raise ValidationError(f"Sale amount must be finite, got {amount!r}")
    if value < 0:
        raise ValidationError(f"Sale amount must be non-negative, got {value}")
    if value > ceiling:
        raise ValidationError(f"Sale amount {value} exceeds maximum {ceiling}")
    if value != value.quantize(CENT):
        raise ValidationError(f"Sale amount {value} has more than two decimal places")

    return value.quantize(CENT)


def compute_split(sale_amount: Decimal) -> Dict[str, Decimal]:
    """
    sale_amount: Decimal, already validated
    member 10% and creator 70% round half-up to the cent on their own;
    the platform takes what is left so the three always sum to the sale.
    """
    sale = Decimal(sale_amount).quantize(CENT)
    member_share = (sale * MEMBER_RATE).quantize(CENT, rounding=ROUND_HALF_UP)
    creator_share = (sale * CREATOR_RATE).quantize(CENT, rounding=ROUND_HALF_UP)
    platform_share = sale - member_share - creator_share

    return {
        "member_share": member_share,
        "creator_share": creator_share,
        "platform_share": platform_share,
    }
