"""Currency helpers shared by the ledger, spending policy and settlement."""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from group_ordering.core.exceptions import InvalidRequest

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value, field: str = "amount") -> Decimal:
    """
    Convert user input to a Decimal in whole cents.

    Floats go through ``str`` first so 19.99 stays 19.99 rather than
    19.989999999999998436805981327779591083526611328125.

    Raises:
        InvalidRequest: If the value is not a finite number or carries
            fractions of a cent
    """
    if isinstance(value, bool):
        raise InvalidRequest(f"{field} must be a number")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidRequest(f"{field} must be a number")
    if not amount.is_finite():
        raise InvalidRequest(f"{field} must be a finite number")
    quantized = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    if quantized != amount:
        raise InvalidRequest(f"{field} must not have more than two decimal places")
    return quantized


def to_cents(amount: Decimal) -> int:
    return int((amount / CENT).to_integral_value(rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) * CENT).quantize(CENT)
