"""Integer-cent arithmetic helpers."""
from decimal import ROUND_HALF_UP, Decimal


def percent_of(amount_cents: int, percent: int) -> int:
    """
    Return ``percent`` of ``amount_cents``, rounded half-up to a whole cent.

    >>> percent_of(2700, 15)
    405
    >>> percent_of(1001, 50)
    501
    """
    value = Decimal(amount_cents) * Decimal(percent) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
