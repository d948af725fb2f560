"""Currency-exact helpers; amounts are stored as integer cents."""

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def round2(value: Decimal) -> Decimal:
    """Round half-up to two fractional digits."""

    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: Decimal) -> int:
    return int(round2(value) * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def order_total(rate_per_thousand: Decimal, quantity: int) -> Decimal:
    """Price of `quantity` units at a per-1000 rate."""

    return round2(Decimal(rate_per_thousand) * quantity / 1000)
