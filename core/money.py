"""
Fixed-point money helpers.

Amounts are ``Decimal`` with two fractional digits everywhere in the
service; minor units (cents, poisha) exist only at provider boundaries.
"""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Union

CENT = Decimal("0.01")

MoneyLike = Union[Decimal, int, str]


def to_money(value: MoneyLike) -> Decimal:
    """
    Convert to a two-decimal ``Decimal``.

    Floats are rejected: ``Decimal(0.1)`` already carries binary
    rounding error.
    """
    if isinstance(value, float):
        raise TypeError("Money values must not be floats")
    try:
        amount = Decimal(value)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid money amount: {value!r}") from exc
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def line_subtotal(unit_price: MoneyLike, quantity: int) -> Decimal:
    """unit_price x quantity, fixed to two decimals."""
    return to_money(to_money(unit_price) * quantity)


def total(amounts: Iterable[Decimal]) -> Decimal:
    return to_money(sum(amounts, Decimal("0")))


def to_minor_units(amount: MoneyLike) -> int:
    """
    Convert to the smallest currency unit.

    Example: to_minor_units(Decimal("55.00")) == 5500
    """
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(minor: int) -> Decimal:
    return to_money(Decimal(minor) / 100)


def format_money(amount: MoneyLike) -> str:
    """Two-decimal string, e.g. for providers that take decimal strings."""
    return f"{to_money(amount):.2f}"
