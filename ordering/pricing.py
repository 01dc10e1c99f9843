"""Pricing for cart lines and orders.

All amounts are ``Decimal`` in major currency units (pounds). The only place
that produces minor units (pence) for the payment provider is
:func:`to_minor_units`, so the amount charged and the total stored on the
order are derived from the same numbers.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Sequence

from .schemas import SelectedOption

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0")


def quantize_money(amount) -> Decimal:
    return Decimal(amount).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def to_minor_units(amount) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def unit_price(base_price, selected_options: Iterable[SelectedOption]) -> Decimal:
    modifiers = sum((Decimal(opt.price_modifier) for opt in selected_options), ZERO)
    return Decimal(base_price) + modifiers


def line_total(base_price, selected_options: Iterable[SelectedOption], quantity: int) -> Decimal:
    # a negative result is possible with negative modifiers and is not clamped
    return quantize_money(unit_price(base_price, selected_options) * quantity)


def order_total(line_totals: Iterable[Decimal], delivery_fee=None) -> Decimal:
    subtotal = sum((Decimal(amount) for amount in line_totals), ZERO)
    return quantize_money(subtotal + Decimal(delivery_fee or 0))


@dataclass
class PricedLine:
    """One cart line with the product snapshot it was read with."""

    product_id: int
    product_name: str
    base_price: Decimal
    quantity: int
    selected_options: List[SelectedOption] = field(default_factory=list)
    special_instructions: Optional[str] = None
    available_for_delivery: bool = True
    available_for_pickup: bool = True

    @property
    def unit_price(self) -> Decimal:
        return quantize_money(unit_price(self.base_price, self.selected_options))

    @property
    def line_total(self) -> Decimal:
        return line_total(self.base_price, self.selected_options, self.quantity)

    @property
    def description(self) -> Optional[str]:
        names = [opt.name for opt in self.selected_options]
        return ", ".join(names) if names else None


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    delivery_fee: Decimal
    total: Decimal


def price_lines(lines: Sequence[PricedLine], delivery_fee=None) -> OrderTotals:
    fee = quantize_money(delivery_fee or 0)
    subtotal = order_total(line.line_total for line in lines)
    return OrderTotals(
        subtotal=subtotal,
        delivery_fee=fee,
        total=order_total([subtotal], fee),
    )
