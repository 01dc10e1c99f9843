from decimal import Decimal

import pytest

from ordering import errors
from ordering.payments import build_line_items
from ordering.pricing import (
    PricedLine,
    line_total,
    order_total,
    price_lines,
    to_minor_units,
)
from ordering.schemas import SelectedOption


def opt(name, modifier, option_id=1):
    return SelectedOption(
        group_id=1, group_name="Extras", option_id=option_id, name=name, price_modifier=Decimal(modifier)
    )


def test_line_total_without_options():
    assert line_total(Decimal("5.00"), [], 2) == Decimal("10.00")
    assert line_total(Decimal("5.00"), [], 3) == Decimal("15.00")


def test_line_total_adds_modifiers_before_multiplying():
    assert line_total(Decimal("8.00"), [opt("Extra Cheese", "1.50")], 1) == Decimal("9.50")
    options = [opt("Extra Cheese", "1.50"), opt("Olives", "0.80", 2)]
    assert line_total(Decimal("8.00"), options, 2) == Decimal("20.60")


def test_negative_modifier_is_applied():
    assert line_total(Decimal("5.00"), [opt("No Sauce", "-1.00")], 2) == Decimal("8.00")


def test_order_total_defaults_delivery_fee_to_zero():
    assert order_total([Decimal("10.00"), Decimal("9.50")]) == Decimal("19.50")
    assert order_total([Decimal("10.00"), Decimal("9.50")], Decimal("2.50")) == Decimal("22.00")


def test_price_lines_total_is_subtotal_plus_fee():
    lines = [
        PricedLine(product_id=1, product_name="Bread", base_price=Decimal("5.00"), quantity=2),
        PricedLine(
            product_id=2,
            product_name="Pizza",
            base_price=Decimal("8.00"),
            quantity=1,
            selected_options=[opt("Extra Cheese", "1.50")],
        ),
    ]
    totals = price_lines(lines, Decimal("2.5"))
    assert totals.subtotal == Decimal("19.50")
    assert totals.delivery_fee == Decimal("2.50")
    assert totals.total == totals.subtotal + totals.delivery_fee


@pytest.mark.parametrize(
    "amount, expected",
    [
        (Decimal("9.50"), 950),
        ("19.99", 1999),
        (Decimal("0.125"), 13),
        (Decimal("0.005"), 1),
        (Decimal("0"), 0),
    ],
)
def test_to_minor_units_rounds_half_up(amount, expected):
    assert to_minor_units(amount) == expected


@pytest.mark.parametrize(
    "base, modifiers, quantity",
    [
        ("5.00", [], 3),
        ("8.00", ["1.50"], 1),
        ("3.33", ["0.10", "0.07"], 7),
        ("12.99", ["2.50", "-1.00"], 4),
    ],
)
def test_pounds_and_pence_agree(base, modifiers, quantity):
    options = [opt(f"o{i}", m, i) for i, m in enumerate(modifiers)]
    in_pounds = to_minor_units(line_total(Decimal(base), options, quantity))
    in_pence = (to_minor_units(base) + sum(to_minor_units(m) for m in modifiers)) * quantity
    assert in_pounds == in_pence


def test_description_lists_option_names():
    line = PricedLine(
        product_id=2,
        product_name="Pizza",
        base_price=Decimal("8.00"),
        quantity=1,
        selected_options=[opt("Extra Cheese", "1.50"), opt("Olives", "0.80", 2)],
    )
    assert line.description == "Extra Cheese, Olives"
    assert PricedLine(product_id=1, product_name="Bread", base_price=Decimal("5"), quantity=1).description is None


def test_line_items_charge_matches_order_total():
    lines = [
        PricedLine(product_id=1, product_name="Bread", base_price=Decimal("3.33"), quantity=3),
        PricedLine(
            product_id=2,
            product_name="Pizza",
            base_price=Decimal("8.00"),
            quantity=2,
            selected_options=[opt("Extra Cheese", "1.50")],
        ),
    ]
    totals = price_lines(lines, Decimal("1.99"))
    items = build_line_items(lines, totals)

    assert [item.unit_amount for item in items] == [333, 950, 199]
    assert items[-1].name == "Delivery fee"
    assert sum(item.unit_amount * item.quantity for item in items) == to_minor_units(totals.total)


def test_line_items_reject_negative_unit_price():
    lines = [
        PricedLine(
            product_id=1,
            product_name="Voucher Bread",
            base_price=Decimal("1.00"),
            quantity=1,
            selected_options=[opt("Discount", "-2.00")],
        )
    ]
    with pytest.raises(errors.ValidationError):
        build_line_items(lines, price_lines(lines))
