from decimal import Decimal

import pytest
from pydantic import ValidationError

from rechnung.backends.billing_models import Discount, HeadingLine, ItemLine, parse_positions
from rechnung.backends.pricing import (
    allocate_discount,
    compute_totals,
    negate_items,
    net_discount_amount,
)


def _lines():
    return parse_positions(
        [
            {"type": "heading", "description": "Leistungen"},
            {"type": "item", "description": "A", "quantity": 2, "unitPrice": 100},
            {"type": "item", "description": "B", "quantity": 1, "unitPrice": 50},
        ]
    )


def _items(lines):
    return [line for line in lines if isinstance(line, ItemLine)]


def test_totals_without_discount():
    totals = compute_totals(_lines(), None, Decimal("19"))

    assert totals.net_subtotal == Decimal("250.00")
    assert totals.discount_amount == Decimal("0")
    assert totals.net_after_discount == Decimal("250.00")
    assert totals.tax_amount == Decimal("47.50")
    assert totals.gross_total == Decimal("297.50")


def test_percent_discount_totals():
    discount = Discount(enabled=True, type="percent", value=10)
    totals = compute_totals(_lines(), discount, Decimal("19"))

    assert totals.discount_amount == Decimal("25.00")
    assert totals.net_after_discount == Decimal("225.00")
    assert totals.tax_amount == Decimal("42.75")
    assert totals.gross_total == Decimal("267.75")


def test_percent_discount_scales_unit_prices():
    discount = Discount(enabled=True, type="percent", value=10)
    allocated = _items(allocate_discount(_lines(), discount, Decimal("19")))

    assert [line.unit_price for line in allocated] == [Decimal("90.0"), Decimal("45.0")]
    assert [line.quantity for line in allocated] == [Decimal("2"), Decimal("1")]


def test_percent_allocation_matches_totals_on_half_cent_discounts():
    lines = parse_positions([{"quantity": 1, "unitPrice": "33.30"}])
    discount = Discount(enabled=True, type="percent", value=15)
    totals = compute_totals(lines, discount, Decimal("19"))
    allocated = _items(allocate_discount(lines, discount, Decimal("19")))

    assert totals.discount_amount == Decimal("5.00")
    assert totals.gross_total == Decimal("33.68")
    assert allocated[0].net == Decimal("28.30")
    assert sum(line.net for line in allocated) == totals.net_after_discount

    reversed_totals = compute_totals(negate_items(allocated), None, Decimal("19"))
    assert reversed_totals.gross_total == -totals.gross_total


def test_amount_discount_is_spread_proportionally():
    discount = Discount(enabled=True, type="amount", base="net", value=30)
    allocated = _items(allocate_discount(_lines(), discount, Decimal("19")))

    assert allocated[0].net == Decimal("176")
    assert allocated[1].net == Decimal("44")
    assert sum(line.net for line in allocated) == Decimal("220")


def test_amount_discount_remainder_lands_on_last_line():
    lines = parse_positions(
        [{"quantity": 1, "unitPrice": 10}, {"quantity": 1, "unitPrice": 10}, {"quantity": 1, "unitPrice": 10}]
    )
    discount = Discount(enabled=True, type="amount", value=10)
    allocated = _items(allocate_discount(lines, discount, Decimal("0")))

    reductions = [Decimal("10") - line.net for line in allocated]
    assert reductions == [Decimal("3.33"), Decimal("3.33"), Decimal("3.34")]


def test_gross_amount_is_converted_to_net():
    discount = Discount(enabled=True, type="amount", base="gross", value=119)

    assert net_discount_amount(discount, Decimal("250"), Decimal("19")) == Decimal("100.00")
    totals = compute_totals(_lines(), discount, Decimal("19"))
    assert totals.net_after_discount == Decimal("150.00")
    assert totals.gross_total == Decimal("178.50")


def test_amount_discount_is_clamped_to_eligible_net():
    discount = Discount(enabled=True, type="amount", value=400)
    totals = compute_totals(_lines(), discount, Decimal("19"))

    assert totals.discount_amount == Decimal("250.00")
    assert totals.net_after_discount == Decimal("0.00")
    allocated = _items(allocate_discount(_lines(), discount, Decimal("19")))
    assert all(line.unit_price == Decimal("0") for line in allocated)


def test_ineligible_lines_keep_their_price():
    lines = parse_positions(
        [
            {"quantity": 2, "unitPrice": 100},
            {"quantity": 0, "unitPrice": 50},
            {"quantity": 1, "unitPrice": -20},
        ]
    )
    discount = Discount(enabled=True, type="amount", value=30)
    allocated = _items(allocate_discount(lines, discount, Decimal("19")))

    assert allocated[0].unit_price == Decimal("85")
    assert allocated[1].unit_price == Decimal("50")
    assert allocated[2].unit_price == Decimal("-20")


def test_disabled_or_zero_discount_is_ignored():
    lines = _lines()
    assert allocate_discount(lines, Discount(enabled=False, value=10), Decimal("19")) == lines
    assert allocate_discount(lines, Discount(enabled=True, value=0), Decimal("19")) == lines


def test_negate_items_only_touches_item_lines():
    negated = negate_items(_lines())

    assert isinstance(negated[0], HeadingLine)
    assert [line.unit_price for line in _items(negated)] == [Decimal("-100"), Decimal("-50")]


def test_discount_validation():
    with pytest.raises(ValidationError):
        Discount(enabled=True, type="percent", value=150)
    with pytest.raises(ValidationError):
        Discount(enabled=True, type="amount", value=-5)

    legacy = Discount.model_validate({"enabled": True, "type": "absolute", "value": "12,50"})
    assert legacy.type == "amount"
    assert legacy.value == Decimal("12.50")
    assert legacy.label == "Rabatt"
