"""Discount allocation and invoice totals.

This is the single place where totals are derived. Invoice generation, the
cancellation workflow and the e-invoice serializer all call into it so the
three documents can never disagree about an amount.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Sequence

from .billing_models import Discount, InvoiceTotals, ItemLine, LineItem
from .money import HUNDRED, ZERO, percent_factor, round_money

ONE = Decimal("1")


def _is_eligible(line: LineItem) -> bool:
    return isinstance(line, ItemLine) and line.quantity > ZERO and line.net > ZERO


def item_net_subtotal(lines: Iterable[LineItem]) -> Decimal:
    """Unrounded ``sum(qty * unit price)`` over item lines."""

    return sum((line.net for line in lines if isinstance(line, ItemLine)), ZERO)


def eligible_net_subtotal(lines: Iterable[LineItem]) -> Decimal:
    """Net of the lines a discount may be spread over."""

    return sum((line.net for line in lines if _is_eligible(line)), ZERO)


def net_discount_amount(
    discount: Discount, eligible_net: Decimal, tax_rate: Decimal
) -> Decimal:
    """Net value a discount takes off ``eligible_net``, in cents.

    Percent discounts reduce net and gross by the same share, so the base only
    matters for fixed amounts: a gross amount is converted to net first. The
    result is clamped to ``[0, eligible_net]``.
    """

    if not discount.active or eligible_net <= ZERO:
        return ZERO

    if discount.type == "percent":
        raw = eligible_net * discount.value / HUNDRED
    elif discount.base == "gross":
        raw = discount.value / (ONE + percent_factor(tax_rate))
    else:
        raw = discount.value

    clamped = min(max(ZERO, raw), eligible_net)
    return min(round_money(clamped), round_money(eligible_net))


def _line_share(
    discount: Discount, line_net: Decimal, total_net: Decimal, to_distribute: Decimal
) -> Decimal:
    if discount.type == "percent":
        return round_money(line_net * discount.value / HUNDRED)
    return round_money(to_distribute * line_net / total_net)


def allocate_discount(
    lines: Sequence[LineItem], discount: Discount, tax_rate: Decimal
) -> list[LineItem]:
    """Bake ``discount`` into the unit prices of eligible item lines.

    Returns a new list; quantities, descriptions and non-item lines are left as
    they are. Each line's reduction is rounded to cents (its percentage, or its
    proportional share of a fixed amount) and the last eligible line takes the
    rounding remainder, so the reductions add up to exactly the discount
    :func:`compute_totals` reports for the raw lines.
    """

    allocated = list(lines)
    if not discount.active:
        return allocated

    eligible = [index for index, line in enumerate(allocated) if _is_eligible(line)]
    if not eligible:
        return allocated

    total_net = sum((allocated[index].net for index in eligible), ZERO)
    to_distribute = net_discount_amount(discount, total_net, tax_rate)
    remaining = to_distribute

    for position, index in enumerate(eligible):
        line = allocated[index]
        line_net = line.net
        if position == len(eligible) - 1:
            share = remaining
        else:
            share = min(_line_share(discount, line_net, total_net, to_distribute), remaining)
        share = min(share, line_net)

        new_net = line_net - share
        allocated[index] = line.model_copy(
            update={"unit_price": new_net / line.quantity}
        )
        remaining -= share

    return allocated


def negate_items(lines: Sequence[LineItem]) -> list[LineItem]:
    """Flip the sign of every item unit price, leaving everything else alone."""

    return [
        line.model_copy(update={"unit_price": -line.unit_price})
        if isinstance(line, ItemLine)
        else line
        for line in lines
    ]


def compute_totals(
    lines: Sequence[LineItem], discount: Discount | None, tax_rate: Decimal
) -> InvoiceTotals:
    """Totals for raw (not yet allocated) ``lines`` and their discount.

    The discount is applied from the :class:`Discount` record itself rather
    than by re-summing allocated lines, so this stays valid when the allocator
    never ran.
    """

    net_subtotal = round_money(item_net_subtotal(lines))
    discount_amount = ZERO
    if discount is not None:
        discount_amount = net_discount_amount(
            discount, eligible_net_subtotal(lines), tax_rate
        )

    net_after_discount = net_subtotal - discount_amount
    tax_amount = round_money(net_after_discount * percent_factor(tax_rate))
    return InvoiceTotals(
        net_subtotal=net_subtotal,
        discount_amount=discount_amount,
        net_after_discount=net_after_discount,
        tax_amount=tax_amount,
        gross_total=net_after_discount + tax_amount,
    )


__all__ = [
    "allocate_discount",
    "compute_totals",
    "eligible_net_subtotal",
    "item_net_subtotal",
    "negate_items",
    "net_discount_amount",
]
