from decimal import Decimal

import pytest

from rechnung.backends.money import format_amount, parse_decimal, round_money


def test_parse_decimal_accepts_german_and_english_notation():
    assert parse_decimal("12,5") == Decimal("12.5")
    assert parse_decimal("1.234,56") == Decimal("1234.56")
    assert parse_decimal("1,234.56") == Decimal("1234.56")
    assert parse_decimal(0.1) == Decimal("0.1")
    assert parse_decimal(7) == Decimal("7")


def test_parse_decimal_falls_back_to_default():
    assert parse_decimal(None) == Decimal("0")
    assert parse_decimal("") == Decimal("0")
    assert parse_decimal("abc") == Decimal("0")
    assert parse_decimal("NaN") == Decimal("0")
    assert parse_decimal(True) == Decimal("0")
    assert parse_decimal("x", default=Decimal("1")) == Decimal("1")


def test_round_money_rounds_half_away_from_zero():
    assert round_money("2.675") == Decimal("2.68")
    assert round_money("2.665") == Decimal("2.67")
    assert round_money(Decimal("-0.005")) == Decimal("-0.01")
    assert round_money(Decimal("42.745")) == Decimal("42.75")


def test_format_amount_has_two_fraction_digits():
    assert format_amount(Decimal("267.75")) == "267.75"
    assert format_amount(10) == "10.00"
    assert format_amount(Decimal("-267.75")) == "-267.75"
    assert format_amount(Decimal("-0.001")) == "0.00"


def test_parse_decimal_strict_rejects_garbage_but_not_blanks():
    with pytest.raises(ValueError):
        parse_decimal("zehn", strict=True)
    with pytest.raises(ValueError):
        parse_decimal("NaN", strict=True)
    assert parse_decimal("", strict=True) == Decimal("0")
    assert parse_decimal(None, strict=True) == Decimal("0")
    assert parse_decimal("12,5", strict=True) == Decimal("12.5")
