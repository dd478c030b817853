from decimal import Decimal

import pytest

from estimator.services.tax import D, TaxConfig, calc_tax, format_money, format_number, qmoney


def test_tax_rounds_half_up():
    tb = calc_tax(Decimal("10.25"), Decimal("10"))
    assert tb.tax_amount == Decimal("1.03")
    assert tb.total == Decimal("11.28")


def test_tax_on_scenario_subtotal():
    tb = calc_tax("1250", 20)
    assert (tb.subtotal, tb.tax_amount, tb.total) == (Decimal("1250.00"), Decimal("250.00"), Decimal("1500.00"))


def test_floats_go_through_str():
    assert D(0.1) == Decimal("0.1")
    assert qmoney(2.675) == Decimal("2.68")


@pytest.mark.parametrize(
    "amount, currency, expected",
    [
        (Decimal("1200"), "USD", "$1,200.00"),
        (Decimal("5"), "gbp", "£5.00"),
        (Decimal("19.999"), "EUR", "€20.00"),
        (Decimal("5"), "NZD", "NZD 5.00"),
    ],
)
def test_format_money(amount, currency, expected):
    assert format_money(amount, currency) == expected


@pytest.mark.parametrize("value, expected", [(120.0, "120"), (Decimal("2.50"), "2.5"), (3, "3")])
def test_format_number(value, expected):
    assert format_number(value) == expected


def test_tax_config_applies():
    assert TaxConfig(enabled=True, rate=Decimal("8")).applies is True
    assert TaxConfig(enabled=True).applies is False
    assert TaxConfig(enabled=False, rate=Decimal("8")).applies is False
