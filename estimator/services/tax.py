from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

MONEY = Decimal("0.01")

Number = Union[Decimal, int, float, str]

CURRENCY_SYMBOLS = {
    "GBP": "£",
    "USD": "$",
    "EUR": "€",
    "AUD": "A$",
    "CAD": "C$",
}


def D(x: Number) -> Decimal:
    if isinstance(x, Decimal):
        return x
    # floats go through str() so 0.1 stays 0.1
    return Decimal(str(x))


def qmoney(x: Number) -> Decimal:
    return D(x).quantize(MONEY, rounding=ROUND_HALF_UP)


def format_money(amount: Number, currency: str) -> str:
    symbol = CURRENCY_SYMBOLS.get(currency.upper(), f"{currency.upper()} ")
    return f"{symbol}{qmoney(amount):,.2f}"


def format_number(x: Number) -> str:
    """Render a quantity without trailing zeros (120.0 -> 120, 2.50 -> 2.5)."""
    d = D(x)
    if d == d.to_integral_value():
        return str(d.quantize(Decimal(1)))
    return format(d.normalize(), "f")


@dataclass(frozen=True)
class TaxConfig:
    enabled: bool = False
    rate: Decimal = Decimal("0")  # percent, 20 == 20%
    label: Optional[str] = None

    @property
    def applies(self) -> bool:
        return self.enabled and self.rate > 0


@dataclass(frozen=True)
class TaxBreakdown:
    subtotal: Decimal
    rate: Decimal
    tax_amount: Decimal
    total: Decimal


def calc_tax(subtotal: Number, rate_percent: Number) -> TaxBreakdown:
    subtotal_q = qmoney(subtotal)
    rate = D(rate_percent)
    tax_amount = qmoney(subtotal_q * rate / Decimal(100))
    total = qmoney(subtotal_q + tax_amount)
    return TaxBreakdown(subtotal_q, rate, tax_amount, total)
