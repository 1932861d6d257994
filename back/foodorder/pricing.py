"""
Order pricing.

Pure functions over Decimal so every surface (cart, checkout, gateways)
arrives at the same figures. Amounts stay exact until the grand total,
which is the only value rounded to cents.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Protocol

from .errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0")


class PricedLine(Protocol):
    unit_price: Decimal
    quantity: int


@dataclass(frozen=True)
class PriceBreakdown:
    subtotal: Decimal
    tax: Decimal
    delivery_fee: Decimal
    total: Decimal
    exact_tax: Decimal

    def as_dict(self) -> dict:
        return {
            "subtotal": str(self.subtotal),
            "tax": str(self.tax),
            "delivery_fee": str(self.delivery_fee),
            "total": str(self.total),
        }


def to_money(value: Decimal | int | float | str) -> Decimal:
    """Coerce a price-like value to Decimal without going through binary floats."""
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            raise ValidationError(f"Invalid amount: {value!r}") from e
    if not result.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return result


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """Amount in paisa/cents, as gateways expect."""
    return int((round_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def line_total(unit_price: Decimal | int | float | str, quantity: int) -> Decimal:
    price = to_money(unit_price)
    if price < ZERO:
        raise ValidationError("Unit price cannot be negative")
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    return price * quantity


def compute_subtotal(lines: Iterable[PricedLine]) -> Decimal:
    return sum((line_total(line.unit_price, line.quantity) for line in lines), ZERO)


def compute_totals(
    lines: Iterable[PricedLine],
    tax_rate: Decimal | float | str,
    delivery_enabled: bool,
    delivery_charge: Decimal | float | str,
) -> PriceBreakdown:
    rate = to_money(tax_rate)
    charge = to_money(delivery_charge)
    if rate < ZERO:
        raise ValidationError("Tax rate cannot be negative")
    if charge < ZERO:
        raise ValidationError("Delivery charge cannot be negative")

    subtotal = compute_subtotal(lines)
    exact_tax = subtotal * rate
    delivery = charge if delivery_enabled else ZERO
    total = round_money(subtotal + exact_tax + delivery)

    return PriceBreakdown(
        subtotal=subtotal,
        tax=round_money(exact_tax),
        delivery_fee=delivery,
        total=total,
        exact_tax=exact_tax,
    )
