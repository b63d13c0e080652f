"""Server-side order totals."""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Tuple

CENTS = Decimal("0.01")


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    tax: Decimal
    shipping_cost: Decimal
    total: Decimal


@dataclass(frozen=True)
class PricingPolicy:
    """Flat-rate tax, with free shipping above a subtotal threshold."""

    tax_rate: Decimal = Decimal("0.08")
    free_shipping_threshold: Decimal = Decimal("500")
    flat_shipping_cost: Decimal = Decimal("25")

    def totals(self, lines: Iterable[Tuple[Decimal, int]]) -> OrderTotals:
        """Compute totals from ``(unit_price, quantity)`` pairs."""
        subtotal = quantize(sum((price * quantity for price, quantity in lines), Decimal("0")))
        tax = quantize(subtotal * self.tax_rate)
        shipping_cost = Decimal("0.00") if subtotal > self.free_shipping_threshold else quantize(self.flat_shipping_cost)
        return OrderTotals(
            subtotal=subtotal,
            tax=tax,
            shipping_cost=shipping_cost,
            total=subtotal + tax + shipping_cost,
        )
