from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping

from ticket_holds.models.enums import PricingMode
from ticket_holds.models.ticket_hold import HoldAllocation


@dataclass(frozen=True)
class PriceInfo:
    unit_price: int
    original_price: int
    savings: int
    savings_percentage: float
    is_free: bool
    pricing_mode: PricingMode


@dataclass(frozen=True)
class OrderLine:
    ticket_type_id: int
    ticket_name: str
    quantity: int
    unit_price: int
    original_price: int
    line_total: int
    line_savings: int
    pricing_mode: PricingMode


@dataclass(frozen=True)
class OrderTotals:
    items: list[OrderLine] = field(default_factory=list)
    subtotal: int = 0
    total_savings: int = 0

    @property
    def total_quantity(self) -> int:
        return sum(line.quantity for line in self.items)


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_price(
    mode: PricingMode,
    original_price: int,
    custom_price: int | None = None,
    discount_percentage: int | None = None,
) -> int:
    """Unit price in cents for one ticket sold through a hold allocation."""
    if mode is PricingMode.FREE:
        return 0

    if mode is PricingMode.FIXED:
        return original_price if custom_price is None else int(custom_price)

    if mode is PricingMode.PERCENTAGE_DISCOUNT:
        pct = min(100, max(0, int(discount_percentage or 0)))
        return _round_half_up(Decimal(original_price) * (100 - pct) / 100)

    return original_price


def price_allocation(allocation: HoldAllocation, original_price: int | None = None) -> PriceInfo:
    original = allocation.ticket_type.price if original_price is None else original_price
    unit = calculate_price(
        allocation.pricing_mode,
        original,
        allocation.custom_price,
        allocation.discount_percentage,
    )
    savings = max(0, original - unit)
    pct = round(savings / original * 100, 2) if original > 0 else 0.0

    return PriceInfo(
        unit_price=unit,
        original_price=original,
        savings=savings,
        savings_percentage=pct,
        is_free=unit == 0,
        pricing_mode=allocation.pricing_mode,
    )


def calculate_order_total(
    allocations: Iterable[HoldAllocation],
    items: Mapping[int, int],
) -> OrderTotals:
    """
    items: ticket_type_id -> quantity.
    Ticket types without an allocation in the hold are skipped.
    """
    by_type = {a.ticket_type_id: a for a in allocations}

    lines: list[OrderLine] = []
    subtotal = 0
    total_savings = 0

    for ticket_type_id, quantity in items.items():
        allocation = by_type.get(ticket_type_id)
        if allocation is None:
            continue

        price = price_allocation(allocation)
        line_total = price.unit_price * quantity
        line_savings = price.savings * quantity

        lines.append(
            OrderLine(
                ticket_type_id=ticket_type_id,
                ticket_name=allocation.ticket_type.name,
                quantity=quantity,
                unit_price=price.unit_price,
                original_price=price.original_price,
                line_total=line_total,
                line_savings=line_savings,
                pricing_mode=price.pricing_mode,
            )
        )
        subtotal += line_total
        total_savings += line_savings

    return OrderTotals(items=lines, subtotal=subtotal, total_savings=total_savings)
