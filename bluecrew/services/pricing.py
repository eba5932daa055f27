"""
Pricing Calculator — proposal and project cost rollup.

    items_total        = Σ quantity × unit_price
    supervision_fee    = weeks × weekly rate (none=0, part-time=725, full-time=1450)
    general_conditions = (items_total + supervision_fee) × gc_percent / 100
    total_cost         = items_total + general_conditions + supervision_fee − discount

Numeric policy:
    - Quantities, prices, weeks and discount coerce to 0 when malformed.
    - The general-conditions percentage defaults to 18.5 when empty or
      unparsable (NOT to 0). Both halves of this asymmetry are intentional.
    - No intermediate rounding. Round only when formatting for display.

Both the proposal flow and the project edit flow call these functions so the
two totals can never drift apart.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from bluecrew.core.entities import SupervisionType
from bluecrew.utils.helpers import coerce_number

DEFAULT_GC_PERCENT = 18.5

SUPERVISION_RATES: dict[SupervisionType, float] = {
    SupervisionType.NONE: 0.0,
    SupervisionType.PART_TIME: 725.0,
    SupervisionType.FULL_TIME: 1450.0,
}


@dataclass(frozen=True)
class PriceBreakdown:
    """Every intermediate amount of one total-cost calculation."""
    items_total: float
    supervision_fee: float
    gc_percent: float
    general_conditions: float
    discount: float
    total_cost: float

    def to_dict(self) -> dict:
        return {
            "items_total": self.items_total,
            "supervision_fee": self.supervision_fee,
            "gc_percent": self.gc_percent,
            "general_conditions": self.general_conditions,
            "discount": self.discount,
            "total_cost": self.total_cost,
        }


def parse_supervision_type(value) -> SupervisionType:
    """Accept enum members, "part_time" and the form spelling "part-time".

    Unknown values fall back to NONE, which rates at 0.
    """
    if isinstance(value, SupervisionType):
        return value
    text = str(value or "").strip().lower().replace("-", "_")
    try:
        return SupervisionType(text)
    except ValueError:
        return SupervisionType.NONE


def parse_gc_percent(value) -> float:
    """General-conditions percentage; empty/unparsable → DEFAULT_GC_PERCENT."""
    return coerce_number(value, default=DEFAULT_GC_PERCENT)


def line_item_price(item) -> float:
    """quantity × unit_price for a LineItem or a plain mapping."""
    if isinstance(item, dict):
        quantity, unit_price = item.get("quantity"), item.get("unit_price")
    else:
        quantity, unit_price = item.quantity, item.unit_price
    return coerce_number(quantity) * coerce_number(unit_price)


def items_total(items: Iterable) -> float:
    return sum((line_item_price(item) for item in items), 0.0)


def supervision_fee(supervision_type, weeks) -> float:
    kind = parse_supervision_type(supervision_type)
    week_count = coerce_number(weeks)
    if week_count <= 0 or kind == SupervisionType.NONE:
        return 0.0
    return week_count * SUPERVISION_RATES[kind]


def price_breakdown(
    items: Iterable,
    gc_percent=DEFAULT_GC_PERCENT,
    supervision_type=SupervisionType.NONE,
    supervision_weeks=0,
    discount=0,
) -> PriceBreakdown:
    """Run the full cost rollup and return every intermediate amount.

    Args:
        items: LineItems or mappings with ``quantity`` and ``unit_price``.
        gc_percent: Percentage as number or free text ("" → 18.5).
        supervision_type: SupervisionType or its string form.
        supervision_weeks: Week count; ≤ 0 means no supervision fee.
        discount: Flat amount subtracted last.
    """
    work_total = items_total(items)
    fee = supervision_fee(supervision_type, supervision_weeks)
    percent = parse_gc_percent(gc_percent)
    general_conditions = (work_total + fee) * (percent / 100)
    discount_amount = coerce_number(discount)
    total = work_total + general_conditions + fee - discount_amount
    return PriceBreakdown(
        items_total=work_total,
        supervision_fee=fee,
        gc_percent=percent,
        general_conditions=general_conditions,
        discount=discount_amount,
        total_cost=total,
    )


def compute_total_cost(
    items: Iterable,
    gc_percent=DEFAULT_GC_PERCENT,
    supervision_type=SupervisionType.NONE,
    supervision_weeks=0,
    discount=0,
) -> float:
    return price_breakdown(items, gc_percent, supervision_type, supervision_weeks, discount).total_cost


def proposal_breakdown(proposal) -> PriceBreakdown:
    """Price a Proposal entity from its own line items and fee parameters."""
    return price_breakdown(
        proposal.line_items,
        gc_percent=proposal.general_conditions_percentage,
        supervision_type=proposal.supervision.type,
        supervision_weeks=proposal.supervision.weeks,
        discount=proposal.discount,
    )


def format_currency(amount) -> str:
    """Display-time formatting only: ``1234.5`` → ``"$1,234.50"``."""
    value = coerce_number(amount)
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.2f}"
