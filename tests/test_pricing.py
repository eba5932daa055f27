"""
Unit tests for the pricing calculator.

No database or app context is needed; the autouse session fixture still
runs but nothing here touches it.
"""

import pytest

from bluecrew.core.entities import LineItem, Proposal, Supervision, SupervisionType
from bluecrew.services.pricing import (
    DEFAULT_GC_PERCENT,
    compute_total_cost,
    format_currency,
    items_total,
    parse_gc_percent,
    parse_supervision_type,
    price_breakdown,
    proposal_breakdown,
    supervision_fee,
)


# ═════════════════════════════════════════════════════════════════════════════
# Line items
# ═════════════════════════════════════════════════════════════════════════════


class TestItemsTotal:
    def test_sums_quantity_times_unit_price(self):
        items = [LineItem("Demo", 2, 100), LineItem("Tile", 3, 12.5)]
        assert items_total(items) == pytest.approx(237.5)

    def test_accepts_plain_mappings(self):
        assert items_total([{"quantity": "4", "unit_price": "25"}]) == pytest.approx(100)

    def test_malformed_numbers_count_as_zero(self):
        items = [LineItem("Bad", "abc", 100), LineItem("Blank", 2, ""), LineItem("None", None, 5)]
        assert items_total(items) == 0

    def test_empty_list_is_zero(self):
        assert items_total([]) == 0


# ═════════════════════════════════════════════════════════════════════════════
# Supervision & general conditions
# ═════════════════════════════════════════════════════════════════════════════


class TestSupervision:
    @pytest.mark.parametrize("kind,weeks,expected", [
        ("none", 10, 0),
        ("part_time", 2, 1450),
        ("part-time", 1, 725),
        ("full_time", 3, 4350),
        (SupervisionType.FULL_TIME, 0, 0),
        ("full_time", -2, 0),
        ("unknown", 4, 0),
    ])
    def test_weekly_rates(self, kind, weeks, expected):
        assert supervision_fee(kind, weeks) == pytest.approx(expected)

    def test_parse_type_normalises_form_spelling(self):
        assert parse_supervision_type(" Part-Time ") == SupervisionType.PART_TIME
        assert parse_supervision_type(None) == SupervisionType.NONE


class TestGeneralConditions:
    @pytest.mark.parametrize("raw", ["", None, "abc", "  "])
    def test_empty_or_unparsable_percent_defaults_to_18_5(self, raw):
        assert parse_gc_percent(raw) == DEFAULT_GC_PERCENT

    def test_explicit_zero_is_kept(self):
        assert parse_gc_percent("0") == 0

    def test_empty_percent_matches_explicit_default(self):
        items = [LineItem("Demo", 2, 100)]
        assert compute_total_cost(items, gc_percent="") == compute_total_cost(items, gc_percent="18.5")

    def test_percent_applies_to_items_plus_supervision(self):
        b = price_breakdown([LineItem("Demo", 1, 1000)], gc_percent=10,
                            supervision_type="part_time", supervision_weeks=2)
        assert b.general_conditions == pytest.approx((1000 + 1450) * 0.10)


# ═════════════════════════════════════════════════════════════════════════════
# Total cost
# ═════════════════════════════════════════════════════════════════════════════


class TestTotalCost:
    def test_two_units_at_100_default_gc_is_237(self):
        b = price_breakdown([{"quantity": 2, "unit_price": 100}], gc_percent="",
                            supervision_type="none", discount=0)
        assert b.items_total == pytest.approx(200)
        assert b.general_conditions == pytest.approx(37)
        assert b.total_cost == pytest.approx(237)

    def test_total_identity_holds(self):
        b = price_breakdown([LineItem("A", 3, 333.33), LineItem("B", 1, 10)],
                            gc_percent="12.25", supervision_type="full_time",
                            supervision_weeks=1.5, discount="50")
        assert b.total_cost == pytest.approx(
            b.items_total + b.general_conditions + b.supervision_fee - b.discount
        )
        assert b.discount == 50

    def test_discount_can_drive_total_negative(self):
        assert compute_total_cost([LineItem("A", 1, 10)], gc_percent=0, discount=100) == pytest.approx(-90)

    def test_no_intermediate_rounding(self):
        b = price_breakdown([LineItem("A", 1, 0.1)], gc_percent=33.333)
        assert b.general_conditions == pytest.approx(0.1 * 0.33333)

    def test_proposal_breakdown_uses_proposal_fields(self):
        proposal = Proposal(
            id="p-1", proposal_number="PROP-2026-0001", client_name="Acme",
            line_items=[LineItem("Cabinets", 2, 100)],
            general_conditions_percentage="",
            supervision=Supervision(SupervisionType.PART_TIME, 1),
            discount=25,
        )
        b = proposal_breakdown(proposal)
        assert b.supervision_fee == 725
        assert b.total_cost == pytest.approx(200 + 725 + (925 * 0.185) - 25)

    def test_to_dict_lists_every_amount(self):
        d = price_breakdown([]).to_dict()
        assert set(d) == {"items_total", "supervision_fee", "gc_percent",
                          "general_conditions", "discount", "total_cost"}


class TestFormatCurrency:
    def test_formats_thousands_and_cents(self):
        assert format_currency(1234.5) == "$1,234.50"

    def test_negative_and_malformed(self):
        assert format_currency(-90) == "-$90.00"
        assert format_currency("oops") == "$0.00"
