"""
Tests for the Settlement Calculator

Covers:
- Size-based CPM decomposition for every paper mode
- Cent rounding (round-half-even) and tier sums
- Snapshot reload without drift
- Suspicious pricing, undercharge and negative margin diagnostics
- Vendor-supplied amounts
"""
import pytest
from decimal import Decimal

from services import settlement_config
from services.errors import NegativeAmount, ValidationError, VendorAmountsExceedCustomerTotal
from services.settlement_calculator import (
    PaperMode,
    PricingRule,
    SettlementSnapshot,
    compute_size_based,
    compute_vendor_settlement,
    recompute_totals,
    round_money,
    tier_amounts,
    to_decimal,
    total_from_cpm,
)

from conftest import LETTER_RULE, POSTCARD_RULE


@pytest.fixture
def letter_rule():
    return PricingRule.from_dict(LETTER_RULE)


def _tier_sum(snapshot):
    return sum(tier_amounts(snapshot).values(), Decimal("0"))


class TestMoneyHelpers:

    def test_round_half_even(self):
        assert round_money(Decimal("0.125")) == Decimal("0.12")
        assert round_money(Decimal("0.135")) == Decimal("0.14")
        assert round_money(Decimal("2.5050")) == Decimal("2.50")

    def test_total_from_cpm(self):
        assert total_from_cpm(Decimal("90"), 5000) == Decimal("450.00")
        assert total_from_cpm(Decimal("33.335"), 1000) == Decimal("33.34")
        assert total_from_cpm(Decimal("33.345"), 1000) == Decimal("33.34")
        assert total_from_cpm(Decimal("90"), None) is None

    def test_to_decimal_accepts_formatted_strings(self):
        assert to_decimal("$1,250.50") == Decimal("1250.50")
        assert to_decimal(12) == Decimal("12")

    def test_to_decimal_rejects_garbage(self):
        with pytest.raises(ValidationError) as exc:
            to_decimal("twelve", "vendor_amount")
        assert exc.value.code == "INVALID_AMOUNT"
        with pytest.raises(ValidationError):
            to_decimal("NaN")
        with pytest.raises(ValidationError):
            to_decimal(True)


class TestPricingRule:

    def test_paper_cpms(self, letter_rule):
        assert letter_rule.paper_cost_cpm() == Decimal("15.0000")
        assert letter_rule.paper_charged_cpm() == Decimal("18.0000")

    def test_default_margin_share(self):
        rule = PricingRule.from_dict(POSTCARD_RULE)
        assert rule.broker_margin_share_percent == settlement_config.DEFAULT_BROKER_MARGIN_SHARE_PERCENT
        assert rule.paper_cost_cpm() == Decimal("0.0000")

    def test_negative_coefficient_rejected(self):
        with pytest.raises(NegativeAmount):
            PricingRule.from_dict({**LETTER_RULE, "print_cpm": "-1"})

    def test_margin_share_out_of_range(self):
        with pytest.raises(ValidationError) as exc:
            PricingRule.from_dict({**LETTER_RULE, "broker_margin_share_percent": "120"})
        assert exc.value.code == "INVALID_MARGIN_SHARE"


class TestStandardMode:

    def test_letter_scenario_customer_total(self, letter_rule):
        snapshot, warnings = compute_size_based(letter_rule, 5000)
        assert snapshot.customer_total == Decimal("450.00")
        assert warnings == []

    def test_cpm_decomposition(self, letter_rule):
        snapshot, _ = compute_size_based(letter_rule, 5000)
        assert snapshot.customer_cpm == Decimal("90.0000")
        assert snapshot.broker_margin_cpm == Decimal("16.0000")
        assert snapshot.manufacturer_cpm == Decimal("74.0000")
        assert snapshot.manufacturer_margin_cpm == Decimal("19.0000")
        assert snapshot.printer_cpm == Decimal("40")
        assert snapshot.paper_markup_cpm == Decimal("3.0000")

    def test_totals(self, letter_rule):
        snapshot, _ = compute_size_based(letter_rule, 5000)
        assert snapshot.manufacturer_total == Decimal("370.00")
        assert snapshot.printer_total == Decimal("200.00")
        assert snapshot.paper_cost_total == Decimal("75.00")
        assert snapshot.paper_charged_total == Decimal("90.00")
        assert snapshot.broker_margin_total == Decimal("80.00")
        assert snapshot.manufacturer_margin_total == Decimal("95.00")
        assert snapshot.paper_markup_total == Decimal("15.00")

    @pytest.mark.parametrize("quantity", [1, 7, 333, 1001, 2499, 5000, 12345, 99999])
    def test_tiers_sum_to_customer_total(self, quantity):
        rule = PricingRule.from_dict({**LETTER_RULE, "customer_cpm": "87.3333", "print_cpm": "41.1111"})
        snapshot, _ = compute_size_based(rule, quantity)
        assert _tier_sum(snapshot) == snapshot.customer_total

    def test_missing_quantity_leaves_totals_null(self, letter_rule):
        snapshot, _ = compute_size_based(letter_rule, None)
        assert snapshot.customer_cpm == Decimal("90.0000")
        assert snapshot.manufacturer_cpm == Decimal("74.0000")
        assert snapshot.customer_total is None
        assert snapshot.broker_margin_total is None
        assert not snapshot.has_totals

    def test_rule_copied_into_snapshot(self, letter_rule):
        snapshot, _ = compute_size_based(letter_rule, 5000)
        assert snapshot.rule["size_key"] == "8.5x11"
        assert snapshot.rule["print_cpm"] == Decimal("40")

    def test_negative_quantity_rejected(self, letter_rule):
        with pytest.raises(NegativeAmount):
            compute_size_based(letter_rule, -5)


class TestPaperModes:

    def test_printer_supplies_paper(self, letter_rule):
        snapshot, _ = compute_size_based(letter_rule, 5000, PaperMode.PRINTER_SUPPLIES_PAPER)
        assert snapshot.broker_margin_cpm == Decimal("9.0000")
        assert snapshot.manufacturer_cpm == Decimal("81.0000")
        assert snapshot.manufacturer_margin_cpm == Decimal("9.0000")
        assert snapshot.printer_cpm == Decimal("72.0000")
        assert snapshot.paper_cost_total == Decimal("0.00")
        assert snapshot.manufacturer_total == Decimal("405.00")
        assert snapshot.printer_total == Decimal("360.00")
        assert _tier_sum(snapshot) == Decimal("450.00")

    def test_paper_markup_waived(self, letter_rule):
        snapshot, _ = compute_size_based(letter_rule, 5000, PaperMode.PAPER_MARKUP_WAIVED)
        assert snapshot.paper_charged_cpm == snapshot.paper_cost_cpm
        assert snapshot.broker_margin_cpm == Decimal("17.5000")
        assert snapshot.manufacturer_total == Decimal("362.50")
        assert snapshot.broker_margin_total == Decimal("87.50")
        assert _tier_sum(snapshot) == Decimal("450.00")


class TestDiagnostics:

    def test_suspicious_unit_price_is_a_warning(self):
        rule = PricingRule.from_dict(POSTCARD_RULE)
        snapshot, warnings = compute_size_based(rule, 250000)
        assert snapshot.customer_total == Decimal("1000.00")
        assert [w.code for w in warnings] == ["SUSPICIOUS_PRICING"]

    def test_floor_is_configurable(self, monkeypatch):
        monkeypatch.setattr(settlement_config, "MIN_UNIT_PRICE", Decimal("0.001"))
        rule = PricingRule.from_dict(POSTCARD_RULE)
        _, warnings = compute_size_based(rule, 250000)
        assert warnings == []

    def test_undercharge_requires_approval(self, letter_rule):
        snapshot, warnings = compute_size_based(letter_rule, 5000, customer_cpm=Decimal("80"))
        assert snapshot.requires_approval is True
        assert snapshot.undercharge_cpm == Decimal("10.0000")
        assert snapshot.undercharge_total == Decimal("50.00")
        assert snapshot.customer_total == Decimal("400.00")
        assert "UNDERCHARGE" in [w.code for w in warnings]

    def test_negative_margin_warns(self, letter_rule):
        snapshot, warnings = compute_size_based(letter_rule, 5000, customer_cpm=Decimal("50"))
        codes = [w.code for w in warnings]
        assert "NEGATIVE_MARGIN" in codes
        assert snapshot.broker_margin_cpm < 0
        assert _tier_sum(snapshot) == snapshot.customer_total


class TestSnapshotReload:

    @pytest.mark.parametrize("quantity", [1, 999, 5000, 77777])
    def test_reload_reproduces_totals(self, letter_rule, quantity):
        snapshot, _ = compute_size_based(letter_rule, quantity, PaperMode.STANDARD, Decimal("88.8888"))
        stored = snapshot.to_dict()
        reloaded = SettlementSnapshot.from_dict({k: str(v) if isinstance(v, Decimal) else v for k, v in stored.items()})
        for name, value in recompute_totals(reloaded).items():
            assert value == stored[name], name

    def test_reload_ignores_unknown_keys(self, letter_rule):
        snapshot, _ = compute_size_based(letter_rule, 5000)
        data = {**snapshot.to_dict(), "_id": "x", "legacy": 1}
        assert SettlementSnapshot.from_dict(data).customer_total == Decimal("450.00")


class TestVendorSettlement:

    def test_accepts_amounts_within_customer_total(self):
        snapshot, warnings = compute_vendor_settlement(
            "vendor-acme", Decimal("300"), Decimal("60"), Decimal("400")
        )
        assert snapshot.method == "vendor"
        assert snapshot.vendor_total == Decimal("300.00")
        assert snapshot.broker_cut_total == Decimal("60.00")
        assert snapshot.broker_residual_total == Decimal("40.00")
        assert snapshot.broker_margin_total == Decimal("100.00")
        assert _tier_sum(snapshot) == Decimal("400.00")
        assert warnings == []

    def test_rejects_amounts_over_customer_total(self):
        with pytest.raises(VendorAmountsExceedCustomerTotal) as exc:
            compute_vendor_settlement("vendor-acme", Decimal("300"), Decimal("150"), Decimal("400"))
        assert exc.value.details["customer_total"] == "400.00"

    def test_exact_customer_total_is_accepted(self):
        snapshot, _ = compute_vendor_settlement("v", Decimal("340"), Decimal("60"), Decimal("400"))
        assert snapshot.broker_residual_total == Decimal("0.00")

    def test_rejects_negative_amounts(self):
        with pytest.raises(NegativeAmount):
            compute_vendor_settlement("v", Decimal("-1"), Decimal("60"), Decimal("400"))
        with pytest.raises(NegativeAmount):
            compute_vendor_settlement("v", Decimal("100"), Decimal("-60"), Decimal("400"))

    def test_customer_cpm_derived_when_quantity_known(self):
        snapshot, _ = compute_vendor_settlement("v", Decimal("300"), Decimal("60"), Decimal("400"), quantity=8000)
        assert snapshot.customer_cpm == Decimal("50.0000")

    def test_recompute_returns_stored_amounts(self):
        snapshot, _ = compute_vendor_settlement("v", Decimal("300"), Decimal("60"), Decimal("400"))
        assert recompute_totals(snapshot)["vendor_total"] == Decimal("300.00")
