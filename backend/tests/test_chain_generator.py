"""
Tests for chain-link assembly: boundaries, numbering, amounts and eligibility.
"""
import pytest
from datetime import datetime
from decimal import Decimal

from services import settlement_config
from services.chain_generator import (
    DocumentType,
    LinkSource,
    build_chain_link,
    eligibility_problem,
    fallback_document_number,
    link_amounts,
    sequenced_document_number,
    validate_boundary,
)
from services.errors import ValidationError
from services.routing import Boundary, ThreeTierVendor, TwoTier
from services.settlement_calculator import (
    PricingRule,
    SettlementSnapshot,
    compute_size_based,
    compute_vendor_settlement,
)

from conftest import LETTER_RULE


@pytest.fixture
def letter_snapshot():
    snapshot, _ = compute_size_based(PricingRule.from_dict(LETTER_RULE), 5000)
    return snapshot


@pytest.fixture
def vendor_plan():
    return ThreeTierVendor("vendor-acme", Decimal("300"), Decimal("60"))


def make_job(snapshot, **extra):
    job = {
        "id": "job-1",
        "job_number": "J-2026-000042",
        "status": "IN_PRODUCTION",
        "customer_id": "cust-1",
        "customer_reference_number": "PO-7781",
        "pricing": snapshot.to_dict() if snapshot else None,
        "settlement_frozen": False,
    }
    job.update(extra)
    return job


class TestValidateBoundary:

    def test_default_document_types(self):
        assert validate_boundary(TwoTier(), "broker-manufacturer") == (
            Boundary.BROKER_MANUFACTURER, DocumentType.PURCHASE_ORDER)
        assert validate_boundary(TwoTier(), "customer") == (Boundary.CUSTOMER, DocumentType.INVOICE)

    def test_vendor_boundary_not_on_two_tier(self, vendor_plan):
        with pytest.raises(ValidationError) as exc:
            validate_boundary(TwoTier(), "broker-vendor")
        assert exc.value.code == "UNKNOWN_BOUNDARY"
        with pytest.raises(ValidationError):
            validate_boundary(vendor_plan, "manufacturer-printer")

    def test_no_purchase_order_on_customer_boundary(self):
        with pytest.raises(ValidationError) as exc:
            validate_boundary(TwoTier(), "customer", "purchase_order")
        assert exc.value.code == "UNKNOWN_DOCUMENT_TYPE"

    def test_unknown_values(self):
        with pytest.raises(ValidationError):
            validate_boundary(TwoTier(), "broker-printer")
        with pytest.raises(ValidationError):
            validate_boundary(TwoTier(), "broker-manufacturer", "receipt")


class TestNumbering:

    def test_fallback_prefixes(self):
        job_number = "J-2026-000042"
        assert fallback_document_number(DocumentType.PURCHASE_ORDER, Boundary.BROKER_MANUFACTURER,
                                        job_number) == "BPO-J-2026-000042"
        assert fallback_document_number(DocumentType.PURCHASE_ORDER, Boundary.MANUFACTURER_PRINTER,
                                        job_number) == "MPO-J-2026-000042"
        assert fallback_document_number(DocumentType.PURCHASE_ORDER, Boundary.BROKER_VENDOR,
                                        job_number) == "VPO-J-2026-000042"
        assert fallback_document_number(DocumentType.INVOICE, Boundary.CUSTOMER,
                                        job_number) == "INV-J-2026-000042"

    def test_sequence_padding_is_a_minimum(self):
        assert sequenced_document_number("ACM", 7) == "ACM-007"
        assert sequenced_document_number("ACM", 999) == "ACM-999"
        assert sequenced_document_number("ACM", 1000) == "ACM-1000"


class TestAmounts:

    def test_two_tier_mappings(self, letter_snapshot):
        po = link_amounts(TwoTier(), Boundary.BROKER_MANUFACTURER, DocumentType.PURCHASE_ORDER, letter_snapshot)
        assert (po.original, po.vendor, po.margin) == (Decimal("370.00"), Decimal("370.00"), Decimal("0"))

        printer = link_amounts(TwoTier(), Boundary.MANUFACTURER_PRINTER, DocumentType.PURCHASE_ORDER,
                               letter_snapshot)
        assert (printer.original, printer.vendor, printer.margin) == (
            Decimal("370.00"), Decimal("200.00"), Decimal("170.00"))

        invoice = link_amounts(TwoTier(), Boundary.CUSTOMER, DocumentType.INVOICE, letter_snapshot)
        assert (invoice.original, invoice.vendor, invoice.margin) == (
            Decimal("450.00"), Decimal("370.00"), Decimal("80.00"))

    def test_vendor_mappings(self, vendor_plan):
        snapshot, _ = compute_vendor_settlement("vendor-acme", Decimal("300"), Decimal("60"), Decimal("400"))
        po = link_amounts(vendor_plan, Boundary.BROKER_VENDOR, DocumentType.PURCHASE_ORDER, snapshot)
        assert (po.original, po.vendor, po.margin) == (Decimal("400.00"), Decimal("300.00"), Decimal("100.00"))

    def test_unknown_totals_stay_null(self):
        snapshot = SettlementSnapshot(method="size-based")
        printer = link_amounts(TwoTier(), Boundary.MANUFACTURER_PRINTER, DocumentType.PURCHASE_ORDER, snapshot)
        assert printer.original is None and printer.margin is None


class TestEligibility:

    def test_purchase_order_needs_totals(self):
        job = make_job(SettlementSnapshot(method="size-based"))
        assert eligibility_problem(job, Boundary.BROKER_MANUFACTURER, DocumentType.PURCHASE_ORDER) \
            == "settlement totals are not known yet"

    def test_invoice_needs_frozen_settlement(self, letter_snapshot):
        job = make_job(letter_snapshot)
        assert eligibility_problem(job, Boundary.BROKER_MANUFACTURER, DocumentType.PURCHASE_ORDER) is None
        assert eligibility_problem(job, Boundary.CUSTOMER, DocumentType.INVOICE) is not None
        job["settlement_frozen"] = True
        assert eligibility_problem(job, Boundary.CUSTOMER, DocumentType.INVOICE) is None

    def test_cancelled_and_deleted_jobs(self, letter_snapshot):
        assert eligibility_problem(make_job(letter_snapshot, status="CANCELLED"),
                                   Boundary.BROKER_MANUFACTURER, DocumentType.PURCHASE_ORDER) == "job is cancelled"
        assert eligibility_problem(make_job(letter_snapshot, deleted_at="2026-01-01T00:00:00+00:00"),
                                   Boundary.BROKER_MANUFACTURER, DocumentType.PURCHASE_ORDER) == "job is deleted"


class TestBuildChainLink:

    def test_purchase_order_parties_and_reference(self, letter_snapshot):
        link = build_chain_link(make_job(letter_snapshot), TwoTier(), Boundary.BROKER_MANUFACTURER,
                                DocumentType.PURCHASE_ORDER, "BPO-J-2026-000042", actor="csr@broker")
        assert link["reference_number"] == "PO-7781"
        assert link["origin_party_id"] == settlement_config.BROKER_PARTY_ID
        assert link["receiving_party_id"] == settlement_config.MANUFACTURER_PARTY_ID
        assert link["status"] == "PENDING"
        assert link["is_active"] is True
        assert link["source"] == "generated"
        assert link["created_by"] == "csr@broker"
        assert "due_at" not in link

    def test_invoice_is_issued_by_payee(self, letter_snapshot):
        link = build_chain_link(make_job(letter_snapshot, settlement_frozen=True), TwoTier(), Boundary.CUSTOMER,
                                DocumentType.INVOICE, "INV-J-2026-000042")
        assert link["origin_party_id"] == settlement_config.BROKER_PARTY_ID
        assert link["receiving_party_id"] == "cust-1"
        assert link["status"] == "ISSUED"
        issued = datetime.fromisoformat(link["issued_at"])
        due = datetime.fromisoformat(link["due_at"])
        assert (due - issued).days == settlement_config.INVOICE_DUE_DAYS

    def test_vendor_purchase_order_goes_to_vendor(self, vendor_plan):
        snapshot, _ = compute_vendor_settlement("vendor-acme", Decimal("300"), Decimal("60"), Decimal("400"))
        link = build_chain_link(make_job(snapshot), vendor_plan, Boundary.BROKER_VENDOR,
                                DocumentType.PURCHASE_ORDER, "VPO-J-2026-000042",
                                source=LinkSource.SUPPLIED, external_ref="acme-77")
        assert link["receiving_party_id"] == "vendor-acme"
        assert link["vendor_amount"] == Decimal("300.00")
        assert link["source"] == "supplied"
        assert link["external_ref"] == "acme-77"
