"""
Print Broker Settlement Hub - Chain Generator

Builds the purchase orders and invoices that flow across each boundary of a
job's settlement chain. Everything here is a pure mapping from a job, its
routing plan and its settlement snapshot to a chain-link document; the
settlement service decides when to call it and persists the result inside the
job's transaction.

Boundaries per routing:
- two-tier:           broker-manufacturer, manufacturer-printer, customer
- three-tier-vendor:  broker-vendor, customer

Numbering:
- counterparty with a registered code: <CODE>-<NNN> from that code's sequence
- otherwise: <PREFIX>-<job number>, unique because job numbers are unique

Every link copies its reference number from the job's customer reference
number, never from another link.
"""

from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import logging
import uuid

from services import settlement_config
from services.errors import ValidationError
from services.job_lifecycle import JobStatus
from services.routing import Boundary, RoutingPlan, ThreeTierVendor, boundaries_for
from services.settlement_calculator import SettlementSnapshot, ZERO

logger = logging.getLogger(__name__)


class DocumentType(str, Enum):
    PURCHASE_ORDER = "purchase_order"
    INVOICE = "invoice"


class PurchaseOrderStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class InvoiceStatus(str, Enum):
    ISSUED = "ISSUED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class LinkSource(str, Enum):
    GENERATED = "generated"   # built from the settlement snapshot
    SUPPLIED = "supplied"     # received from an upstream party


# (document type, boundary) -> fallback prefix
FALLBACK_PREFIXES = {
    (DocumentType.PURCHASE_ORDER, Boundary.BROKER_MANUFACTURER): "BPO",
    (DocumentType.PURCHASE_ORDER, Boundary.BROKER_VENDOR): "VPO",
    (DocumentType.PURCHASE_ORDER, Boundary.MANUFACTURER_PRINTER): "MPO",
    (DocumentType.INVOICE, Boundary.CUSTOMER): "INV",
    (DocumentType.INVOICE, Boundary.BROKER_MANUFACTURER): "MINV",
    (DocumentType.INVOICE, Boundary.BROKER_VENDOR): "VINV",
    (DocumentType.INVOICE, Boundary.MANUFACTURER_PRINTER): "PINV",
}


@dataclass(frozen=True)
class BoundaryParties:
    payer: str
    payee: str


@dataclass(frozen=True)
class LinkAmounts:
    original: Optional[Decimal]
    vendor: Optional[Decimal]
    margin: Optional[Decimal]


# =============================================================================
# BOUNDARY SHAPE
# =============================================================================

def allowed_document_types(boundary: Boundary) -> List[DocumentType]:
    # The customer's own order is the PO on the customer boundary
    if boundary == Boundary.CUSTOMER:
        return [DocumentType.INVOICE]
    return [DocumentType.PURCHASE_ORDER, DocumentType.INVOICE]


def default_document_type(boundary: Boundary) -> DocumentType:
    return allowed_document_types(boundary)[0]


def validate_boundary(plan: RoutingPlan, boundary: str, document_type: Optional[str] = None):
    """
    Resolve and check a (boundary, document type) pair for a routing plan.

    Returns:
        (Boundary, DocumentType)
    """
    try:
        resolved = Boundary(boundary)
    except ValueError:
        raise ValidationError(f"Unknown boundary: {boundary}", {"boundary": boundary}, code="UNKNOWN_BOUNDARY")
    if resolved not in boundaries_for(plan):
        raise ValidationError(
            f"Boundary {resolved.value} does not exist for {plan.routing_type.value} routing",
            {"boundary": resolved.value, "routing_type": plan.routing_type.value},
            code="UNKNOWN_BOUNDARY",
        )
    try:
        doc_type = DocumentType(document_type) if document_type else default_document_type(resolved)
    except ValueError:
        raise ValidationError(
            f"Unknown document type: {document_type}", {"document_type": document_type}, code="UNKNOWN_DOCUMENT_TYPE"
        )
    if doc_type not in allowed_document_types(resolved):
        raise ValidationError(
            f"{doc_type.value} is not issued on the {resolved.value} boundary",
            {"boundary": resolved.value, "document_type": doc_type.value},
            code="UNKNOWN_DOCUMENT_TYPE",
        )
    return resolved, doc_type


def boundary_parties(job: Dict[str, Any], plan: RoutingPlan, boundary: Boundary) -> BoundaryParties:
    if boundary == Boundary.CUSTOMER:
        return BoundaryParties(payer=job["customer_id"], payee=settlement_config.BROKER_PARTY_ID)
    if boundary == Boundary.BROKER_MANUFACTURER:
        return BoundaryParties(payer=settlement_config.BROKER_PARTY_ID, payee=settlement_config.MANUFACTURER_PARTY_ID)
    if boundary == Boundary.MANUFACTURER_PRINTER:
        return BoundaryParties(payer=settlement_config.MANUFACTURER_PARTY_ID, payee=settlement_config.PRINTER_PARTY_ID)
    if boundary == Boundary.BROKER_VENDOR and isinstance(plan, ThreeTierVendor):
        return BoundaryParties(payer=settlement_config.BROKER_PARTY_ID, payee=plan.vendor_id)
    raise ValidationError(f"No parties for boundary {boundary}", code="UNKNOWN_BOUNDARY")


def counterparty_for(parties: BoundaryParties) -> str:
    """The party whose code numbers the document: the one being paid."""
    return parties.payee


# =============================================================================
# NUMBERING
# =============================================================================

def fallback_document_number(document_type: DocumentType, boundary: Boundary, job_number: str) -> str:
    return f"{FALLBACK_PREFIXES[(DocumentType(document_type), Boundary(boundary))]}-{job_number}"


def sequenced_document_number(counterparty_code: str, sequence: int) -> str:
    # Padding is a minimum width, sequences past 999 keep all their digits
    return f"{counterparty_code}-{sequence:0{settlement_config.COUNTERPARTY_SEQUENCE_WIDTH}d}"


# =============================================================================
# AMOUNT MAPPINGS (one per routing variant)
# =============================================================================

def two_tier_amounts(boundary: Boundary, document_type: DocumentType, snapshot: SettlementSnapshot) -> LinkAmounts:
    if boundary == Boundary.BROKER_MANUFACTURER:
        # Full manufacturer settlement, nothing retained at this hop
        total = snapshot.manufacturer_total
        return LinkAmounts(original=total, vendor=total, margin=ZERO if total is not None else None)
    if boundary == Boundary.MANUFACTURER_PRINTER:
        if snapshot.manufacturer_total is None:
            return LinkAmounts(None, None, None)
        return LinkAmounts(
            original=snapshot.manufacturer_total,
            vendor=snapshot.printer_total,
            margin=snapshot.manufacturer_total - snapshot.printer_total,
        )
    return LinkAmounts(
        original=snapshot.customer_total,
        vendor=snapshot.manufacturer_total,
        margin=snapshot.broker_margin_total,
    )


def vendor_amounts(boundary: Boundary, document_type: DocumentType, snapshot: SettlementSnapshot) -> LinkAmounts:
    if boundary == Boundary.BROKER_VENDOR:
        return LinkAmounts(
            original=snapshot.customer_total,
            vendor=snapshot.vendor_total,
            margin=snapshot.customer_total - snapshot.vendor_total,
        )
    return LinkAmounts(
        original=snapshot.customer_total,
        vendor=snapshot.vendor_total,
        margin=snapshot.broker_margin_total,
    )


def link_amounts(plan: RoutingPlan, boundary: Boundary, document_type: DocumentType,
                 snapshot: SettlementSnapshot) -> LinkAmounts:
    if isinstance(plan, ThreeTierVendor):
        return vendor_amounts(boundary, document_type, snapshot)
    return two_tier_amounts(boundary, document_type, snapshot)


# =============================================================================
# ELIGIBILITY
# =============================================================================

def eligibility_problem(job: Dict[str, Any], boundary: Boundary, document_type: DocumentType) -> Optional[str]:
    """Return why the document cannot be emitted yet, or None when it can."""
    if job.get("status") == JobStatus.CANCELLED.value:
        return "job is cancelled"
    if job.get("deleted_at"):
        return "job is deleted"

    snapshot = job.get("pricing") or {}
    if snapshot.get("customer_total") is None:
        return "settlement totals are not known yet"

    if document_type == DocumentType.INVOICE and not job.get("settlement_frozen"):
        return "settlement is frozen on proof approval"
    return None


# =============================================================================
# LINK ASSEMBLY
# =============================================================================

def build_chain_link(
    job: Dict[str, Any],
    plan: RoutingPlan,
    boundary: Boundary,
    document_type: DocumentType,
    document_number: str,
    actor: str = "system",
    source: LinkSource = LinkSource.GENERATED,
    external_ref: Optional[str] = None,
    supplied_amount: Optional[Decimal] = None,
) -> Dict[str, Any]:
    """Assemble a chain-link document ready to be inserted."""
    snapshot = SettlementSnapshot.from_dict(job["pricing"])
    parties = boundary_parties(job, plan, boundary)
    amounts = link_amounts(plan, boundary, document_type, snapshot)
    now = datetime.now(timezone.utc)

    if document_type == DocumentType.PURCHASE_ORDER:
        origin, receiver = parties.payer, parties.payee
        status = PurchaseOrderStatus.PENDING.value
    else:
        origin, receiver = parties.payee, parties.payer
        status = InvoiceStatus.ISSUED.value

    link = {
        "id": str(uuid.uuid4()),
        "job_id": job["id"],
        "job_number": job["job_number"],
        "boundary": boundary.value,
        "document_type": document_type.value,
        "document_number": document_number,
        "reference_number": job["customer_reference_number"],
        "origin_party_id": origin,
        "receiving_party_id": receiver,
        "original_amount": amounts.original,
        "vendor_amount": amounts.vendor,
        "margin_amount": amounts.margin,
        "supplied_amount": supplied_amount,
        "status": status,
        "is_active": True,
        "source": LinkSource(source).value,
        "external_ref": external_ref,
        "created_by": actor,
        "created_at": now.isoformat(),
        "cancelled_at": None,
    }
    if document_type == DocumentType.INVOICE:
        link["issued_at"] = now.isoformat()
        link["due_at"] = (now + timedelta(days=settlement_config.INVOICE_DUE_DAYS)).isoformat()
        link["paid_at"] = None
    return link
