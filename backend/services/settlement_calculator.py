"""
Print Broker Settlement Hub - Settlement Calculator

Derives the per-tier CPM (price per thousand) figures and the absolute
totals and margins for a job. This module is pure business logic: it never
touches the store and never raises on a merely suspicious price.

Size-based pricing (two-tier routing)
-------------------------------------
CPMs are decomposed top-down from the customer CPM:

    customer_cpm
      - broker_margin_cpm            -> manufacturer_cpm (what the broker pays)
      - print_cpm - paper_cost_cpm   -> manufacturer_margin_cpm

Paper modes:
- standard: broker base = print + paper charged, the pool above the base is
  split by the rule's broker margin share
- paper-markup-waived: as standard, but paper is charged at cost
- printer-supplies-paper: fixed percentage split of the customer CPM, no paper

Totals are rounded to the cent with ROUND_HALF_EVEN from the persisted CPMs.
Only the paid amounts (customer, manufacturer, printer, paper cost) are
rounded; margins are the differences between them, so every tier always sums
back to the customer total exactly.

Vendor pricing (three-tier routing)
-----------------------------------
No decomposition: the vendor amount and broker cut are validated against the
customer total and stored as-is.
"""

from dataclasses import dataclass, asdict, field, fields as dataclass_fields
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import logging

from services import settlement_config
from services.errors import (
    NegativeAmount,
    SideEffectWarning,
    ValidationError,
    VendorAmountsExceedCustomerTotal,
    suspicious_pricing,
)

logger = logging.getLogger(__name__)


CENT = Decimal("0.01")
CPM_PLACES = Decimal("0.0001")
ROUNDING = ROUND_HALF_EVEN
HUNDRED = Decimal("100")
THOUSAND = Decimal("1000")
ZERO = Decimal("0")


# =============================================================================
# MONEY HELPERS
# =============================================================================

def to_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """Coerce API/parser input into a Decimal, rejecting garbage."""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or value is None:
        raise ValidationError(f"{field_name} is not a valid amount", {"field": field_name}, code="INVALID_AMOUNT")
    else:
        try:
            result = Decimal(str(value).strip().replace(",", "").lstrip("$"))
        except InvalidOperation:
            raise ValidationError(
                f"{field_name} is not a valid amount",
                {"field": field_name, "value": str(value)},
                code="INVALID_AMOUNT",
            )
    if not result.is_finite():
        raise ValidationError(f"{field_name} is not a valid amount", {"field": field_name}, code="INVALID_AMOUNT")
    return result


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUNDING)


def round_cpm(value: Decimal) -> Decimal:
    return value.quantize(CPM_PLACES, rounding=ROUNDING)


def total_from_cpm(cpm: Optional[Decimal], quantity: Optional[int]) -> Optional[Decimal]:
    if cpm is None or quantity is None:
        return None
    return round_money(cpm * Decimal(quantity) / THOUSAND)


# =============================================================================
# PRICING RULES
# =============================================================================

class PaperMode(str, Enum):
    STANDARD = "standard"
    PRINTER_SUPPLIES_PAPER = "printer-supplies-paper"
    PAPER_MARKUP_WAIVED = "paper-markup-waived"


@dataclass(frozen=True)
class PricingRule:
    """Price table row for one size. Copied into each job snapshot on use."""
    size_key: str
    customer_cpm: Decimal
    print_cpm: Decimal
    paper_weight_per_1000: Decimal = ZERO   # lbs of paper per thousand pieces
    paper_cost_per_lb: Decimal = ZERO
    paper_markup_percent: Decimal = ZERO
    broker_margin_share_percent: Decimal = Decimal("50")

    def paper_cost_cpm(self) -> Decimal:
        return round_cpm(self.paper_weight_per_1000 * self.paper_cost_per_lb)

    def paper_charged_cpm(self) -> Decimal:
        return round_cpm(self.paper_cost_cpm() * (HUNDRED + self.paper_markup_percent) / HUNDRED)

    def validate(self) -> None:
        for name in ("customer_cpm", "print_cpm", "paper_weight_per_1000",
                     "paper_cost_per_lb", "paper_markup_percent"):
            if getattr(self, name) < 0:
                raise NegativeAmount(name, getattr(self, name))
        if not ZERO <= self.broker_margin_share_percent <= HUNDRED:
            raise ValidationError(
                "broker_margin_share_percent must be between 0 and 100",
                {"value": str(self.broker_margin_share_percent)},
                code="INVALID_MARGIN_SHARE",
            )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PricingRule":
        kwargs: Dict[str, Any] = {"size_key": str(data["size_key"])}
        for f in dataclass_fields(cls):
            if f.name == "size_key" or data.get(f.name) is None:
                continue
            kwargs[f.name] = to_decimal(data[f.name], f.name)
        if "broker_margin_share_percent" not in kwargs:
            kwargs["broker_margin_share_percent"] = settlement_config.DEFAULT_BROKER_MARGIN_SHARE_PERCENT
        rule = cls(**kwargs)
        rule.validate()
        return rule


# =============================================================================
# SNAPSHOT
# =============================================================================

@dataclass
class SettlementSnapshot:
    """Frozen per-tier figures stored on the job. Never recomputed for display."""
    method: str                                   # "size-based" | "vendor"
    quantity: Optional[int] = None
    size_key: Optional[str] = None
    paper_mode: Optional[str] = None

    # CPMs
    customer_cpm: Optional[Decimal] = None
    broker_margin_cpm: Optional[Decimal] = None
    manufacturer_cpm: Optional[Decimal] = None
    manufacturer_margin_cpm: Optional[Decimal] = None
    printer_cpm: Optional[Decimal] = None
    paper_cost_cpm: Optional[Decimal] = None
    paper_charged_cpm: Optional[Decimal] = None
    paper_markup_cpm: Optional[Decimal] = None

    # Totals
    customer_total: Optional[Decimal] = None
    broker_margin_total: Optional[Decimal] = None
    manufacturer_total: Optional[Decimal] = None
    manufacturer_margin_total: Optional[Decimal] = None
    printer_total: Optional[Decimal] = None
    paper_cost_total: Optional[Decimal] = None
    paper_charged_total: Optional[Decimal] = None
    paper_markup_total: Optional[Decimal] = None

    # Vendor routing
    vendor_id: Optional[str] = None
    vendor_total: Optional[Decimal] = None
    broker_cut_total: Optional[Decimal] = None
    broker_residual_total: Optional[Decimal] = None

    # Undercharge detection
    standard_customer_cpm: Optional[Decimal] = None
    requires_approval: bool = False
    undercharge_cpm: Optional[Decimal] = None
    undercharge_total: Optional[Decimal] = None

    rule: Optional[Dict[str, Any]] = None
    computed_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def has_totals(self) -> bool:
        return self.customer_total is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SettlementSnapshot":
        known = {f.name: f for f in dataclass_fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in known:
                continue
            if value is not None and (key.endswith("_cpm") or key.endswith("_total")):
                value = to_decimal(value, key)
            kwargs[key] = value
        return cls(**kwargs)


# =============================================================================
# SIZE-BASED PRICING
# =============================================================================

def _decompose(rule: PricingRule, customer_cpm: Decimal, paper_mode: PaperMode) -> Dict[str, Decimal]:
    if paper_mode == PaperMode.PRINTER_SUPPLIES_PAPER:
        broker_margin = round_cpm(customer_cpm * settlement_config.PRINTER_PAPER_IMPACT_PERCENT / HUNDRED)
        manufacturer = customer_cpm - broker_margin
        manufacturer_margin = round_cpm(customer_cpm * settlement_config.PRINTER_PAPER_BROKER_MARGIN_PERCENT / HUNDRED)
        return {
            "customer_cpm": customer_cpm,
            "broker_margin_cpm": broker_margin,
            "manufacturer_cpm": manufacturer,
            "manufacturer_margin_cpm": manufacturer_margin,
            "printer_cpm": manufacturer - manufacturer_margin,
            "paper_cost_cpm": ZERO,
            "paper_charged_cpm": ZERO,
            "paper_markup_cpm": ZERO,
        }

    paper_cost = rule.paper_cost_cpm()
    if paper_mode == PaperMode.PAPER_MARKUP_WAIVED:
        paper_charged = paper_cost
    else:
        paper_charged = rule.paper_charged_cpm()

    base = rule.print_cpm + paper_charged
    pool = customer_cpm - base
    broker_margin = round_cpm(pool * rule.broker_margin_share_percent / HUNDRED)
    manufacturer = customer_cpm - broker_margin

    return {
        "customer_cpm": customer_cpm,
        "broker_margin_cpm": broker_margin,
        "manufacturer_cpm": manufacturer,
        "manufacturer_margin_cpm": manufacturer - rule.print_cpm - paper_cost,
        "printer_cpm": rule.print_cpm,
        "paper_cost_cpm": paper_cost,
        "paper_charged_cpm": paper_charged,
        "paper_markup_cpm": paper_charged - paper_cost,
    }


def _totals(cpms: Dict[str, Decimal], quantity: Optional[int]) -> Dict[str, Optional[Decimal]]:
    if quantity is None:
        return {}
    customer = total_from_cpm(cpms["customer_cpm"], quantity)
    manufacturer = total_from_cpm(cpms["manufacturer_cpm"], quantity)
    printer = total_from_cpm(cpms["printer_cpm"], quantity)
    paper_cost = total_from_cpm(cpms["paper_cost_cpm"], quantity)
    paper_charged = total_from_cpm(cpms["paper_charged_cpm"], quantity)
    return {
        "customer_total": customer,
        "manufacturer_total": manufacturer,
        "printer_total": printer,
        "paper_cost_total": paper_cost,
        "paper_charged_total": paper_charged,
        "broker_margin_total": customer - manufacturer,
        "manufacturer_margin_total": manufacturer - printer - paper_cost,
        "paper_markup_total": paper_charged - paper_cost,
    }


def _unit_price_warnings(customer_cpm: Decimal) -> List[SideEffectWarning]:
    floor = settlement_config.MIN_UNIT_PRICE
    unit_price = customer_cpm / THOUSAND
    if unit_price < floor:
        logger.warning("Suspicious pricing: unit price %s below floor %s", unit_price, floor)
        return [suspicious_pricing(unit_price, floor)]
    return []


def compute_size_based(
    rule: PricingRule,
    quantity: Optional[int],
    paper_mode: PaperMode = PaperMode.STANDARD,
    customer_cpm: Optional[Decimal] = None,
) -> Tuple[SettlementSnapshot, List[SideEffectWarning]]:
    """
    Price a job from its size rule.

    Args:
        rule: pricing rule looked up by size key
        quantity: piece count, None when not known yet (CPMs only)
        paper_mode: how paper is supplied and charged
        customer_cpm: per-job override of the rule's customer CPM

    Returns:
        (snapshot, warnings)
    """
    if quantity is not None and quantity < 0:
        raise NegativeAmount("quantity", quantity)

    standard_cpm = round_cpm(rule.customer_cpm)
    effective_cpm = round_cpm(customer_cpm) if customer_cpm is not None else standard_cpm
    if effective_cpm < 0:
        raise NegativeAmount("customer_cpm", effective_cpm)

    cpms = _decompose(rule, effective_cpm, PaperMode(paper_mode))
    snapshot = SettlementSnapshot(
        method="size-based",
        quantity=quantity,
        size_key=rule.size_key,
        paper_mode=PaperMode(paper_mode).value,
        standard_customer_cpm=standard_cpm,
        rule=rule.to_dict(),
        **cpms,
        **_totals(cpms, quantity),
    )

    warnings = _unit_price_warnings(effective_cpm)

    if effective_cpm < standard_cpm:
        snapshot.requires_approval = True
        snapshot.undercharge_cpm = standard_cpm - effective_cpm
        snapshot.undercharge_total = total_from_cpm(snapshot.undercharge_cpm, quantity)
        warnings.append(SideEffectWarning(
            code="UNDERCHARGE",
            message=f"Customer CPM {effective_cpm} is below the standard {standard_cpm} for {rule.size_key}",
            details={"undercharge_cpm": str(snapshot.undercharge_cpm),
                     "undercharge_total": str(snapshot.undercharge_total) if snapshot.undercharge_total is not None else None},
        ))

    for margin in ("broker_margin_cpm", "manufacturer_margin_cpm"):
        if cpms[margin] < 0:
            warnings.append(SideEffectWarning(
                code="NEGATIVE_MARGIN",
                message=f"{margin} is negative",
                details={"field": margin, "value": str(cpms[margin])},
            ))

    return snapshot, warnings


def recompute_totals(snapshot: SettlementSnapshot) -> Dict[str, Optional[Decimal]]:
    """Re-derive the totals from the stored CPMs; must match what was persisted."""
    if snapshot.method == "vendor":
        return {
            "customer_total": snapshot.customer_total,
            "vendor_total": snapshot.vendor_total,
            "broker_cut_total": snapshot.broker_cut_total,
            "broker_residual_total": snapshot.broker_residual_total,
        }
    cpms = {name: getattr(snapshot, name) for name in (
        "customer_cpm", "manufacturer_cpm", "printer_cpm", "paper_cost_cpm", "paper_charged_cpm")}
    return _totals(cpms, snapshot.quantity)


# =============================================================================
# VENDOR PRICING
# =============================================================================

def compute_vendor_settlement(
    vendor_id: str,
    vendor_amount: Decimal,
    broker_cut: Decimal,
    customer_total: Decimal,
    quantity: Optional[int] = None,
) -> Tuple[SettlementSnapshot, List[SideEffectWarning]]:
    """
    Validate and store vendor-supplied amounts.

    Raises:
        NegativeAmount: any amount below zero
        VendorAmountsExceedCustomerTotal: vendor_amount + broker_cut > customer_total
    """
    for name, value in (("vendor_amount", vendor_amount), ("broker_cut", broker_cut),
                        ("customer_total", customer_total)):
        if value < 0:
            raise NegativeAmount(name, value)

    customer = round_money(customer_total)
    vendor = round_money(vendor_amount)
    cut = round_money(broker_cut)
    if vendor + cut > customer:
        raise VendorAmountsExceedCustomerTotal(vendor, cut, customer)

    snapshot = SettlementSnapshot(
        method="vendor",
        quantity=quantity,
        vendor_id=vendor_id,
        customer_total=customer,
        vendor_total=vendor,
        broker_cut_total=cut,
        broker_residual_total=customer - vendor - cut,
        broker_margin_total=customer - vendor,
    )

    warnings: List[SideEffectWarning] = []
    if quantity:
        snapshot.customer_cpm = round_cpm(customer * THOUSAND / Decimal(quantity))
        warnings.extend(_unit_price_warnings(customer * THOUSAND / Decimal(quantity)))
    return snapshot, warnings


def tier_amounts(snapshot: SettlementSnapshot) -> Dict[str, Optional[Decimal]]:
    """Every tier's share of the customer total; sums to customer_total."""
    if snapshot.method == "vendor":
        return {
            "broker_cut": snapshot.broker_cut_total,
            "broker_residual": snapshot.broker_residual_total,
            "vendor": snapshot.vendor_total,
        }
    return {
        "broker_margin": snapshot.broker_margin_total,
        "manufacturer_margin": snapshot.manufacturer_margin_total,
        "printer": snapshot.printer_total,
        "paper_cost": snapshot.paper_cost_total,
    }
