"""
Print Broker Settlement Hub - Routing Plans

A job's routing decides the shape of its settlement chain:

- TwoTier: broker -> primary manufacturer -> manufacturer's printer
- ThreeTierVendor: broker -> third-party vendor, with the vendor amount and the
  broker cut agreed up front

The plan is built once from raw job input and validated exhaustively, so the
rest of the engine never infers routing from which optional fields happen to
be present.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from services.errors import MissingVendorFields, NegativeAmount, ValidationError
from services.settlement_calculator import to_decimal


class RoutingType(str, Enum):
    TWO_TIER = "two-tier"
    THREE_TIER_VENDOR = "three-tier-vendor"


class Boundary(str, Enum):
    """Pairwise relationship across which one PO and one invoice flow."""
    CUSTOMER = "customer"                          # customer pays broker
    BROKER_MANUFACTURER = "broker-manufacturer"    # broker pays manufacturer
    MANUFACTURER_PRINTER = "manufacturer-printer"  # manufacturer pays printer
    BROKER_VENDOR = "broker-vendor"                # broker pays vendor


VENDOR_FIELDS = ("vendor_id", "vendor_amount", "broker_cut")


@dataclass(frozen=True)
class TwoTier:
    routing_type: RoutingType = RoutingType.TWO_TIER

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.routing_type.value}


@dataclass(frozen=True)
class ThreeTierVendor:
    vendor_id: str
    vendor_amount: Decimal
    broker_cut: Decimal
    routing_type: RoutingType = RoutingType.THREE_TIER_VENDOR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.routing_type.value,
            "vendor_id": self.vendor_id,
            "vendor_amount": self.vendor_amount,
            "broker_cut": self.broker_cut,
        }


RoutingPlan = Union[TwoTier, ThreeTierVendor]


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


def build_routing_plan(routing_type: Optional[str], fields: Dict[str, Any]) -> RoutingPlan:
    """
    Build and validate a routing plan from raw job input.

    Raises:
        MissingVendorFields: vendor routing with any of the vendor fields absent
        ValidationError: unknown routing type, or vendor fields on a two-tier job
        NegativeAmount: negative vendor_amount or broker_cut
    """
    try:
        kind = RoutingType(routing_type or RoutingType.TWO_TIER.value)
    except ValueError:
        raise ValidationError(
            f"Unknown routing type: {routing_type}",
            {"routing_type": routing_type, "allowed": [r.value for r in RoutingType]},
            code="UNKNOWN_ROUTING_TYPE",
        )

    supplied = [name for name in VENDOR_FIELDS if _present(fields.get(name))]

    if kind == RoutingType.TWO_TIER:
        if supplied:
            raise ValidationError(
                "Vendor fields are only accepted with three-tier-vendor routing",
                {"fields": supplied},
                code="UNEXPECTED_VENDOR_FIELDS",
            )
        return TwoTier()

    missing = [name for name in VENDOR_FIELDS if name not in supplied]
    if missing:
        raise MissingVendorFields(missing)

    vendor_amount = to_decimal(fields["vendor_amount"], "vendor_amount")
    broker_cut = to_decimal(fields["broker_cut"], "broker_cut")
    if vendor_amount < 0:
        raise NegativeAmount("vendor_amount", vendor_amount)
    if broker_cut < 0:
        raise NegativeAmount("broker_cut", broker_cut)

    return ThreeTierVendor(
        vendor_id=str(fields["vendor_id"]).strip(),
        vendor_amount=vendor_amount,
        broker_cut=broker_cut,
    )


def routing_plan_from_dict(data: Dict[str, Any]) -> RoutingPlan:
    """Rehydrate a plan from its stored form."""
    if data.get("type") == RoutingType.THREE_TIER_VENDOR.value:
        return ThreeTierVendor(
            vendor_id=data["vendor_id"],
            vendor_amount=to_decimal(data["vendor_amount"], "vendor_amount"),
            broker_cut=to_decimal(data["broker_cut"], "broker_cut"),
        )
    return TwoTier()


def boundaries_for(plan: RoutingPlan) -> List[Boundary]:
    """Ordered boundaries of the chain, purchase side first."""
    if isinstance(plan, ThreeTierVendor):
        return [Boundary.BROKER_VENDOR, Boundary.CUSTOMER]
    return [Boundary.BROKER_MANUFACTURER, Boundary.MANUFACTURER_PRINTER, Boundary.CUSTOMER]


def purchase_boundary(plan: RoutingPlan) -> Boundary:
    """The boundary whose purchase order opens the chain."""
    return boundaries_for(plan)[0]
