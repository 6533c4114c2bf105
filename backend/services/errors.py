"""
Print Broker Settlement Hub - Error Taxonomy

Exception Hierarchy:
    SettlementError (base)
    ├── ValidationError             - input rejected before any mutation
    │   ├── MissingReferenceNumber
    │   ├── MissingVendorFields
    │   ├── NegativeAmount
    │   ├── VendorAmountsExceedCustomerTotal
    │   └── ImmutableFieldError
    ├── StateError                  - operation not allowed in the current state
    │   ├── InvalidTransition
    │   └── ChainNotEligible
    ├── JobNotFound
    ├── DependencyError             - collaborator or lookup failure (retryable)
    │   ├── NoPricingRule
    │   └── DocumentParserError
    └── TransientConflict           - store write conflict, retried by the service

Non-fatal diagnostics (SuspiciousPricing, notification failures) are not
raised. They are SideEffectWarning values returned next to a successful result.
"""

from dataclasses import dataclass, asdict, field
from typing import Optional, Dict, Any, List


class SettlementError(Exception):
    """Base exception for all settlement engine errors."""

    code = "SETTLEMENT_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


# =============================================================================
# VALIDATION ERRORS - rejected before any write
# =============================================================================

class ValidationError(SettlementError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, code: Optional[str] = None):
        super().__init__(message, details)
        if code:
            self.code = code


class MissingReferenceNumber(ValidationError):
    code = "MISSING_REFERENCE_NUMBER"

    def __init__(self):
        super().__init__("A customer reference number is required to create a job")


class MissingVendorFields(ValidationError):
    """vendor_id, vendor_amount and broker_cut must be supplied together."""

    code = "MISSING_VENDOR_FIELDS"

    def __init__(self, missing: List[str]):
        super().__init__(
            f"Vendor routing requires vendor_id, vendor_amount and broker_cut; missing: {', '.join(missing)}",
            {"missing": missing},
        )
        self.missing = missing


class NegativeAmount(ValidationError):
    code = "NEGATIVE_AMOUNT"

    def __init__(self, field_name: str, value: Any):
        super().__init__(f"{field_name} must not be negative", {"field": field_name, "value": str(value)})


class VendorAmountsExceedCustomerTotal(ValidationError):
    code = "VENDOR_AMOUNTS_EXCEED_CUSTOMER_TOTAL"

    def __init__(self, vendor_amount, broker_cut, customer_total):
        super().__init__(
            "vendor_amount plus broker_cut exceeds the customer total",
            {
                "vendor_amount": str(vendor_amount),
                "broker_cut": str(broker_cut),
                "customer_total": str(customer_total),
            },
        )


class ImmutableFieldError(ValidationError):
    code = "IMMUTABLE_FIELD"

    def __init__(self, field_name: str, reason: str):
        super().__init__(f"{field_name} can no longer be changed: {reason}", {"field": field_name, "reason": reason})


# =============================================================================
# STATE ERRORS
# =============================================================================

class StateError(SettlementError):
    code = "STATE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, code: Optional[str] = None):
        super().__init__(message, details)
        if code:
            self.code = code


class InvalidTransition(StateError):
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str, reason: str):
        super().__init__(
            f"Cannot transition from {current} to {target}: {reason}",
            {"current": current, "target": target, "reason": reason},
        )
        self.current = current
        self.target = target


class ChainNotEligible(StateError):
    code = "CHAIN_NOT_ELIGIBLE"

    def __init__(self, boundary: str, document_type: str, reason: str):
        super().__init__(
            f"{document_type} for boundary {boundary} cannot be emitted yet: {reason}",
            {"boundary": boundary, "document_type": document_type, "reason": reason},
        )


class JobNotFound(SettlementError):
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}", {"job_id": job_id})


# =============================================================================
# DEPENDENCY ERRORS - retryable, job left untouched
# =============================================================================

class DependencyError(SettlementError):
    code = "DEPENDENCY_ERROR"
    retryable = True


class NoPricingRule(DependencyError):
    code = "NO_PRICING_RULE"

    def __init__(self, size_key: str):
        super().__init__(f"No pricing rule for size {size_key}", {"size_key": size_key})


class DocumentParserError(DependencyError):
    code = "DOCUMENT_PARSER_ERROR"


class TransientConflict(SettlementError):
    """Raised by a store when a transaction lost a write race and may be retried."""

    code = "TRANSIENT_CONFLICT"
    retryable = True


# =============================================================================
# NON-FATAL DIAGNOSTICS
# =============================================================================

@dataclass
class SideEffectWarning:
    """A diagnostic that rides along with an otherwise successful result."""
    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def suspicious_pricing(unit_price, floor) -> SideEffectWarning:
    return SideEffectWarning(
        code="SUSPICIOUS_PRICING",
        message=f"Implied unit price {unit_price} is below the configured floor {floor}",
        details={"unit_price": str(unit_price), "floor": str(floor)},
    )
