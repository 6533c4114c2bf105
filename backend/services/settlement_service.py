"""
Print Broker Settlement Hub - Settlement Service

Orchestrates the job lifecycle: status transitions, readiness, pricing
snapshots, chain document emission and audit. Every mutating operation runs
inside one transaction scoped to the job (SettlementStore.transaction) and
either commits completely (job, links, audit entries, outbox events) or not at
all. Transient write conflicts are retried.

Side effects (notification delivery, document parsing, blob uploads) happen
outside the transaction. Their failures come back as SideEffectWarning values
on an otherwise successful OperationResult.
"""

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from services import settlement_config
from services.audit_ledger import AuditEntry, AuditLedger, job_ref, link_ref
from services.chain_generator import (
    DocumentType,
    InvoiceStatus,
    LinkSource,
    PurchaseOrderStatus,
    boundary_parties,
    build_chain_link,
    counterparty_for,
    eligibility_problem,
    fallback_document_number,
    sequenced_document_number,
    validate_boundary,
)
from services.document_parser import PartialJobFields, parse_document, validate_parsed_fields
from services.errors import (
    ChainNotEligible,
    ImmutableFieldError,
    InvalidTransition,
    JobNotFound,
    MissingReferenceNumber,
    NegativeAmount,
    NoPricingRule,
    SideEffectWarning,
    StateError,
    TransientConflict,
    ValidationError,
)
from services.job_lifecycle import (
    JobLifecycle,
    JobStatus,
    StatusHistoryEntry,
    latest_proof_version,
    production_guard_satisfied,
)
from services.notification_dispatcher import build_outbox_event
from services.notifier_service import NotificationType
from services.readiness import FileKind, counter_changes, is_ready, readiness_progress
from services.routing import (
    RoutingPlan,
    ThreeTierVendor,
    build_routing_plan,
    purchase_boundary,
    routing_plan_from_dict,
)
from services.settlement_calculator import (
    PaperMode,
    PricingRule,
    SettlementSnapshot,
    compute_size_based,
    compute_vendor_settlement,
    round_cpm,
    to_decimal,
    tier_amounts,
    total_from_cpm,
)

logger = logging.getLogger(__name__)


# Bookkeeping fields that change alongside audited ones but are not audited themselves
UNAUDITED_FIELDS = {"updated_at", "status_history", "attached_file_ids", "proofs", "lock_version", "pricing", "routing"}

# Fields update_job accepts
EDITABLE_FIELDS = {
    "quantity", "customer_reference_number", "size_key", "specs", "paper_mode",
    "customer_cpm", "customer_total", "required_artwork", "required_data_files", "notes",
}
PRICING_FIELDS = {"size_key", "paper_mode", "customer_cpm", "customer_total"}

COUNTERPARTY_CODE_PATTERN = re.compile(r"^[A-Z0-9]{3}$")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_jsonable(value: Any) -> Any:
    """Money as strings so no float ever touches an amount."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items() if k != "_id"}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def _flatten_pricing(snapshot: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not snapshot:
        return {}
    return {
        f"pricing.{k}": v for k, v in snapshot.items()
        if k.endswith("_cpm") or k.endswith("_total") or k == "requires_approval"
    }


def _whole_number(value: Any) -> int:
    """int() that refuses booleans and fractional values instead of truncating."""
    if isinstance(value, bool):
        raise ValueError(value)
    number = Decimal(str(value).strip())
    if not number.is_finite() or number != number.to_integral_value():
        raise ValueError(value)
    return int(number)


def _parse_quantity(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        quantity = _whole_number(value)
    except (TypeError, ValueError, ArithmeticError):
        raise ValidationError("quantity must be a whole number", {"value": str(value)}, code="INVALID_QUANTITY")
    if quantity < 0:
        raise NegativeAmount("quantity", quantity)
    if quantity == 0:
        raise ValidationError("quantity must be positive", {"value": quantity}, code="INVALID_QUANTITY")
    return quantity


def _parse_requirement(value: Any, field_name: str) -> Optional[int]:
    if value is None:
        return None
    try:
        required = _whole_number(value)
    except (TypeError, ValueError, ArithmeticError):
        raise ValidationError(f"{field_name} must be a whole number", {"field": field_name}, code="INVALID_REQUIREMENT")
    if required < 0:
        raise NegativeAmount(field_name, required)
    return required


def _parse_proof_version(context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    context = dict(context or {})
    version = context.get("proof_version")
    if version is None:
        return context
    try:
        context["proof_version"] = _whole_number(version)
    except (TypeError, ValueError, ArithmeticError):
        raise ValidationError(
            "proof_version must be a whole number",
            {"proof_version": str(version)},
            code="INVALID_PROOF_VERSION",
        )
    if context["proof_version"] < 1:
        raise ValidationError(
            "proof_version must be positive",
            {"proof_version": context["proof_version"]},
            code="INVALID_PROOF_VERSION",
        )
    return context


def _parse_paper_mode(value: Any) -> str:
    try:
        return PaperMode(value or PaperMode.STANDARD.value).value
    except ValueError:
        raise ValidationError(
            f"Unknown paper mode: {value}",
            {"paper_mode": value, "allowed": [m.value for m in PaperMode]},
            code="UNKNOWN_PAPER_MODE",
        )


def _optional_decimal(value: Any, field_name: str) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    amount = to_decimal(value, field_name)
    if amount < 0:
        raise NegativeAmount(field_name, amount)
    return amount


@dataclass
class OperationResult:
    data: Dict[str, Any]
    warnings: List[SideEffectWarning] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable({**self.data, "warnings": [w.to_dict() for w in self.warnings]})


class MutationContext:
    """Per-attempt state of one mutating operation."""

    def __init__(self, actor: str, trigger: str):
        self.actor = actor
        self.trigger = trigger
        self.ledger = AuditLedger(actor=actor, trigger=trigger)
        self.warnings: List[SideEffectWarning] = []
        self.events_enqueued = 0


class SettlementService:
    """
    Job lifecycle and multi-tier settlement engine.

    Usage:
        service = SettlementService(store, dispatcher=dispatcher)
        result = await service.create_job("cust-1", "two-tier", {
            "customer_reference_number": "PO-7781",
            "size_key": "8.5x11",
            "quantity": 5000,
        })
    """

    def __init__(self, store, dispatcher=None, parser=None, blob_store=None, dispatch_after_commit: bool = True):
        self.store = store
        self.dispatcher = dispatcher
        self.parser = parser
        self.blob_store = blob_store
        self.dispatch_after_commit = dispatch_after_commit

    # =========================================================================
    # TRANSACTION PLUMBING
    # =========================================================================

    async def _mutate(self, job_id: str, trigger: str, actor: str, operation) -> OperationResult:
        """Run operation(scope, ctx) in the job's transaction, retrying transient conflicts."""
        attempts = max(1, settlement_config.TRANSACTION_RETRIES)
        for attempt in range(1, attempts + 1):
            ctx = MutationContext(actor=actor, trigger=trigger)
            try:
                async with self.store.transaction(job_id) as scope:
                    result = await operation(scope, ctx)
                break
            except TransientConflict:
                if attempt == attempts:
                    logger.error("%s on job %s still conflicting after %d attempts", trigger, job_id, attempts)
                    raise
                logger.info("%s on job %s conflicted, retrying (%d/%d)", trigger, job_id, attempt, attempts)
                await asyncio.sleep(settlement_config.TRANSACTION_RETRY_DELAY * attempt)

        result.warnings.extend(ctx.warnings)
        if ctx.events_enqueued:
            result.warnings.extend(await self._dispatch(job_id))
        return result

    async def _dispatch(self, job_id: str) -> List[SideEffectWarning]:
        if not self.dispatcher or not self.dispatch_after_commit:
            return []
        try:
            report = await self.dispatcher.dispatch_pending(job_id=job_id)
        except Exception as e:
            logger.warning("Post-commit dispatch for job %s failed: %s", job_id, e)
            return [SideEffectWarning(code="NOTIFICATION_FAILED", message="Notification dispatch failed",
                                      details={"error": str(e)})]
        return report.warnings

    async def _load(self, scope, job_id: str) -> Dict[str, Any]:
        job = await scope.get_job()
        if not job or job.get("deleted_at"):
            raise JobNotFound(job_id)
        return job

    @staticmethod
    def _ensure_open(job: Dict[str, Any]) -> None:
        if JobLifecycle.is_terminal(job["status"]):
            raise StateError(
                f"Job {job['job_number']} is {job['status']}",
                {"job_id": job["id"], "status": job["status"]},
                code="JOB_CLOSED",
            )

    async def _apply_job_changes(self, scope, ctx: MutationContext, job: Dict[str, Any],
                                 changes: Dict[str, Any]) -> None:
        """Audit and write job field changes, keeping the in-memory job current."""
        audited = {k: v for k, v in changes.items() if k not in UNAUDITED_FIELDS}
        await ctx.ledger.record_changes(scope, job["id"], job_ref(job["id"]), job, audited)
        if "pricing" in changes:
            await ctx.ledger.record_changes(
                scope, job["id"], job_ref(job["id"]),
                _flatten_pricing(job.get("pricing")), _flatten_pricing(changes["pricing"]),
            )
        changes.setdefault("updated_at", _now())
        await scope.update_job(changes)
        job.update(changes)

    async def _enqueue(self, scope, ctx: MutationContext, job: Dict[str, Any], event_type: NotificationType,
                       payload: Optional[Dict[str, Any]] = None, event_key: Optional[str] = None) -> None:
        body = {
            "job_number": job["job_number"],
            "customer_id": job["customer_id"],
            "reference_number": job["customer_reference_number"],
            **(payload or {}),
        }
        event = build_outbox_event(job["id"], event_type.value, to_jsonable(body), event_key)
        if await scope.enqueue_event(event):
            ctx.events_enqueued += 1
        else:
            logger.debug("Event %s for job %s already queued", event["event_key"], job["job_number"])

    # =========================================================================
    # PRICING
    # =========================================================================

    async def _load_rule(self, size_key: Optional[str]) -> Optional[PricingRule]:
        if not size_key:
            return None
        raw = await self.store.get_pricing_rule(size_key)
        if not raw:
            raise NoPricingRule(size_key)
        return PricingRule.from_dict(raw)

    def _compute_pricing(self, plan: RoutingPlan, rule: Optional[PricingRule], quantity: Optional[int],
                         paper_mode: str, customer_cpm: Optional[Decimal], customer_total: Optional[Decimal]):
        if isinstance(plan, ThreeTierVendor):
            if customer_total is None:
                if rule is None or quantity is None:
                    raise ValidationError(
                        "Vendor routing needs a customer total, or a size and quantity to price one",
                        code="MISSING_CUSTOMER_TOTAL",
                    )
                cpm = customer_cpm if customer_cpm is not None else rule.customer_cpm
                customer_total = total_from_cpm(round_cpm(cpm), quantity)
            return compute_vendor_settlement(
                plan.vendor_id, plan.vendor_amount, plan.broker_cut, customer_total, quantity
            )
        if rule is None:
            return None, []
        return compute_size_based(rule, quantity, PaperMode(paper_mode), customer_cpm)

    # =========================================================================
    # STATUS TRANSITIONS
    # =========================================================================

    async def _apply_transition(self, scope, ctx: MutationContext, job: Dict[str, Any], target: JobStatus,
                                context: Optional[Dict[str, Any]] = None, reason: Optional[str] = None) -> None:
        context = context or {}
        allowed, refusal = JobLifecycle.can_transition(job, target.value, context)
        if not allowed:
            logger.warning("Rejected transition for job %s: %s -> %s (%s)",
                           job.get("job_number"), job.get("status"), target.value, refusal)
            raise InvalidTransition(job["status"], target.value, refusal)

        changes, _ = JobLifecycle.build_transition(
            job, target, actor=ctx.actor, reason=reason or context.get("reason") or ctx.trigger,
        )
        previous = job["status"]

        if target == JobStatus.PROOF_APPROVED:
            await self._on_proof_approved(scope, ctx, job, changes, context)
            return

        if target == JobStatus.IN_PRODUCTION and previous == JobStatus.READY_FOR_PROOF.value:
            changes["proofs"] = self._mark_latest_proof(job, "changes_requested", ctx.actor, context.get("comments"))

        if target == JobStatus.COMPLETED:
            changes["fulfillment"] = {
                "confirmed_by": ctx.actor,
                "confirmed_at": _now(),
                "tracking_reference": context.get("tracking_reference"),
            }

        await self._apply_job_changes(scope, ctx, job, changes)

        if target == JobStatus.COMPLETED:
            await self._enqueue(scope, ctx, job, NotificationType.JOB_COMPLETED)
        elif target == JobStatus.CANCELLED:
            await self._cancel_active_links(scope, ctx, job)
            await self._enqueue(scope, ctx, job, NotificationType.JOB_CANCELLED)

    @staticmethod
    def _mark_latest_proof(job: Dict[str, Any], status: str, actor: str, comments: Optional[str]) -> List[Dict[str, Any]]:
        proofs = [dict(p) for p in job.get("proofs") or []]
        latest = latest_proof_version(job)
        for proof in proofs:
            if proof["version"] == latest:
                proof["status"] = status
                proof["review"] = {"by": actor, "at": _now(), "comments": comments}
        return proofs

    async def _on_proof_approved(self, scope, ctx: MutationContext, job: Dict[str, Any],
                                 changes: Dict[str, Any], context: Dict[str, Any]) -> None:
        pricing = job.get("pricing") or {}
        if not pricing or not SettlementSnapshot.from_dict(pricing).has_totals:
            raise ValidationError(
                "Settlement totals are unknown; set quantity and size before approving a proof",
                {"job_id": job["id"]},
                code="MISSING_SETTLEMENT_TOTALS",
            )

        version = int(context["proof_version"])
        changes["approved_proof_version"] = version
        changes["proofs"] = self._mark_latest_proof(job, "approved", ctx.actor, context.get("comments"))
        if not job.get("settlement_frozen"):
            changes["settlement_frozen"] = True
            changes["settlement_frozen_at"] = _now()
            logger.info("Settlement frozen for job %s: customer total %s",
                        job["job_number"], pricing.get("customer_total"))

        await self._apply_job_changes(scope, ctx, job, changes)
        await self._enqueue(scope, ctx, job, NotificationType.PROOF_APPROVED,
                            {"proof_version": version}, event_key=f"PROOF_APPROVED:v{version}")

        plan = routing_plan_from_dict(job["routing"])
        boundary, doc_type = validate_boundary(plan, "customer")
        if not await scope.find_active_link(boundary.value, doc_type.value):
            await self._emit_link(scope, ctx, job, plan, boundary, doc_type)

    async def _maybe_start_production(self, scope, ctx: MutationContext, job: Dict[str, Any]) -> None:
        if job["status"] == JobStatus.PENDING.value and production_guard_satisfied(job):
            await self._apply_transition(scope, ctx, job, JobStatus.IN_PRODUCTION, reason="production requirements met")

    # =========================================================================
    # CHAIN EMISSION
    # =========================================================================

    async def _document_number(self, scope, job: Dict[str, Any], plan: RoutingPlan, boundary, doc_type) -> str:
        code = await self.store.get_counterparty_code(counterparty_for(boundary_parties(job, plan, boundary)))
        if code:
            sequence = await scope.next_counterparty_sequence(code, doc_type.value)
            return sequenced_document_number(code, sequence)

        number = fallback_document_number(doc_type, boundary, job["job_number"])
        # Re-emission after a cancellation gets a revision suffix
        previous = [
            l for l in await scope.list_links()
            if l["boundary"] == boundary.value and l["document_type"] == doc_type.value
        ]
        if previous:
            number = f"{number}-R{len(previous)}"
        return number

    async def _emit_link(self, scope, ctx: MutationContext, job: Dict[str, Any], plan: RoutingPlan,
                         boundary, doc_type, source: LinkSource = LinkSource.GENERATED,
                         document_number: Optional[str] = None, external_ref: Optional[str] = None,
                         supplied_amount: Optional[Decimal] = None,
                         attachment_handle: Optional[str] = None) -> Dict[str, Any]:
        problem = eligibility_problem(job, boundary, doc_type)
        if problem:
            raise ChainNotEligible(boundary.value, doc_type.value, problem)

        number = document_number or await self._document_number(scope, job, plan, boundary, doc_type)
        link = build_chain_link(
            job, plan, boundary, doc_type, number,
            actor=ctx.actor, source=source, external_ref=external_ref, supplied_amount=supplied_amount,
        )
        if attachment_handle:
            link["attachment_handle"] = attachment_handle
        await scope.insert_link(link)

        ref = link_ref(link["id"])
        for name in ("status", "original_amount", "vendor_amount", "margin_amount", "supplied_amount"):
            await ctx.ledger.record(scope, job["id"], ref, name, None, link[name])

        event_type = NotificationType.PO_CREATED if doc_type == DocumentType.PURCHASE_ORDER else NotificationType.INVOICE_SENT
        await self._enqueue(
            scope, ctx, job, event_type,
            {
                "document_number": link["document_number"],
                "document_type": link["document_type"],
                "boundary": link["boundary"],
                "origin_party_id": link["origin_party_id"],
                "receiving_party_id": link["receiving_party_id"],
                "amount": link["vendor_amount"] if doc_type == DocumentType.PURCHASE_ORDER else link["original_amount"],
            },
            event_key=f"{event_type.value}:{link['id']}",
        )

        logger.info("Emitted %s %s for job %s (%s, ref %s)", doc_type.value, number,
                    job["job_number"], boundary.value, link["reference_number"])
        return link

    async def _maybe_emit_purchase_order(self, scope, ctx: MutationContext, job: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        plan = routing_plan_from_dict(job["routing"])
        boundary = purchase_boundary(plan)
        if eligibility_problem(job, boundary, DocumentType.PURCHASE_ORDER):
            return None
        if await scope.find_active_link(boundary.value, DocumentType.PURCHASE_ORDER.value):
            return None
        return await self._emit_link(scope, ctx, job, plan, boundary, DocumentType.PURCHASE_ORDER)

    async def _cancel_active_links(self, scope, ctx: MutationContext, job: Dict[str, Any]) -> None:
        for link in await scope.list_links():
            if link["is_active"]:
                await self._cancel_link(scope, ctx, job, link)

    async def _cancel_link(self, scope, ctx: MutationContext, job: Dict[str, Any], link: Dict[str, Any]) -> Dict[str, Any]:
        status = PurchaseOrderStatus.CANCELLED.value if link["document_type"] == DocumentType.PURCHASE_ORDER.value \
            else InvoiceStatus.CANCELLED.value
        changes = {"is_active": False, "status": status, "cancelled_at": _now()}
        await ctx.ledger.record(scope, job["id"], link_ref(link["id"]), "status", link["status"], status)
        await scope.update_link(link["id"], changes)
        link.update(changes)
        logger.info("Cancelled %s %s for job %s", link["document_type"], link["document_number"], job["job_number"])
        return link

    # =========================================================================
    # JOB REGISTRY
    # =========================================================================

    async def create_job(self, customer_id: str, routing_type: str, spec: Dict[str, Any],
                         actor: str = "system") -> OperationResult:
        """
        Create a job, price it, and open its chain.

        Raises:
            MissingReferenceNumber, MissingVendorFields, NoPricingRule and other
            validation errors, all before anything is written.
        """
        spec = dict(spec or {})
        if not customer_id or not str(customer_id).strip():
            raise ValidationError("customer_id is required", code="MISSING_CUSTOMER")
        reference = spec.get("customer_reference_number") or spec.get("reference_number")
        if not reference or not str(reference).strip():
            raise MissingReferenceNumber()

        plan = build_routing_plan(routing_type, spec)
        quantity = _parse_quantity(spec.get("quantity"))
        paper_mode = _parse_paper_mode(spec.get("paper_mode"))
        customer_cpm = _optional_decimal(spec.get("customer_cpm"), "customer_cpm")
        customer_total = _optional_decimal(spec.get("customer_total"), "customer_total")
        required_artwork = _parse_requirement(
            spec["required_artwork"] if "required_artwork" in spec else settlement_config.DEFAULT_REQUIRED_ARTWORK,
            "required_artwork",
        )
        required_data_files = _parse_requirement(
            spec["required_data_files"] if "required_data_files" in spec else settlement_config.DEFAULT_REQUIRED_DATA_FILES,
            "required_data_files",
        )

        rule = await self._load_rule(spec.get("size_key"))
        snapshot, pricing_warnings = self._compute_pricing(plan, rule, quantity, paper_mode, customer_cpm, customer_total)

        job_id = str(uuid.uuid4())
        job_number = await self.store.next_job_number()
        now = _now()
        created = StatusHistoryEntry(None, JobStatus.PENDING.value, actor=actor, reason="job created")
        job = {
            "id": job_id,
            "job_number": job_number,
            "customer_id": str(customer_id).strip(),
            "routing_type": plan.routing_type.value,
            "routing": plan.to_dict(),
            "customer_reference_number": str(reference).strip(),
            "quantity": quantity,
            "size_key": spec.get("size_key"),
            "specs": spec.get("specs") or {},
            "paper_mode": paper_mode,
            "customer_cpm": customer_cpm,
            "customer_total": customer_total,
            "notes": spec.get("notes"),
            "status": JobStatus.PENDING.value,
            "status_history": [created.to_dict()],
            "required_artwork": required_artwork,
            "uploaded_artwork": 0,
            "required_data_files": required_data_files,
            "uploaded_data_files": 0,
            "attached_file_ids": [],
            "is_ready_for_production": False,
            "ready_at": None,
            "submitted_for_production_at": None,
            "pricing": snapshot.to_dict() if snapshot else None,
            "settlement_frozen": False,
            "settlement_frozen_at": None,
            "proofs": [],
            "approved_proof_version": None,
            "completed_at": None,
            "cancelled_at": None,
            "deleted_at": None,
            "deleted_by": None,
            "created_by": actor,
            "created_at": now,
            "updated_at": now,
            "lock_version": 0,
        }

        async def operation(scope, ctx: MutationContext):
            new_job = dict(job)
            await scope.insert_job(new_job)
            initial = {k: v for k, v in new_job.items() if k not in UNAUDITED_FIELDS and v is not None}
            await ctx.ledger.record_changes(scope, job_id, job_ref(job_id), {}, initial,
                                            fields=["status", "quantity", "customer_reference_number",
                                                    "size_key", "routing_type", "customer_cpm", "customer_total"])
            await ctx.ledger.record_changes(scope, job_id, job_ref(job_id), {}, _flatten_pricing(new_job["pricing"]))
            if isinstance(plan, ThreeTierVendor):
                for name in ("vendor_id", "vendor_amount", "broker_cut"):
                    await ctx.ledger.record(scope, job_id, job_ref(job_id), f"routing.{name}", None, getattr(plan, name))

            # zero declared requirements are already met
            ready_changes = self._readiness_flip(new_job)
            if ready_changes:
                await self._apply_job_changes(scope, ctx, new_job, ready_changes)
                await self._enqueue(scope, ctx, new_job, NotificationType.JOB_BECAME_READY,
                                    {"progress": readiness_progress(new_job)})
                logger.info("Job %s is ready for production", job_number)

            await self._maybe_start_production(scope, ctx, new_job)
            link = await self._maybe_emit_purchase_order(scope, ctx, new_job)
            return OperationResult({"job": new_job, "links": [link] if link else []}, list(pricing_warnings))

        result = await self._mutate(job_id, "create_job", actor, operation)
        logger.info("Created job %s (%s) for customer %s", job_number, plan.routing_type.value, customer_id)
        return result

    async def update_job(self, job_id: str, changes: Dict[str, Any], actor: str = "system") -> OperationResult:
        """Edit a job before its settlement is locked down."""
        unknown = sorted(set(changes) - EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(unknown)}", {"fields": unknown}, code="UNKNOWN_FIELD")

        parsed: Dict[str, Any] = {}
        for name, value in changes.items():
            if name == "quantity":
                parsed[name] = _parse_quantity(value)
            elif name == "customer_reference_number":
                if not value or not str(value).strip():
                    raise MissingReferenceNumber()
                parsed[name] = str(value).strip()
            elif name == "paper_mode":
                parsed[name] = _parse_paper_mode(value)
            elif name in ("customer_cpm", "customer_total"):
                parsed[name] = _optional_decimal(value, name)
            elif name in ("required_artwork", "required_data_files"):
                parsed[name] = _parse_requirement(value, name)
            else:
                parsed[name] = value

        async def operation(scope, ctx: MutationContext):
            job = await self._load(scope, job_id)
            self._ensure_open(job)
            effective = {k: v for k, v in parsed.items() if job.get(k) != v}
            if not effective:
                return OperationResult({"job": job, "links": []})

            has_links = bool(await scope.list_links())
            for name in ("quantity", "customer_reference_number"):
                if name in effective and has_links:
                    raise ImmutableFieldError(name, "a chain document already references this job")
            for name in PRICING_FIELDS & set(effective):
                if job.get("settlement_frozen"):
                    raise ImmutableFieldError(name, "settlement is frozen")
                if has_links:
                    raise ImmutableFieldError(name, "a chain document already references this job")

            warnings: List[SideEffectWarning] = []
            if ({"quantity"} | PRICING_FIELDS) & set(effective):
                merged = {**job, **effective}
                plan = routing_plan_from_dict(job["routing"])
                if "size_key" in effective or not (job.get("pricing") or {}).get("rule"):
                    rule = await self._load_rule(merged.get("size_key"))
                else:
                    rule = PricingRule.from_dict(job["pricing"]["rule"])
                snapshot, warnings = self._compute_pricing(
                    plan, rule, merged.get("quantity"), merged.get("paper_mode") or PaperMode.STANDARD.value,
                    merged.get("customer_cpm"), merged.get("customer_total"),
                )
                effective["pricing"] = snapshot.to_dict() if snapshot else None

            await self._apply_job_changes(scope, ctx, job, effective)
            ready_changes = self._readiness_flip(job)
            if ready_changes:
                await self._apply_job_changes(scope, ctx, job, ready_changes)
                await self._enqueue(scope, ctx, job, NotificationType.JOB_BECAME_READY,
                                    {"progress": readiness_progress(job)})
            await self._maybe_start_production(scope, ctx, job)
            link = await self._maybe_emit_purchase_order(scope, ctx, job)
            return OperationResult({"job": job, "links": [link] if link else []}, warnings)

        return await self._mutate(job_id, "update_job", actor, operation)

    async def delete_job(self, job_id: str, actor: str = "system") -> OperationResult:
        """Soft delete; the job and its audit trail are kept."""
        async def operation(scope, ctx: MutationContext):
            job = await self._load(scope, job_id)
            await self._apply_job_changes(scope, ctx, job, {"deleted_at": _now(), "deleted_by": actor})
            logger.info("Soft-deleted job %s", job["job_number"])
            return OperationResult({"job": job})

        return await self._mutate(job_id, "delete_job", actor, operation)

    async def get_job(self, job_id: str) -> Dict[str, Any]:
        job = await self.store.get_job(job_id)
        if not job or job.get("deleted_at"):
            raise JobNotFound(job_id)
        return job

    async def get_job_detail(self, job_id: str) -> Dict[str, Any]:
        job = await self.get_job(job_id)
        snapshot = SettlementSnapshot.from_dict(job["pricing"]) if job.get("pricing") else None
        return {
            "job": job,
            "links": await self.store.list_links(job_id),
            "readiness": readiness_progress(job),
            "tier_amounts": tier_amounts(snapshot) if snapshot and snapshot.has_totals else None,
            "allowed_transitions": [s.value for s in JobLifecycle.get_allowed_targets(job["status"])],
        }

    async def list_jobs(self, status: Optional[str] = None, skip: int = 0, limit: int = 50) -> List[Dict[str, Any]]:
        return await self.store.list_jobs(status=status, skip=skip, limit=limit)

    async def transition_status(self, job_id: str, target: str, context: Optional[Dict[str, Any]] = None,
                                actor: str = "system") -> OperationResult:
        """
        Move a job to target status after checking the persisted status.

        Raises:
            InvalidTransition: target unreachable or guard unmet; nothing written
        """
        try:
            target_status = JobStatus(target)
        except ValueError:
            raise ValidationError(f"Unknown status: {target}", {"status": target}, code="UNKNOWN_STATUS")
        context = _parse_proof_version(context)

        async def operation(scope, ctx: MutationContext):
            job = await self._load(scope, job_id)
            await self._apply_transition(scope, ctx, job, target_status, context)
            return OperationResult({"job": job})

        return await self._mutate(job_id, f"transition:{target_status.value}", actor, operation)

    async def cancel_job(self, job_id: str, reason: Optional[str] = None, actor: str = "system") -> OperationResult:
        return await self.transition_status(job_id, JobStatus.CANCELLED.value, {"reason": reason}, actor=actor)

    async def complete_job(self, job_id: str, tracking_reference: Optional[str] = None,
                           actor: str = "system") -> OperationResult:
        return await self.transition_status(
            job_id, JobStatus.COMPLETED.value,
            {"fulfillment_confirmed": True, "tracking_reference": tracking_reference},
            actor=actor,
        )

    # =========================================================================
    # READINESS
    # =========================================================================

    @staticmethod
    def _readiness_flip(job: Dict[str, Any]) -> Dict[str, Any]:
        if job.get("is_ready_for_production") or not is_ready(job):
            return {}
        return {"is_ready_for_production": True, "ready_at": _now()}

    async def record_file_attached(self, job_id: str, kind: str, file_id: Optional[str] = None,
                                   actor: str = "system") -> OperationResult:
        """
        Count an attached deliverable and re-evaluate readiness.

        JobBecameReady is queued exactly once, on the not-ready -> ready flip.

        Returns:
            data {"ready": bool, "progress": {...}, "became_ready": bool}
        """
        try:
            file_kind = FileKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown file kind: {kind}", {"kind": kind}, code="UNKNOWN_FILE_KIND")
        if file_kind == FileKind.PROOF:
            raise ValidationError("Proofs are attached with attach_proof", {"kind": kind}, code="UNKNOWN_FILE_KIND")
        file_id = file_id or str(uuid.uuid4())

        async def operation(scope, ctx: MutationContext):
            job = await self._load(scope, job_id)
            self._ensure_open(job)
            became_ready = False

            changes = counter_changes(job, file_kind, file_id)
            if changes:
                await self._apply_job_changes(scope, ctx, job, changes)
                ready_changes = self._readiness_flip(job)
                if ready_changes:
                    await self._apply_job_changes(scope, ctx, job, ready_changes)
                    await self._enqueue(scope, ctx, job, NotificationType.JOB_BECAME_READY,
                                        {"progress": readiness_progress(job)})
                    became_ready = True
                    logger.info("Job %s is ready for production", job["job_number"])
            else:
                logger.debug("File %s already counted on job %s", file_id, job["job_number"])

            return OperationResult({
                "ready": bool(job.get("is_ready_for_production")),
                "progress": readiness_progress(job),
                "became_ready": became_ready,
            })

        return await self._mutate(job_id, f"file_attached:{file_kind.value}", actor, operation)

    async def manual_override(self, job_id: str, actor: str = "system") -> OperationResult:
        """Mark a job ready regardless of its file counts. Idempotent."""
        async def operation(scope, ctx: MutationContext):
            job = await self._load(scope, job_id)
            self._ensure_open(job)
            changes: Dict[str, Any] = {}
            if not job.get("is_ready_for_production"):
                changes["is_ready_for_production"] = True
                changes["ready_at"] = _now()
            if not job.get("submitted_for_production_at"):
                changes["submitted_for_production_at"] = _now()
            if changes:
                await self._apply_job_changes(scope, ctx, job, changes)
                await self._enqueue(scope, ctx, job, NotificationType.JOB_SUBMITTED_CONFIRMATION,
                                    {"submitted_by": actor})
                logger.info("Job %s manually marked ready by %s", job["job_number"], actor)
            return OperationResult({"ready": True, "progress": readiness_progress(job)})

        return await self._mutate(job_id, "manual_override", actor, operation)

    # =========================================================================
    # PROOFS
    # =========================================================================

    async def attach_proof(self, job_id: str, file_handle: str, actor: str = "system",
                           notes: Optional[str] = None) -> OperationResult:
        """Add a new proof version; a newer version supersedes any earlier approval."""
        async def operation(scope, ctx: MutationContext):
            job = await self._load(scope, job_id)
            self._ensure_open(job)
            if job["status"] == JobStatus.PENDING.value:
                raise InvalidTransition(job["status"], JobStatus.READY_FOR_PROOF.value, "job is not in production")

            version = (latest_proof_version(job) or 0) + 1
            proofs = [dict(p) for p in job.get("proofs") or []]
            for proof in proofs:
                if proof.get("status") in ("pending", "approved"):
                    proof["status"] = "superseded"
            proofs.append({
                "version": version,
                "file_handle": file_handle,
                "notes": notes,
                "status": "pending",
                "uploaded_by": actor,
                "uploaded_at": _now(),
            })
            await self._apply_job_changes(scope, ctx, job, {"proofs": proofs, "latest_proof_version": version})

            if job["status"] in (JobStatus.IN_PRODUCTION.value, JobStatus.PROOF_APPROVED.value):
                await self._apply_transition(scope, ctx, job, JobStatus.READY_FOR_PROOF, reason=f"proof v{version} attached")
                if job.get("approved_proof_version") is not None:
                    await self._apply_job_changes(scope, ctx, job, {"approved_proof_version": None})

            await self._enqueue(scope, ctx, job, NotificationType.PROOF_READY,
                                {"proof_version": version}, event_key=f"PROOF_READY:v{version}")
            return OperationResult({"job": job, "proof_version": version})

        return await self._mutate(job_id, "attach_proof", actor, operation)

    async def approve_proof(self, job_id: str, proof_version: int, actor: str = "system",
                            comments: Optional[str] = None) -> OperationResult:
        """Approve a specific proof version; freezes the settlement and invoices the customer."""
        return await self.transition_status(
            job_id, JobStatus.PROOF_APPROVED.value,
            {"proof_version": proof_version, "comments": comments},
            actor=actor,
        )

    async def request_proof_changes(self, job_id: str, proof_version: int, actor: str = "system",
                                    comments: Optional[str] = None) -> OperationResult:
        return await self.transition_status(
            job_id, JobStatus.IN_PRODUCTION.value,
            {"changes_requested": True, "proof_version": proof_version, "comments": comments},
            actor=actor,
        )

    # =========================================================================
    # CHAIN DOCUMENTS
    # =========================================================================

    async def emit_chain_document(self, job_id: str, boundary: str, document_type: Optional[str] = None,
                                  actor: str = "system") -> OperationResult:
        """
        Emit the chain document for a boundary, or return the active one.

        Returns:
            data {"link": {...}, "created": bool}
        """
        async def operation(scope, ctx: MutationContext):
            job = await self._load(scope, job_id)
            plan = routing_plan_from_dict(job["routing"])
            resolved, doc_type = validate_boundary(plan, boundary, document_type)

            existing = await scope.find_active_link(resolved.value, doc_type.value)
            if existing:
                logger.debug("%s for job %s on %s already exists", doc_type.value, job["job_number"], resolved.value)
                return OperationResult({"link": existing, "created": False})

            link = await self._emit_link(scope, ctx, job, plan, resolved, doc_type)
            return OperationResult({"link": link, "created": True})

        return await self._mutate(job_id, f"emit:{boundary}", actor, operation)

    async def record_supplied_document(
        self,
        job_id: str,
        boundary: str,
        document_type: str,
        raw_bytes: Optional[bytes] = None,
        filename: str = "document.pdf",
        fields: Optional[Dict[str, Any]] = None,
        external_ref: Optional[str] = None,
        actor: str = "system",
    ) -> OperationResult:
        """
        Record a PO or invoice received from an upstream party.

        The document is parsed (and stored) before the transaction starts;
        parser failures surface as DocumentParserError with nothing written.
        Redelivery with the same external_ref returns the recorded link.
        """
        if raw_bytes is not None:
            if self.parser is None:
                raise ValidationError("No document parser configured", code="PARSER_UNAVAILABLE")
            parsed = await parse_document(self.parser, raw_bytes, filename)
        else:
            parsed = validate_parsed_fields(fields or {})

        warnings: List[SideEffectWarning] = []
        handle = None
        if raw_bytes is not None and self.blob_store is not None:
            try:
                handle = await self.blob_store.put(raw_bytes, filename)
            except Exception as e:
                logger.warning("Could not store supplied document for job %s: %s", job_id, e)
                warnings.append(SideEffectWarning(code="BLOB_STORE_FAILED", message="Document could not be stored",
                                                  details={"error": str(e)}))

        async def operation(scope, ctx: MutationContext):
            job = await self._load(scope, job_id)
            plan = routing_plan_from_dict(job["routing"])
            resolved, doc_type = validate_boundary(plan, boundary, document_type)

            if external_ref:
                seen = await scope.find_link_by_external_ref(external_ref)
                if seen:
                    logger.debug("Supplied document %s already recorded", external_ref)
                    return OperationResult({"link": seen, "created": False})

            existing = await scope.find_active_link(resolved.value, doc_type.value)
            if existing:
                return OperationResult({"link": existing, "created": False}, self._supplied_warnings(job, existing, parsed))

            link = await self._emit_link(
                scope, ctx, job, plan, resolved, doc_type,
                source=LinkSource.SUPPLIED,
                document_number=parsed.document_number,
                external_ref=external_ref,
                supplied_amount=parsed.amount,
                attachment_handle=handle,
            )
            return OperationResult({"link": link, "created": True}, self._supplied_warnings(job, link, parsed))

        result = await self._mutate(job_id, f"supplied:{boundary}:{document_type}", actor, operation)
        result.warnings.extend(warnings)
        return result

    @staticmethod
    def _supplied_warnings(job: Dict[str, Any], link: Dict[str, Any], parsed: PartialJobFields) -> List[SideEffectWarning]:
        warnings = []
        if parsed.reference_number and parsed.reference_number != job["customer_reference_number"]:
            warnings.append(SideEffectWarning(
                code="REFERENCE_MISMATCH",
                message="Supplied document references a different customer order",
                details={"expected": job["customer_reference_number"], "supplied": parsed.reference_number},
            ))
        expected = link.get("vendor_amount")
        if parsed.amount is not None and expected is not None and parsed.amount != expected:
            warnings.append(SideEffectWarning(
                code="AMOUNT_MISMATCH",
                message="Supplied amount differs from the settlement amount",
                details={"expected": str(expected), "supplied": str(parsed.amount)},
            ))
        return warnings

    async def _link_job_id(self, link_id: str) -> str:
        link = await self.store.get_link(link_id)
        if not link:
            raise ValidationError(f"Chain document not found: {link_id}", {"link_id": link_id}, code="LINK_NOT_FOUND")
        return link["job_id"]

    async def cancel_chain_document(self, link_id: str, actor: str = "system") -> OperationResult:
        """Cancel an active chain document, freeing its boundary for re-emission."""
        job_id = await self._link_job_id(link_id)

        async def operation(scope, ctx: MutationContext):
            job = await self._load(scope, job_id)
            link = await scope.get_link(link_id)
            if link["is_active"]:
                await self._cancel_link(scope, ctx, job, link)
            return OperationResult({"link": link})

        return await self._mutate(job_id, "cancel_chain_document", actor, operation)

    async def mark_chain_document_paid(self, link_id: str, actor: str = "system") -> OperationResult:
        job_id = await self._link_job_id(link_id)

        async def operation(scope, ctx: MutationContext):
            job = await self._load(scope, job_id)
            link = await scope.get_link(link_id)
            if link["document_type"] != DocumentType.INVOICE.value:
                raise ValidationError("Only invoices can be paid", {"link_id": link_id}, code="NOT_AN_INVOICE")
            if link["status"] == InvoiceStatus.PAID.value:
                return OperationResult({"link": link})
            if not link["is_active"]:
                raise StateError("Cancelled invoices cannot be paid", {"link_id": link_id}, code="LINK_CANCELLED")
            changes = {"status": InvoiceStatus.PAID.value, "paid_at": _now()}
            await ctx.ledger.record(scope, job["id"], link_ref(link_id), "status", link["status"], changes["status"])
            await scope.update_link(link_id, changes)
            link.update(changes)
            return OperationResult({"link": link})

        return await self._mutate(job_id, "mark_paid", actor, operation)

    async def list_chain_documents(self, job_id: str) -> List[Dict[str, Any]]:
        await self.get_job(job_id)
        return await self.store.list_links(job_id)

    # =========================================================================
    # AUDIT
    # =========================================================================

    async def get_audit_trail(self, job_id: str) -> List[AuditEntry]:
        """Audit entries of a job in write order; soft-deleted jobs included."""
        if not await self.store.get_job(job_id):
            raise JobNotFound(job_id)
        return [AuditEntry.from_dict(e) for e in await self.store.list_audit(job_id)]

    # =========================================================================
    # REFERENCE DATA
    # =========================================================================

    async def upsert_pricing_rule(self, data: Dict[str, Any]) -> PricingRule:
        """Edits never touch existing jobs; they hold their own copy of the rule."""
        if not data.get("size_key"):
            raise ValidationError("size_key is required", code="MISSING_SIZE_KEY")
        rule = PricingRule.from_dict(data)
        await self.store.upsert_pricing_rule({**rule.to_dict(), "updated_at": _now()})
        logger.info("Pricing rule %s saved", rule.size_key)
        return rule

    async def list_pricing_rules(self) -> List[Dict[str, Any]]:
        return await self.store.list_pricing_rules()

    async def register_counterparty(self, party_id: str, code: str) -> Dict[str, str]:
        code = (code or "").strip().upper()
        if not COUNTERPARTY_CODE_PATTERN.match(code):
            raise ValidationError("Counterparty codes are three letters or digits", {"code": code},
                                  code="INVALID_COUNTERPARTY_CODE")
        await self.store.register_counterparty(party_id, code)
        return {"party_id": party_id, "code": code}
