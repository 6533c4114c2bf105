"""
Print Broker Settlement Hub - Job Status State Machine

Deterministic state machine for a print job:

    PENDING -> IN_PRODUCTION -> READY_FOR_PROOF -> PROOF_APPROVED -> COMPLETED

CANCELLED is reachable from every non-terminal state. Two backward edges
exist for the proof loop: a change request sends READY_FOR_PROOF back to
IN_PRODUCTION, and a newer proof version sends PROOF_APPROVED back to
READY_FOR_PROOF (the newer proof invalidates the earlier approval).

Like the rest of the calculator/generator layer this module performs no I/O.
The settlement service loads the persisted job inside a transaction, asks
JobLifecycle whether the move is allowed, and writes the result.
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Dict, List, Tuple, Any
import logging

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "PENDING"
    IN_PRODUCTION = "IN_PRODUCTION"
    READY_FOR_PROOF = "READY_FOR_PROOF"
    PROOF_APPROVED = "PROOF_APPROVED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.CANCELLED}


# current status -> allowed target statuses
TRANSITIONS: Dict[JobStatus, List[JobStatus]] = {
    JobStatus.PENDING: [JobStatus.IN_PRODUCTION, JobStatus.CANCELLED],
    JobStatus.IN_PRODUCTION: [JobStatus.READY_FOR_PROOF, JobStatus.CANCELLED],
    JobStatus.READY_FOR_PROOF: [JobStatus.PROOF_APPROVED, JobStatus.IN_PRODUCTION, JobStatus.CANCELLED],
    JobStatus.PROOF_APPROVED: [JobStatus.COMPLETED, JobStatus.READY_FOR_PROOF, JobStatus.CANCELLED],
    JobStatus.COMPLETED: [],
    JobStatus.CANCELLED: [],
}


class StatusHistoryEntry:
    """One line of a job's status history, stored on the job document."""

    def __init__(
        self,
        from_status: Optional[str],
        to_status: str,
        actor: str = "system",
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        self.timestamp = datetime.now(timezone.utc).isoformat()
        self.from_status = from_status
        self.to_status = to_status
        self.actor = actor
        self.reason = reason
        self.metadata = metadata or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor": self.actor,
            "reason": self.reason,
            "metadata": self.metadata,
        }


def latest_proof_version(job: Dict[str, Any]) -> Optional[int]:
    proofs = job.get("proofs") or []
    if not proofs:
        return None
    return max(p["version"] for p in proofs)


def production_guard_satisfied(job: Dict[str, Any]) -> bool:
    """Customer, quantity-or-spec and reference number are all present."""
    has_quantity_or_spec = job.get("quantity") is not None or bool(job.get("specs"))
    return bool(job.get("customer_id")) and bool(job.get("customer_reference_number")) and has_quantity_or_spec


class JobLifecycle:
    """Transition checks for the job status state machine."""

    @staticmethod
    def get_allowed_targets(status: str) -> List[JobStatus]:
        return list(TRANSITIONS.get(JobStatus(status), []))

    @staticmethod
    def is_terminal(status: str) -> bool:
        return JobStatus(status) in TERMINAL_STATUSES

    @staticmethod
    def can_transition(
        job: Dict[str, Any],
        target: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, Optional[str]]:
        """
        Check a transition against the job's persisted status and guards.

        Args:
            job: the job document as currently persisted
            target: requested status
            context: guard inputs (proof_version, changes_requested,
                fulfillment_confirmed)

        Returns:
            (allowed, reason) where reason explains a refusal
        """
        context = context or {}
        try:
            current = JobStatus(job.get("status"))
            target_status = JobStatus(target)
        except ValueError:
            return False, f"Unknown status: {target}"

        if current in TERMINAL_STATUSES:
            return False, f"{current.value} is terminal"

        if target_status not in TRANSITIONS[current]:
            return False, f"{target_status.value} is not reachable from {current.value}"

        if target_status == JobStatus.CANCELLED:
            return True, None

        if target_status == JobStatus.IN_PRODUCTION:
            if current == JobStatus.PENDING:
                if not production_guard_satisfied(job):
                    return False, "customer, quantity or spec, and reference number are required"
                return True, None
            if not context.get("changes_requested"):
                return False, "returning to production requires a proof change request"
            version = context.get("proof_version")
            if version is not None and int(version) != latest_proof_version(job):
                return False, f"proof version {version} is not the latest"
            return True, None

        if target_status == JobStatus.READY_FOR_PROOF:
            latest = latest_proof_version(job)
            if latest is None:
                return False, "no proof attached"
            if current == JobStatus.PROOF_APPROVED and latest <= (job.get("approved_proof_version") or 0):
                return False, "approved proof is already the latest version"
            return True, None

        if target_status == JobStatus.PROOF_APPROVED:
            version = context.get("proof_version")
            latest = latest_proof_version(job)
            if version is None:
                return False, "approval must name a proof version"
            if latest is None or int(version) != latest:
                return False, f"proof version {version} is not the latest ({latest})"
            return True, None

        if target_status == JobStatus.COMPLETED:
            if not context.get("fulfillment_confirmed"):
                return False, "fulfillment confirmation is required"
            return True, None

        return False, "unsupported transition"

    @staticmethod
    def build_transition(
        job: Dict[str, Any],
        target: str,
        actor: str = "system",
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Dict[str, Any], StatusHistoryEntry]:
        """
        Produce the field changes for an already-validated transition.

        Returns:
            (changes, history_entry); changes include the appended history list
        """
        now = datetime.now(timezone.utc).isoformat()
        entry = StatusHistoryEntry(
            from_status=job.get("status"),
            to_status=JobStatus(target).value,
            actor=actor,
            reason=reason,
            metadata=metadata,
        )
        history = list(job.get("status_history") or [])
        history.append(entry.to_dict())

        changes: Dict[str, Any] = {
            "status": JobStatus(target).value,
            "status_history": history,
            "updated_at": now,
        }
        if target == JobStatus.COMPLETED:
            changes["completed_at"] = now
        if target == JobStatus.CANCELLED:
            changes["cancelled_at"] = now

        logger.info("Job %s: %s -> %s (%s)", job.get("job_number"), job.get("status"), target, reason or actor)
        return changes, entry
