"""
Tests for the job status state machine.
"""
import pytest

from services.job_lifecycle import JobLifecycle, JobStatus, latest_proof_version


def make_job(status="PENDING", **extra):
    job = {
        "id": "job-1",
        "job_number": "J-2026-000001",
        "status": status,
        "customer_id": "cust-1",
        "customer_reference_number": "PO-7781",
        "quantity": 5000,
        "status_history": [],
        "proofs": [],
    }
    job.update(extra)
    return job


class TestTransitionTable:

    def test_allowed_targets(self):
        assert JobLifecycle.get_allowed_targets("PENDING") == [JobStatus.IN_PRODUCTION, JobStatus.CANCELLED]
        assert JobLifecycle.get_allowed_targets("COMPLETED") == []

    @pytest.mark.parametrize("status", ["COMPLETED", "CANCELLED"])
    def test_terminal_states_reject_everything(self, status):
        assert JobLifecycle.is_terminal(status)
        allowed, reason = JobLifecycle.can_transition(make_job(status), "IN_PRODUCTION")
        assert not allowed
        assert "terminal" in reason

    def test_skipping_states_is_rejected(self):
        allowed, reason = JobLifecycle.can_transition(make_job(), "COMPLETED", {"fulfillment_confirmed": True})
        assert not allowed
        assert "not reachable" in reason

    def test_unknown_target(self):
        allowed, reason = JobLifecycle.can_transition(make_job(), "SHIPPED")
        assert not allowed
        assert "Unknown status" in reason

    @pytest.mark.parametrize("status", ["PENDING", "IN_PRODUCTION", "READY_FOR_PROOF", "PROOF_APPROVED"])
    def test_cancel_from_any_open_state(self, status):
        assert JobLifecycle.can_transition(make_job(status), "CANCELLED") == (True, None)


class TestGuards:

    def test_production_requires_reference_customer_and_quantity(self):
        assert JobLifecycle.can_transition(make_job(), "IN_PRODUCTION")[0]
        for missing in ("customer_id", "customer_reference_number"):
            allowed, _ = JobLifecycle.can_transition(make_job(**{missing: None}), "IN_PRODUCTION")
            assert not allowed, missing

    def test_specs_satisfy_quantity_guard(self):
        job = make_job(quantity=None, specs={"stock": "100# gloss"})
        assert JobLifecycle.can_transition(job, "IN_PRODUCTION")[0]
        assert not JobLifecycle.can_transition(make_job(quantity=None), "IN_PRODUCTION")[0]

    def test_ready_for_proof_needs_a_proof(self):
        allowed, reason = JobLifecycle.can_transition(make_job("IN_PRODUCTION"), "READY_FOR_PROOF")
        assert not allowed
        assert reason == "no proof attached"
        job = make_job("IN_PRODUCTION", proofs=[{"version": 1}])
        assert JobLifecycle.can_transition(job, "READY_FOR_PROOF")[0]

    def test_approval_must_name_latest_version(self):
        job = make_job("READY_FOR_PROOF", proofs=[{"version": 1}, {"version": 2}])
        assert latest_proof_version(job) == 2
        assert not JobLifecycle.can_transition(job, "PROOF_APPROVED")[0]
        assert not JobLifecycle.can_transition(job, "PROOF_APPROVED", {"proof_version": 1})[0]
        assert JobLifecycle.can_transition(job, "PROOF_APPROVED", {"proof_version": 2})[0]

    def test_change_request_returns_to_production(self):
        job = make_job("READY_FOR_PROOF", proofs=[{"version": 1}])
        assert not JobLifecycle.can_transition(job, "IN_PRODUCTION")[0]
        assert JobLifecycle.can_transition(job, "IN_PRODUCTION", {"changes_requested": True})[0]

    def test_newer_proof_reopens_approval(self):
        job = make_job("PROOF_APPROVED", proofs=[{"version": 1}], approved_proof_version=1)
        assert not JobLifecycle.can_transition(job, "READY_FOR_PROOF")[0]
        job["proofs"].append({"version": 2})
        assert JobLifecycle.can_transition(job, "READY_FOR_PROOF")[0]

    def test_completion_requires_fulfillment(self):
        job = make_job("PROOF_APPROVED")
        assert not JobLifecycle.can_transition(job, "COMPLETED")[0]
        assert JobLifecycle.can_transition(job, "COMPLETED", {"fulfillment_confirmed": True})[0]


class TestBuildTransition:

    def test_appends_history(self):
        job = make_job()
        changes, entry = JobLifecycle.build_transition(job, "IN_PRODUCTION", actor="csr@broker", reason="ready")
        assert changes["status"] == "IN_PRODUCTION"
        assert changes["status_history"][-1]["from_status"] == "PENDING"
        assert changes["status_history"][-1]["actor"] == "csr@broker"
        assert entry.to_status == "IN_PRODUCTION"
        assert job["status_history"] == []

    def test_terminal_timestamps(self):
        changes, _ = JobLifecycle.build_transition(make_job("PROOF_APPROVED"), JobStatus.COMPLETED)
        assert changes["completed_at"]
        changes, _ = JobLifecycle.build_transition(make_job(), JobStatus.CANCELLED)
        assert changes["cancelled_at"]
