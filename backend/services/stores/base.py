"""
Print Broker Settlement Hub - Settlement Store Interface

A job is the unit of serialization. Every mutation of a job, its chain links,
its audit entries and its outbox events happens inside one JobScope obtained
from SettlementStore.transaction(job_id). The scope commits when the block
exits normally and discards everything when it raises.

Stores raise TransientConflict when a transaction lost a write race; the
settlement service retries those.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, AsyncContextManager, Dict, List, Optional


def format_job_number(year: int, sequence: int) -> str:
    return f"J-{year}-{sequence:06d}"


class JobScope(ABC):
    """Transactional view of one job and the rows it owns."""

    def __init__(self, job_id: str):
        self.job_id = job_id

    @abstractmethod
    async def get_job(self) -> Optional[Dict[str, Any]]:
        """Load the job and take its row lock for the rest of the scope."""
        pass

    @abstractmethod
    async def insert_job(self, job: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def update_job(self, changes: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def find_active_link(self, boundary: str, document_type: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def find_link_by_external_ref(self, external_ref: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def get_link(self, link_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def insert_link(self, link: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def update_link(self, link_id: str, changes: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def list_links(self) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def next_counterparty_sequence(self, code: str, document_type: str) -> int:
        """Atomically increment and read the sequence for (code, document type)."""
        pass

    @abstractmethod
    async def append_audit(self, entry: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def enqueue_event(self, event: Dict[str, Any]) -> bool:
        """Append an outbox event. Returns False if (job, event_key) already exists."""
        pass


class SettlementStore(ABC):
    """Persistence for jobs, chain links, audit entries, outbox and reference data."""

    @abstractmethod
    def transaction(self, job_id: str) -> AsyncContextManager[JobScope]:
        pass

    async def ensure_indexes(self) -> None:
        pass

    @abstractmethod
    async def next_job_number(self) -> str:
        pass

    # ---- jobs -------------------------------------------------------------

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def get_job_by_number(self, job_number: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_jobs(self, status: Optional[str] = None, include_deleted: bool = False,
                        skip: int = 0, limit: int = 50) -> List[Dict[str, Any]]:
        pass

    # ---- chain links & audit ------------------------------------------------

    @abstractmethod
    async def list_links(self, job_id: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def get_link(self, link_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_audit(self, job_id: str) -> List[Dict[str, Any]]:
        pass

    # ---- reference data -----------------------------------------------------

    @abstractmethod
    async def get_pricing_rule(self, size_key: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def upsert_pricing_rule(self, rule: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def list_pricing_rules(self) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def get_counterparty_code(self, party_id: str) -> Optional[str]:
        pass

    @abstractmethod
    async def register_counterparty(self, party_id: str, code: str) -> None:
        pass

    # ---- outbox -------------------------------------------------------------

    @abstractmethod
    async def pending_events(self, limit: int, max_attempts: int,
                             job_id: Optional[str] = None) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def mark_event_delivered(self, event_id: str) -> None:
        pass

    @abstractmethod
    async def mark_event_failed(self, event_id: str, error: str) -> None:
        pass

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
