"""
Print Broker Settlement Hub - In-Memory Settlement Store

Process-local implementation of the settlement store for tests and local
runs. A per-job asyncio.Lock serializes scopes on the same job; writes are
staged on copies and applied in one synchronous step when the scope exits
cleanly, so a failing operation leaves nothing behind.
"""

import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from services.errors import ValidationError
from services.stores.base import JobScope, SettlementStore, format_job_number

logger = logging.getLogger(__name__)


class InMemoryJobScope(JobScope):

    def __init__(self, store: "InMemorySettlementStore", job_id: str):
        super().__init__(job_id)
        self._store = store
        self._job: Optional[Dict[str, Any]] = None
        self._job_loaded = False
        self._job_dirty = False
        self._links: Dict[str, Dict[str, Any]] = {}
        self._audit: List[Dict[str, Any]] = []
        self._events: List[Dict[str, Any]] = []

    def _load(self) -> Optional[Dict[str, Any]]:
        if not self._job_loaded:
            committed = self._store.jobs.get(self.job_id)
            self._job = copy.deepcopy(committed) if committed else None
            self._job_loaded = True
        return self._job

    async def get_job(self) -> Optional[Dict[str, Any]]:
        job = self._load()
        return copy.deepcopy(job) if job else None

    async def insert_job(self, job: Dict[str, Any]) -> None:
        if self._load() is not None or any(j["job_number"] == job["job_number"] for j in self._store.jobs.values()):
            raise ValidationError("Job already exists", {"job_id": self.job_id}, code="DUPLICATE_JOB")
        self._job = copy.deepcopy(job)
        self._job_dirty = True

    async def update_job(self, changes: Dict[str, Any]) -> None:
        job = self._load()
        if job is None:
            raise ValidationError("Job not loaded", {"job_id": self.job_id}, code="JOB_NOT_FOUND")
        job.update(copy.deepcopy(changes))
        self._job_dirty = True

    def _all_links(self) -> List[Dict[str, Any]]:
        merged = {k: v for k, v in self._store.links.items() if v["job_id"] == self.job_id}
        merged.update(self._links)
        return list(merged.values())

    async def find_active_link(self, boundary: str, document_type: str) -> Optional[Dict[str, Any]]:
        for link in self._all_links():
            if link["boundary"] == boundary and link["document_type"] == document_type and link["is_active"]:
                return copy.deepcopy(link)
        return None

    async def find_link_by_external_ref(self, external_ref: str) -> Optional[Dict[str, Any]]:
        for link in self._all_links():
            if link.get("external_ref") == external_ref:
                return copy.deepcopy(link)
        return None

    async def get_link(self, link_id: str) -> Optional[Dict[str, Any]]:
        link = self._links.get(link_id) or self._store.links.get(link_id)
        if link and link["job_id"] == self.job_id:
            return copy.deepcopy(link)
        return None

    async def insert_link(self, link: Dict[str, Any]) -> None:
        self._links[link["id"]] = copy.deepcopy(link)

    async def update_link(self, link_id: str, changes: Dict[str, Any]) -> None:
        current = self._links.get(link_id) or copy.deepcopy(self._store.links[link_id])
        current.update(copy.deepcopy(changes))
        self._links[link_id] = current

    async def list_links(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(sorted(self._all_links(), key=lambda l: l["created_at"]))

    async def next_counterparty_sequence(self, code: str, document_type: str) -> int:
        return self._store._increment(f"cp:{code}:{document_type}")

    async def append_audit(self, entry: Dict[str, Any]) -> None:
        self._audit.append(copy.deepcopy(entry))

    async def enqueue_event(self, event: Dict[str, Any]) -> bool:
        key = (event["job_id"], event["event_key"])
        existing = [(e["job_id"], e["event_key"]) for e in self._store.outbox.values()]
        existing += [(e["job_id"], e["event_key"]) for e in self._events]
        if key in existing:
            return False
        self._events.append(copy.deepcopy(event))
        return True

    def commit(self) -> None:
        """Apply staged writes. Runs without awaiting, so it is atomic for asyncio."""
        store = self._store
        for link in self._links.values():
            if not link["is_active"]:
                continue
            for other in store.links.values():
                if other["id"] == link["id"]:
                    continue
                if (other["document_type"] == link["document_type"]
                        and other["document_number"] == link["document_number"]):
                    raise ValidationError(
                        f"Document number {link['document_number']} already exists",
                        {"document_number": link["document_number"], "document_type": link["document_type"]},
                        code="DUPLICATE_DOCUMENT_NUMBER",
                    )

        if self._job_dirty and self._job is not None:
            store.jobs[self.job_id] = self._job
        store.links.update(self._links)
        store.audit.extend(self._audit)
        for event in self._events:
            store.outbox[event["id"]] = event


class InMemorySettlementStore(SettlementStore):
    """
    In-memory store for testing.

    Reference data (pricing rules, counterparty codes) can be seeded directly.
    """

    def __init__(self):
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.links: Dict[str, Dict[str, Any]] = {}
        self.audit: List[Dict[str, Any]] = []
        self.outbox: Dict[str, Dict[str, Any]] = {}
        self.pricing_rules: Dict[str, Dict[str, Any]] = {}
        self.counterparties: Dict[str, str] = {}
        self.counters: Dict[str, int] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _increment(self, key: str) -> int:
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    @asynccontextmanager
    async def transaction(self, job_id: str):
        lock = self._locks.setdefault(job_id, asyncio.Lock())
        async with lock:
            scope = InMemoryJobScope(self, job_id)
            yield scope
            scope.commit()

    async def next_job_number(self) -> str:
        year = datetime.now(timezone.utc).year
        return format_job_number(year, self._increment(f"job:{year}"))

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = self.jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def get_job_by_number(self, job_number: str) -> Optional[Dict[str, Any]]:
        for job in self.jobs.values():
            if job["job_number"] == job_number:
                return copy.deepcopy(job)
        return None

    async def list_jobs(self, status: Optional[str] = None, include_deleted: bool = False,
                        skip: int = 0, limit: int = 50) -> List[Dict[str, Any]]:
        jobs = [
            j for j in self.jobs.values()
            if (status is None or j["status"] == status) and (include_deleted or not j.get("deleted_at"))
        ]
        jobs.sort(key=lambda j: j["created_at"], reverse=True)
        return copy.deepcopy(jobs[skip:skip + limit])

    async def list_links(self, job_id: str) -> List[Dict[str, Any]]:
        links = [l for l in self.links.values() if l["job_id"] == job_id]
        return copy.deepcopy(sorted(links, key=lambda l: l["created_at"]))

    async def get_link(self, link_id: str) -> Optional[Dict[str, Any]]:
        link = self.links.get(link_id)
        return copy.deepcopy(link) if link else None

    async def list_audit(self, job_id: str) -> List[Dict[str, Any]]:
        return copy.deepcopy([a for a in self.audit if a["job_id"] == job_id])

    async def get_pricing_rule(self, size_key: str) -> Optional[Dict[str, Any]]:
        rule = self.pricing_rules.get(size_key)
        return copy.deepcopy(rule) if rule else None

    async def upsert_pricing_rule(self, rule: Dict[str, Any]) -> None:
        self.pricing_rules[rule["size_key"]] = copy.deepcopy(rule)

    async def list_pricing_rules(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(sorted(self.pricing_rules.values(), key=lambda r: r["size_key"]))

    async def get_counterparty_code(self, party_id: str) -> Optional[str]:
        return self.counterparties.get(party_id)

    async def register_counterparty(self, party_id: str, code: str) -> None:
        self.counterparties[party_id] = code

    async def pending_events(self, limit: int, max_attempts: int,
                             job_id: Optional[str] = None) -> List[Dict[str, Any]]:
        events = [
            e for e in self.outbox.values()
            if e["delivered_at"] is None and e["attempts"] < max_attempts
            and (job_id is None or e["job_id"] == job_id)
        ]
        events.sort(key=lambda e: e["created_at"])
        return copy.deepcopy(events[:limit])

    async def mark_event_delivered(self, event_id: str) -> None:
        event = self.outbox[event_id]
        event["attempts"] += 1
        event["delivered_at"] = self._now()
        event["last_error"] = None

    async def mark_event_failed(self, event_id: str, error: str) -> None:
        event = self.outbox[event_id]
        event["attempts"] += 1
        event["last_error"] = error
        event["last_attempt_at"] = self._now()
