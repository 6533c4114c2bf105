"""
Print Broker Settlement Hub - Audit Ledger

Append-only record of every monetary and status mutation. Entries are written
through the same job scope as the mutation they describe, so they commit or
roll back together. Nothing in the codebase updates or deletes an entry.
"""

from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


@dataclass(frozen=True)
class AuditEntry:
    job_id: str
    entity_ref: str          # "job:<id>" or "chain_link:<id>"
    field: str
    old_value: Any
    new_value: Any
    trigger: str             # operation or external event that caused the change
    actor: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        return cls(**{k: v for k, v in data.items() if k != "_id"})


def job_ref(job_id: str) -> str:
    return f"job:{job_id}"


def link_ref(link_id: str) -> str:
    return f"chain_link:{link_id}"


class AuditLedger:
    """Builds audit entries and appends them through a job scope."""

    def __init__(self, actor: str, trigger: str):
        self.actor = actor
        self.trigger = trigger

    async def record(self, scope, job_id: str, entity_ref: str, field_name: str,
                     old: Any, new: Any) -> Optional[AuditEntry]:
        old, new = _plain(old), _plain(new)
        if old == new:
            return None
        entry = AuditEntry(
            job_id=job_id,
            entity_ref=entity_ref,
            field=field_name,
            old_value=old,
            new_value=new,
            trigger=self.trigger,
            actor=self.actor,
        )
        await scope.append_audit(entry.to_dict())
        return entry

    async def record_changes(self, scope, job_id: str, entity_ref: str,
                             before: Dict[str, Any], changes: Dict[str, Any],
                             fields: Optional[List[str]] = None) -> List[AuditEntry]:
        """Record every audited field in changes that differs from before."""
        entries = []
        for name, value in changes.items():
            if fields is not None and name not in fields:
                continue
            entry = await self.record(scope, job_id, entity_ref, name, before.get(name), value)
            if entry:
                entries.append(entry)
        return entries
