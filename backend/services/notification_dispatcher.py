"""
Print Broker Settlement Hub - Notification Dispatcher

Delivers outbox events written by the settlement service. Events are appended
in the same transaction as the business mutation and delivered here, after
commit, with at-least-once semantics:

- an event is marked delivered only after the notifier returns
- a failed attempt records the error and leaves the event pending
- events are abandoned after OUTBOX_MAX_ATTEMPTS attempts

Each (job, event key) is enqueued at most once, so a transition that is
retried never produces a second notification for the same event.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from services import settlement_config
from services.errors import SideEffectWarning

logger = logging.getLogger(__name__)


def build_outbox_event(job_id: str, event_type: str, payload: Dict[str, Any],
                       event_key: Optional[str] = None) -> Dict[str, Any]:
    """Outbox row for an event; event_key defaults to the event type."""
    return {
        "id": str(uuid.uuid4()),
        "job_id": job_id,
        "event_type": event_type,
        "event_key": event_key or event_type,
        "payload": payload,
        "attempts": 0,
        "last_error": None,
        "delivered_at": None,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }


@dataclass
class DispatchReport:
    delivered: int = 0
    failed: int = 0
    warnings: List[SideEffectWarning] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delivered": self.delivered,
            "failed": self.failed,
            "warnings": [w.to_dict() for w in self.warnings],
        }


class NotificationDispatcher:

    def __init__(self, store, notifier, max_attempts: int = None, batch_size: int = None):
        self.store = store
        self.notifier = notifier
        self.max_attempts = max_attempts or settlement_config.OUTBOX_MAX_ATTEMPTS
        self.batch_size = batch_size or settlement_config.OUTBOX_BATCH_SIZE
        self._stopped = asyncio.Event()

    async def dispatch_pending(self, job_id: Optional[str] = None) -> DispatchReport:
        """Deliver pending events, optionally only those of one job."""
        report = DispatchReport()
        events = await self.store.pending_events(self.batch_size, self.max_attempts, job_id=job_id)

        for event in events:
            try:
                await self.notifier.send(event["event_type"], event["job_id"], event["payload"])
            except Exception as e:
                await self.store.mark_event_failed(event["id"], str(e))
                report.failed += 1
                logger.warning(
                    "Notification %s for job %s failed (attempt %d): %s",
                    event["event_type"], event["job_id"], event["attempts"] + 1, e,
                )
                report.warnings.append(SideEffectWarning(
                    code="NOTIFICATION_FAILED",
                    message=f"{event['event_type']} could not be delivered",
                    details={"event_id": event["id"], "error": str(e), "attempt": event["attempts"] + 1},
                ))
                continue

            await self.store.mark_event_delivered(event["id"])
            report.delivered += 1

        if report.delivered or report.failed:
            logger.info("Outbox dispatch: %d delivered, %d failed", report.delivered, report.failed)
        return report

    async def run_forever(self, interval: float = None):
        """Polling loop started from the application lifespan."""
        interval = interval or settlement_config.OUTBOX_POLL_SECONDS
        logger.info("Outbox dispatcher started (every %ss)", interval)
        while not self._stopped.is_set():
            try:
                await self.dispatch_pending()
            except Exception as e:
                logger.error("Outbox dispatch pass failed: %s", e)
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Outbox dispatcher stopped")

    def stop(self):
        self._stopped.set()
