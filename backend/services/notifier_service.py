"""
Print Broker Settlement Hub - Notifier Service

Outbound notification sink used by the notification dispatcher. Providers
share one call shape, send(event_type, job_id, payload), and raise on failure
so the dispatcher can record the attempt and retry later.

Providers:
- mock: logs notifications and keeps them in memory (and in MongoDB when a db
  handle is given) for verification
- webhook: POSTs a JSON envelope to NOTIFIER_WEBHOOK_URL with httpx
"""

import logging
import uuid
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from services import settlement_config

logger = logging.getLogger(__name__)


class NotifierProvider(str, Enum):
    """Supported notifier providers."""
    MOCK = "mock"
    WEBHOOK = "webhook"


class NotificationType(str, Enum):
    JOB_BECAME_READY = "JOB_BECAME_READY"
    JOB_SUBMITTED_CONFIRMATION = "JOB_SUBMITTED_CONFIRMATION"
    PROOF_READY = "PROOF_READY"
    PROOF_APPROVED = "PROOF_APPROVED"
    PO_CREATED = "PO_CREATED"
    INVOICE_SENT = "INVOICE_SENT"
    JOB_COMPLETED = "JOB_COMPLETED"
    JOB_CANCELLED = "JOB_CANCELLED"


class NotifierError(Exception):
    """Delivery failed; the outbox event stays pending."""
    pass


@dataclass
class NotificationRecord:
    """A notification as handed to a provider."""
    event_type: str
    job_id: str
    payload: Dict[str, Any]
    message_id: str = field(default_factory=lambda: f"ntf_{uuid.uuid4().hex[:12]}")
    sent_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# MOCK PROVIDER
# =============================================================================

class MockNotifier:
    """
    Mock notifier for development and testing.

    Stores notifications in the 'notification_logs' collection when a db
    handle is supplied, and always in memory.
    """

    def __init__(self, db=None):
        self.db = db
        self._sent: List[Dict[str, Any]] = []

    async def send(self, event_type: str, job_id: str, payload: Dict[str, Any]) -> NotificationRecord:
        record = NotificationRecord(event_type=event_type, job_id=job_id, payload=payload)
        logger.info("[MOCK NOTIFY] %s | job %s | ID: %s", event_type, job_id, record.message_id)

        self._sent.append(record.to_dict())
        if self.db is not None:
            try:
                await self.db.notification_logs.insert_one(record.to_dict())
            except Exception as e:
                logger.warning("Failed to log notification to MongoDB: %s", e)
        return record

    def get_sent(self) -> List[Dict[str, Any]]:
        """Notifications sent so far (in-memory)."""
        return self._sent.copy()

    def clear_sent(self):
        self._sent.clear()


# =============================================================================
# WEBHOOK PROVIDER
# =============================================================================

class WebhookNotifier:
    """Delivers notifications as JSON POSTs to a single endpoint."""

    def __init__(self, url: str, timeout: float = None, client: Optional[httpx.AsyncClient] = None):
        if not url:
            raise ValueError("NOTIFIER_WEBHOOK_URL is required for the webhook notifier")
        self.url = url
        self.timeout = timeout or settlement_config.NOTIFIER_TIMEOUT
        self._client = client

    async def send(self, event_type: str, job_id: str, payload: Dict[str, Any]) -> NotificationRecord:
        record = NotificationRecord(event_type=event_type, job_id=job_id, payload=payload)
        body = record.to_dict()
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=body, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=body)
        except httpx.HTTPError as e:
            raise NotifierError(f"Webhook delivery failed: {e}")

        if response.status_code >= 400:
            raise NotifierError(f"Webhook returned {response.status_code}: {response.text[:200]}")

        logger.info("Notification %s for job %s delivered (%s)", event_type, job_id, response.status_code)
        return record


def get_notifier(db=None, provider: str = None):
    """Build the configured notifier provider."""
    provider_type = NotifierProvider(provider or settlement_config.NOTIFIER_PROVIDER)
    if provider_type == NotifierProvider.WEBHOOK:
        return WebhookNotifier(settlement_config.NOTIFIER_WEBHOOK_URL)
    return MockNotifier(db=db)
