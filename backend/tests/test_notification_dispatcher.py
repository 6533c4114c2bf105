"""
Tests for the outbox dispatcher and notifier providers.
"""
import asyncio
import json
import pytest
from unittest.mock import AsyncMock, MagicMock

import httpx

from services import settlement_config
from services.notification_dispatcher import NotificationDispatcher, build_outbox_event
from services.notifier_service import (
    MockNotifier,
    NotifierError,
    WebhookNotifier,
    get_notifier,
)
from services.stores import InMemorySettlementStore


def queue(store, job_id="job-1", event_type="PO_CREATED", event_key=None):
    event = build_outbox_event(job_id, event_type, {"job_number": "J-2026-000001"}, event_key)
    store.outbox[event["id"]] = event
    return event


class TestBuildOutboxEvent:

    def test_defaults(self):
        event = build_outbox_event("job-1", "JOB_BECAME_READY", {"a": 1})
        assert event["event_key"] == "JOB_BECAME_READY"
        assert event["attempts"] == 0
        assert event["delivered_at"] is None

    def test_explicit_key(self):
        event = build_outbox_event("job-1", "PROOF_APPROVED", {}, "PROOF_APPROVED:v2")
        assert event["event_key"] == "PROOF_APPROVED:v2"


class TestNotificationDispatcher:

    @pytest.mark.asyncio
    async def test_delivers_pending_events(self):
        store = InMemorySettlementStore()
        notifier = MockNotifier()
        event = queue(store)

        report = await NotificationDispatcher(store, notifier).dispatch_pending()

        assert report.delivered == 1
        assert report.failed == 0
        assert store.outbox[event["id"]]["delivered_at"] is not None
        assert notifier.get_sent()[0]["event_type"] == "PO_CREATED"

        again = await NotificationDispatcher(store, notifier).dispatch_pending()
        assert again.delivered == 0

    @pytest.mark.asyncio
    async def test_failure_recorded_and_retried(self):
        store = InMemorySettlementStore()
        event = queue(store)
        notifier = MagicMock()
        notifier.send = AsyncMock(side_effect=[NotifierError("timeout"), None])
        dispatcher = NotificationDispatcher(store, notifier)

        first = await dispatcher.dispatch_pending()
        assert first.failed == 1
        assert first.warnings[0].code == "NOTIFICATION_FAILED"
        assert store.outbox[event["id"]]["last_error"] == "timeout"

        second = await dispatcher.dispatch_pending()
        assert second.delivered == 1
        assert store.outbox[event["id"]]["attempts"] == 2
        assert store.outbox[event["id"]]["last_error"] is None

    @pytest.mark.asyncio
    async def test_abandons_after_max_attempts(self):
        store = InMemorySettlementStore()
        queue(store)
        notifier = MagicMock()
        notifier.send = AsyncMock(side_effect=NotifierError("down"))
        dispatcher = NotificationDispatcher(store, notifier, max_attempts=2)

        await dispatcher.dispatch_pending()
        await dispatcher.dispatch_pending()
        report = await dispatcher.dispatch_pending()
        assert report.failed == 0
        assert notifier.send.await_count == 2

    @pytest.mark.asyncio
    async def test_filters_by_job(self):
        store = InMemorySettlementStore()
        queue(store, job_id="job-1")
        other = queue(store, job_id="job-2")
        notifier = MockNotifier()

        report = await NotificationDispatcher(store, notifier).dispatch_pending(job_id="job-1")
        assert report.delivered == 1
        assert store.outbox[other["id"]]["delivered_at"] is None

    @pytest.mark.asyncio
    async def test_background_loop_stops(self):
        store = InMemorySettlementStore()
        event = queue(store)
        dispatcher = NotificationDispatcher(store, MockNotifier())

        task = asyncio.create_task(dispatcher.run_forever(interval=0.01))
        await asyncio.sleep(0.05)
        dispatcher.stop()
        await asyncio.wait_for(task, timeout=1)
        assert store.outbox[event["id"]]["delivered_at"] is not None


class TestMockNotifier:

    @pytest.mark.asyncio
    async def test_logs_to_db_when_given(self):
        db = MagicMock()
        db.notification_logs.insert_one = AsyncMock()
        notifier = MockNotifier(db=db)
        record = await notifier.send("INVOICE_SENT", "job-1", {"document_number": "INV-1"})
        assert record.message_id.startswith("ntf_")
        db.notification_logs.insert_one.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_clear_sent(self):
        notifier = MockNotifier()
        await notifier.send("JOB_COMPLETED", "job-1", {})
        notifier.clear_sent()
        assert notifier.get_sent() == []


class TestWebhookNotifier:

    @pytest.mark.asyncio
    async def test_posts_envelope(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(202)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        notifier = WebhookNotifier("https://hooks.example.test/print", client=client)
        await notifier.send("PO_CREATED", "job-1", {"document_number": "BPO-J-2026-000001"})
        await client.aclose()

        assert seen[0]["event_type"] == "PO_CREATED"
        assert seen[0]["payload"]["document_number"] == "BPO-J-2026-000001"

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503, text="busy")))
        notifier = WebhookNotifier("https://hooks.example.test/print", client=client)
        with pytest.raises(NotifierError):
            await notifier.send("PO_CREATED", "job-1", {})
        await client.aclose()

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        notifier = WebhookNotifier("https://hooks.example.test/print", client=client)
        with pytest.raises(NotifierError):
            await notifier.send("PO_CREATED", "job-1", {})
        await client.aclose()


class TestGetNotifier:

    def test_default_is_mock(self):
        assert isinstance(get_notifier(provider="mock"), MockNotifier)

    def test_webhook_needs_url(self, monkeypatch):
        monkeypatch.setattr(settlement_config, "NOTIFIER_WEBHOOK_URL", "")
        with pytest.raises(ValueError):
            get_notifier(provider="webhook")
        monkeypatch.setattr(settlement_config, "NOTIFIER_WEBHOOK_URL", "https://hooks.example.test/print")
        assert isinstance(get_notifier(provider="webhook"), WebhookNotifier)
