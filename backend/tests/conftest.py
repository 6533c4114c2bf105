"""
Shared fixtures for the settlement hub test suite.

The service is wired to the in-memory store, the mock notifier and the
in-memory blob store, so no MongoDB or network is needed.
"""

import pytest

from services.blob_store import InMemoryBlobStore
from services.notification_dispatcher import NotificationDispatcher
from services.notifier_service import MockNotifier
from services.settlement_service import SettlementService
from services.stores import InMemorySettlementStore


# 8.5x11: paper 10 lb/M at $1.50/lb = $15.00/M cost, 20% markup = $18.00/M charged
LETTER_RULE = {
    "size_key": "8.5x11",
    "customer_cpm": "90",
    "print_cpm": "40",
    "paper_weight_per_1000": "10",
    "paper_cost_per_lb": "1.50",
    "paper_markup_percent": "20",
    "broker_margin_share_percent": "50",
}

POSTCARD_RULE = {
    "size_key": "4x6",
    "customer_cpm": "4",
    "print_cpm": "1",
}


def job_spec(**overrides):
    spec = {
        "customer_reference_number": "PO-7781",
        "size_key": "8.5x11",
        "quantity": 5000,
    }
    spec.update(overrides)
    return spec


def vendor_spec(**overrides):
    spec = {
        "customer_reference_number": "PO-9001",
        "customer_total": "400",
        "vendor_id": "vendor-acme",
        "vendor_amount": "300",
        "broker_cut": "60",
    }
    spec.update(overrides)
    return spec


@pytest.fixture
def store():
    s = InMemorySettlementStore()
    s.pricing_rules["8.5x11"] = dict(LETTER_RULE)
    s.pricing_rules["4x6"] = dict(POSTCARD_RULE)
    return s


@pytest.fixture
def notifier():
    return MockNotifier()


@pytest.fixture
def dispatcher(store, notifier):
    return NotificationDispatcher(store, notifier)


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def service(store, dispatcher, blob_store):
    return SettlementService(store, dispatcher=dispatcher, blob_store=blob_store)
