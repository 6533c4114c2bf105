"""
Print Broker Settlement Hub - Configuration

All tunables for the settlement engine are read from environment variables
at import time. Values are plain module-level constants so that tests can
monkeypatch them and services can import them directly.

Parties:
- BROKER_PARTY_ID: the brokering company that owns the customer relationship
- MANUFACTURER_PARTY_ID: the primary manufacturer in two-tier routing
- PRINTER_PARTY_ID: the printer the manufacturer subcontracts to
"""

import os
from decimal import Decimal


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


def _env_optional_int(name: str, default: str):
    value = os.environ.get(name, default)
    if value is None or value.strip().lower() in ("", "none", "null"):
        return None
    return int(value)


# =============================================================================
# DATABASE
# =============================================================================

MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017/?replicaSet=rs0")
DB_NAME = os.environ.get("DB_NAME", "print_broker_hub")

# "mongo" for the transactional MongoDB store, "memory" for local runs
STORE_BACKEND = os.environ.get("STORE_BACKEND", "mongo").lower()

# Provision a find/insert-only role on the audit collection at startup
AUDIT_ROLE_PROVISIONING = _env_flag("AUDIT_ROLE_PROVISIONING")
AUDIT_ROLE_NAME = os.environ.get("AUDIT_ROLE_NAME", "auditAppendOnly")

# How many times a mutation is retried after a transient write conflict
TRANSACTION_RETRIES = int(os.environ.get("TRANSACTION_RETRIES", "5"))
TRANSACTION_RETRY_DELAY = float(os.environ.get("TRANSACTION_RETRY_DELAY", "0.05"))  # seconds


# =============================================================================
# PARTIES
# =============================================================================

BROKER_PARTY_ID = os.environ.get("BROKER_PARTY_ID", "broker")
MANUFACTURER_PARTY_ID = os.environ.get("MANUFACTURER_PARTY_ID", "manufacturer")
PRINTER_PARTY_ID = os.environ.get("PRINTER_PARTY_ID", "printer")


# =============================================================================
# PRICING
# =============================================================================

# Per-unit price below which a SuspiciousPricing warning is raised
MIN_UNIT_PRICE = Decimal(os.environ.get("MIN_UNIT_PRICE", "0.005"))

# Printer-supplies-paper mode: broker keeps this share of the customer CPM,
# the manufacturer keeps the margin share, the printer receives the rest
PRINTER_PAPER_IMPACT_PERCENT = Decimal(os.environ.get("PRINTER_PAPER_IMPACT_PERCENT", "10"))
PRINTER_PAPER_BROKER_MARGIN_PERCENT = Decimal(os.environ.get("PRINTER_PAPER_BROKER_MARGIN_PERCENT", "10"))

# Share of the margin pool retained by the broker in standard mode
DEFAULT_BROKER_MARGIN_SHARE_PERCENT = Decimal(os.environ.get("DEFAULT_BROKER_MARGIN_SHARE_PERCENT", "50"))


# =============================================================================
# READINESS
# =============================================================================

# "none" disables auto-gating for that category
DEFAULT_REQUIRED_ARTWORK = _env_optional_int("DEFAULT_REQUIRED_ARTWORK", "1")
DEFAULT_REQUIRED_DATA_FILES = _env_optional_int("DEFAULT_REQUIRED_DATA_FILES", "0")


# =============================================================================
# CHAIN DOCUMENTS
# =============================================================================

INVOICE_DUE_DAYS = int(os.environ.get("INVOICE_DUE_DAYS", "30"))
COUNTERPARTY_SEQUENCE_WIDTH = 3


# =============================================================================
# NOTIFICATIONS (OUTBOX)
# =============================================================================

OUTBOX_POLL_SECONDS = float(os.environ.get("OUTBOX_POLL_SECONDS", "10"))
OUTBOX_MAX_ATTEMPTS = int(os.environ.get("OUTBOX_MAX_ATTEMPTS", "5"))
OUTBOX_BATCH_SIZE = int(os.environ.get("OUTBOX_BATCH_SIZE", "50"))
OUTBOX_DISPATCHER_ENABLED = _env_flag("OUTBOX_DISPATCHER_ENABLED", "true")

NOTIFIER_PROVIDER = os.environ.get("NOTIFIER_PROVIDER", "mock").lower()
NOTIFIER_WEBHOOK_URL = os.environ.get("NOTIFIER_WEBHOOK_URL", "")
NOTIFIER_TIMEOUT = float(os.environ.get("NOTIFIER_TIMEOUT", "10"))


# =============================================================================
# EXTERNAL COLLABORATORS
# =============================================================================

DOCUMENT_PARSER_URL = os.environ.get("DOCUMENT_PARSER_URL", "")
DOCUMENT_PARSER_TIMEOUT = float(os.environ.get("DOCUMENT_PARSER_TIMEOUT", "60"))

# "gridfs" stores attachments in MongoDB, "memory" keeps them in process
BLOB_BACKEND = os.environ.get("BLOB_BACKEND", "gridfs").lower()

CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*").split(",")
