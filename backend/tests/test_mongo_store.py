"""
Tests for the MongoDB store that do not need a running server:
Decimal codec, index definitions, transaction error mapping and the
outbox de-duplication check.
"""
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from bson import decode, encode
from bson.codec_options import CodecOptions, TypeRegistry
from pymongo.errors import DuplicateKeyError, OperationFailure

from services.errors import TransientConflict, ValidationError
from services.stores.mongo import DecimalCodec, MongoJobScope, MongoSettlementStore


def mock_db(*collections):
    db = MagicMock()
    db.name = "print_broker_hub"
    for name in collections:
        getattr(db, name).create_index = AsyncMock()
    return db


def mock_client():
    txn = MagicMock()
    txn.__aenter__ = AsyncMock(return_value=txn)
    txn.__aexit__ = AsyncMock(return_value=False)
    session = MagicMock()
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)
    session.start_transaction = MagicMock(return_value=txn)
    client = MagicMock()
    client.start_session = AsyncMock(return_value=session)
    return client


class TestDecimalCodec:

    def test_round_trip_is_exact(self):
        options = CodecOptions(type_registry=TypeRegistry([DecimalCodec()]))
        raw = encode({"customer_total": Decimal("450.10"), "cpm": Decimal("87.3333")}, codec_options=options)
        doc = decode(raw, codec_options=options)
        assert doc["customer_total"] == Decimal("450.10")
        assert doc["cpm"] == Decimal("87.3333")


class TestEnsureIndexes:

    @pytest.mark.asyncio
    async def test_one_active_link_per_boundary(self):
        db = mock_db("jobs", "chain_links", "audit_entries", "outbox", "pricing_rules", "counterparties")
        await MongoSettlementStore(MagicMock(), db).ensure_indexes()

        partial = [
            c for c in db.chain_links.create_index.call_args_list
            if c.kwargs.get("name") == "one_active_link_per_boundary"
        ]
        assert len(partial) == 1
        assert partial[0].kwargs["unique"] is True
        assert partial[0].kwargs["partialFilterExpression"] == {"is_active": True}

        outbox_keys = [c.args[0] for c in db.outbox.create_index.call_args_list if c.kwargs.get("unique")]
        assert [("job_id", 1), ("event_key", 1)] in outbox_keys


class TestTransactionErrors:

    @pytest.mark.asyncio
    async def test_transient_label_becomes_conflict(self):
        store = MongoSettlementStore(mock_client(), MagicMock())
        with pytest.raises(TransientConflict):
            async with store.transaction("job-1"):
                raise OperationFailure(
                    "WriteConflict", code=112, details={"errorLabels": ["TransientTransactionError"]}
                )

    @pytest.mark.asyncio
    async def test_active_link_race_becomes_conflict(self):
        store = MongoSettlementStore(mock_client(), MagicMock())
        with pytest.raises(TransientConflict):
            async with store.transaction("job-1"):
                raise DuplicateKeyError(
                    "E11000", code=11000,
                    details={"keyPattern": {"job_id": 1, "boundary": 1, "document_type": 1}},
                )

    @pytest.mark.asyncio
    async def test_duplicate_document_number(self):
        store = MongoSettlementStore(mock_client(), MagicMock())
        with pytest.raises(ValidationError) as exc:
            async with store.transaction("job-1"):
                raise DuplicateKeyError(
                    "E11000", code=11000,
                    details={"keyPattern": {"document_type": 1, "document_number": 1}},
                )
        assert exc.value.code == "DUPLICATE_DOCUMENT_NUMBER"

    @pytest.mark.asyncio
    async def test_other_failures_propagate(self):
        store = MongoSettlementStore(mock_client(), MagicMock())
        with pytest.raises(OperationFailure):
            async with store.transaction("job-1"):
                raise OperationFailure("Unauthorized", code=13)


class TestMongoJobScope:

    @pytest.mark.asyncio
    async def test_get_job_takes_row_lock(self):
        db = MagicMock()
        db.jobs.find_one_and_update = AsyncMock(return_value={"id": "job-1", "lock_version": 3})
        scope = MongoJobScope(db, session="s", job_id="job-1")
        job = await scope.get_job()
        assert job["lock_version"] == 3
        args, kwargs = db.jobs.find_one_and_update.call_args
        assert args[1] == {"$inc": {"lock_version": 1}}
        assert kwargs["session"] == "s"

    @pytest.mark.asyncio
    async def test_enqueue_skips_known_event_key(self):
        db = MagicMock()
        db.outbox.find_one = AsyncMock(return_value={"_id": 1})
        db.outbox.insert_one = AsyncMock()
        scope = MongoJobScope(db, session=None, job_id="job-1")
        assert await scope.enqueue_event({"job_id": "job-1", "event_key": "JOB_BECAME_READY"}) is False
        db.outbox.insert_one.assert_not_awaited()

        db.outbox.find_one = AsyncMock(return_value=None)
        assert await scope.enqueue_event({"job_id": "job-1", "event_key": "JOB_BECAME_READY"}) is True
        db.outbox.insert_one.assert_awaited_once()


class TestAuditRole:

    @pytest.mark.asyncio
    async def test_existing_role_is_fine(self):
        db = MagicMock()
        db.name = "print_broker_hub"
        db.command = AsyncMock(side_effect=OperationFailure("Role already exists", code=51002))
        await MongoSettlementStore(MagicMock(), db).provision_audit_role("auditAppendOnly")

    @pytest.mark.asyncio
    async def test_role_grants_find_and_insert_only(self):
        db = MagicMock()
        db.name = "print_broker_hub"
        db.command = AsyncMock()
        await MongoSettlementStore(MagicMock(), db).provision_audit_role("auditAppendOnly")
        command = db.command.call_args.args[0]
        assert command["privileges"][0]["actions"] == ["find", "insert"]
        assert command["privileges"][0]["resource"]["collection"] == "audit_entries"
