"""
Print Broker Settlement Hub - MongoDB Settlement Store

Transactional store backed by motor. Requires a replica set (multi-document
transactions).

Serialization: every JobScope starts by bumping the job's lock_version with
find_one_and_update inside the transaction. Two transactions touching the same
job therefore write-conflict and one of them aborts with a
TransientTransactionError, which is surfaced as TransientConflict for the
service to retry. Different jobs never conflict.

Money is stored as Decimal128 through the codec registered on the database
handle returned by get_database().
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from bson.codec_options import CodecOptions, TypeCodec, TypeRegistry
from bson.decimal128 import Decimal128
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, OperationFailure, PyMongoError

from services.errors import TransientConflict, ValidationError
from services.stores.base import JobScope, SettlementStore, format_job_number

logger = logging.getLogger(__name__)

NO_ID = {"_id": 0}


class DecimalCodec(TypeCodec):
    python_type = Decimal
    bson_type = Decimal128

    def transform_python(self, value):
        return Decimal128(value)

    def transform_bson(self, value):
        return value.to_decimal()


def get_database(client: AsyncIOMotorClient, name: str):
    """Database handle that round-trips Decimal values exactly."""
    codec_options = CodecOptions(type_registry=TypeRegistry([DecimalCodec()]), tz_aware=True)
    return client.get_database(name, codec_options=codec_options)


def _is_active_link_conflict(error: DuplicateKeyError) -> bool:
    key_pattern = (error.details or {}).get("keyPattern", {})
    return "boundary" in key_pattern


class MongoJobScope(JobScope):

    def __init__(self, db, session, job_id: str):
        super().__init__(job_id)
        self.db = db
        self.session = session

    async def get_job(self) -> Optional[Dict[str, Any]]:
        return await self.db.jobs.find_one_and_update(
            {"id": self.job_id},
            {"$inc": {"lock_version": 1}},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
            session=self.session,
        )

    async def insert_job(self, job: Dict[str, Any]) -> None:
        await self.db.jobs.insert_one(dict(job), session=self.session)

    async def update_job(self, changes: Dict[str, Any]) -> None:
        await self.db.jobs.update_one({"id": self.job_id}, {"$set": changes}, session=self.session)

    async def find_active_link(self, boundary: str, document_type: str) -> Optional[Dict[str, Any]]:
        return await self.db.chain_links.find_one(
            {"job_id": self.job_id, "boundary": boundary, "document_type": document_type, "is_active": True},
            NO_ID,
            session=self.session,
        )

    async def find_link_by_external_ref(self, external_ref: str) -> Optional[Dict[str, Any]]:
        return await self.db.chain_links.find_one(
            {"job_id": self.job_id, "external_ref": external_ref}, NO_ID, session=self.session
        )

    async def get_link(self, link_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.chain_links.find_one({"id": link_id, "job_id": self.job_id}, NO_ID, session=self.session)

    async def insert_link(self, link: Dict[str, Any]) -> None:
        await self.db.chain_links.insert_one(dict(link), session=self.session)

    async def update_link(self, link_id: str, changes: Dict[str, Any]) -> None:
        await self.db.chain_links.update_one({"id": link_id}, {"$set": changes}, session=self.session)

    async def list_links(self) -> List[Dict[str, Any]]:
        cursor = self.db.chain_links.find({"job_id": self.job_id}, NO_ID, session=self.session).sort("created_at", ASCENDING)
        return await cursor.to_list(None)

    async def next_counterparty_sequence(self, code: str, document_type: str) -> int:
        counter = await self.db.counters.find_one_and_update(
            {"_id": f"cp:{code}:{document_type}"},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=self.session,
        )
        return counter["seq"]

    async def append_audit(self, entry: Dict[str, Any]) -> None:
        await self.db.audit_entries.insert_one(dict(entry), session=self.session)

    async def enqueue_event(self, event: Dict[str, Any]) -> bool:
        # A duplicate-key error would abort the whole transaction, so look first;
        # the job lock makes the check race-free for this job
        existing = await self.db.outbox.find_one(
            {"job_id": event["job_id"], "event_key": event["event_key"]}, {"_id": 1}, session=self.session
        )
        if existing:
            return False
        await self.db.outbox.insert_one(dict(event), session=self.session)
        return True


class MongoSettlementStore(SettlementStore):

    def __init__(self, client: AsyncIOMotorClient, db):
        self.client = client
        self.db = db

    @asynccontextmanager
    async def transaction(self, job_id: str):
        try:
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    yield MongoJobScope(self.db, session, job_id)
        except DuplicateKeyError as e:
            if _is_active_link_conflict(e):
                raise TransientConflict("Concurrent chain emission", {"job_id": job_id})
            raise ValidationError("Duplicate key", {"job_id": job_id, "error": str(e)}, code="DUPLICATE_DOCUMENT_NUMBER")
        except PyMongoError as e:
            if e.has_error_label("TransientTransactionError") or e.has_error_label("UnknownTransactionCommitResult"):
                logger.info("Transient conflict on job %s: %s", job_id, e)
                raise TransientConflict("Transaction conflict", {"job_id": job_id, "error": str(e)})
            raise

    async def ensure_indexes(self) -> None:
        """Create database indexes."""
        # Jobs
        await self.db.jobs.create_index("id", unique=True)
        await self.db.jobs.create_index("job_number", unique=True)
        await self.db.jobs.create_index("status")
        await self.db.jobs.create_index("created_at")

        # Chain links: at most one active link per (job, boundary, document type)
        await self.db.chain_links.create_index("id", unique=True)
        await self.db.chain_links.create_index(
            [("job_id", ASCENDING), ("boundary", ASCENDING), ("document_type", ASCENDING)],
            unique=True,
            partialFilterExpression={"is_active": True},
            name="one_active_link_per_boundary",
        )
        await self.db.chain_links.create_index(
            [("document_type", ASCENDING), ("document_number", ASCENDING)], unique=True
        )
        await self.db.chain_links.create_index([("job_id", ASCENDING), ("external_ref", ASCENDING)])

        # Audit
        await self.db.audit_entries.create_index("id", unique=True)
        await self.db.audit_entries.create_index([("job_id", ASCENDING), ("timestamp", ASCENDING)])

        # Outbox
        await self.db.outbox.create_index("id", unique=True)
        await self.db.outbox.create_index([("job_id", ASCENDING), ("event_key", ASCENDING)], unique=True)
        await self.db.outbox.create_index([("delivered_at", ASCENDING), ("created_at", ASCENDING)])

        # Reference data
        await self.db.pricing_rules.create_index("size_key", unique=True)
        await self.db.counterparties.create_index("party_id", unique=True)
        await self.db.counterparties.create_index("code", unique=True)

        logger.info("Database indexes created")

    async def provision_audit_role(self, role_name: str) -> None:
        """Create a role that may only read and insert audit entries."""
        try:
            await self.db.command({
                "createRole": role_name,
                "privileges": [{
                    "resource": {"db": self.db.name, "collection": "audit_entries"},
                    "actions": ["find", "insert"],
                }],
                "roles": [],
            })
            logger.info("Created audit role %s", role_name)
        except OperationFailure as e:
            if e.code == 51002:  # role already exists
                logger.debug("Audit role %s already exists", role_name)
            else:
                raise

    async def next_job_number(self) -> str:
        year = datetime.now(timezone.utc).year
        counter = await self.db.counters.find_one_and_update(
            {"_id": f"job:{year}"},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return format_job_number(year, counter["seq"])

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.jobs.find_one({"id": job_id}, NO_ID)

    async def get_job_by_number(self, job_number: str) -> Optional[Dict[str, Any]]:
        return await self.db.jobs.find_one({"job_number": job_number}, NO_ID)

    async def list_jobs(self, status: Optional[str] = None, include_deleted: bool = False,
                        skip: int = 0, limit: int = 50) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if status:
            query["status"] = status
        if not include_deleted:
            query["deleted_at"] = None
        cursor = self.db.jobs.find(query, NO_ID).sort("created_at", DESCENDING).skip(skip).limit(limit)
        return await cursor.to_list(limit)

    async def list_links(self, job_id: str) -> List[Dict[str, Any]]:
        return await self.db.chain_links.find({"job_id": job_id}, NO_ID).sort("created_at", ASCENDING).to_list(None)

    async def get_link(self, link_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.chain_links.find_one({"id": link_id}, NO_ID)

    async def list_audit(self, job_id: str) -> List[Dict[str, Any]]:
        return await self.db.audit_entries.find({"job_id": job_id}, NO_ID).sort("timestamp", ASCENDING).to_list(None)

    async def get_pricing_rule(self, size_key: str) -> Optional[Dict[str, Any]]:
        return await self.db.pricing_rules.find_one({"size_key": size_key}, NO_ID)

    async def upsert_pricing_rule(self, rule: Dict[str, Any]) -> None:
        await self.db.pricing_rules.update_one({"size_key": rule["size_key"]}, {"$set": rule}, upsert=True)

    async def list_pricing_rules(self) -> List[Dict[str, Any]]:
        return await self.db.pricing_rules.find({}, NO_ID).sort("size_key", ASCENDING).to_list(None)

    async def get_counterparty_code(self, party_id: str) -> Optional[str]:
        doc = await self.db.counterparties.find_one({"party_id": party_id}, NO_ID)
        return doc["code"] if doc else None

    async def register_counterparty(self, party_id: str, code: str) -> None:
        await self.db.counterparties.update_one(
            {"party_id": party_id},
            {"$set": {"party_id": party_id, "code": code, "updated_at": self._now()}},
            upsert=True,
        )

    async def pending_events(self, limit: int, max_attempts: int,
                             job_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"delivered_at": None, "attempts": {"$lt": max_attempts}}
        if job_id:
            query["job_id"] = job_id
        return await self.db.outbox.find(query, NO_ID).sort("created_at", ASCENDING).limit(limit).to_list(limit)

    async def mark_event_delivered(self, event_id: str) -> None:
        await self.db.outbox.update_one(
            {"id": event_id},
            {"$set": {"delivered_at": self._now(), "last_error": None}, "$inc": {"attempts": 1}},
        )

    async def mark_event_failed(self, event_id: str, error: str) -> None:
        await self.db.outbox.update_one(
            {"id": event_id},
            {"$set": {"last_error": error, "last_attempt_at": self._now()}, "$inc": {"attempts": 1}},
        )
