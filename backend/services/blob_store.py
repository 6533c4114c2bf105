"""
Print Broker Settlement Hub - Blob Store

Storage for attached files (artwork, data files, proofs, supplied documents).
The engine only ever keeps the returned handle on the job.
"""

import hashlib
import logging
import uuid
from typing import Dict, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorGridFSBucket

logger = logging.getLogger(__name__)


class BlobNotFound(Exception):
    pass


class InMemoryBlobStore:
    """Process-local blob store for tests and local runs."""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}

    async def put(self, data: bytes, filename: Optional[str] = None) -> str:
        handle = f"mem_{uuid.uuid4().hex}"
        self._blobs[handle] = bytes(data)
        return handle

    async def get(self, handle: str) -> bytes:
        if handle not in self._blobs:
            raise BlobNotFound(handle)
        return self._blobs[handle]


class GridFSBlobStore:
    """Stores blobs in MongoDB GridFS."""

    def __init__(self, db, bucket_name: str = "attachments"):
        self.bucket = AsyncIOMotorGridFSBucket(db, bucket_name=bucket_name)

    async def put(self, data: bytes, filename: Optional[str] = None) -> str:
        file_id = await self.bucket.upload_from_stream(
            filename or "attachment",
            data,
            metadata={"sha256": hashlib.sha256(data).hexdigest(), "size": len(data)},
        )
        logger.debug("Stored blob %s (%d bytes)", file_id, len(data))
        return str(file_id)

    async def get(self, handle: str) -> bytes:
        try:
            stream = await self.bucket.open_download_stream(ObjectId(handle))
        except Exception as e:
            raise BlobNotFound(handle) from e
        return await stream.read()
