"""
Print Broker Settlement Hub - Jobs Router

Job registry, readiness, proofs, status transitions and audit trail.
"""

from fastapi import APIRouter, HTTPException, Query, UploadFile, File, Form, Header, Response
from typing import Optional, Dict, Any
from decimal import Decimal
from pydantic import BaseModel, Field
import logging

from services.errors import (
    SettlementError, ValidationError, StateError, JobNotFound, DependencyError, TransientConflict
)
from services.blob_store import BlobNotFound
from services.settlement_service import to_jsonable

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])

# Dependencies - set by main app
service = None
blob_store = None


def set_dependencies(settlement_service, blobs=None):
    global service, blob_store
    service = settlement_service
    blob_store = blobs


def http_error(error: SettlementError) -> HTTPException:
    """Map engine errors to HTTP responses with a machine-readable code."""
    if isinstance(error, JobNotFound):
        status_code = 404
    elif isinstance(error, ValidationError):
        status_code = 422
    elif isinstance(error, StateError):
        status_code = 409
    elif isinstance(error, (DependencyError, TransientConflict)):
        status_code = 503
    else:
        status_code = 400
    return HTTPException(status_code=status_code, detail=to_jsonable(error.to_dict()))


# ==================== MODELS ====================

class JobCreate(BaseModel):
    customer_id: str
    routing_type: str = "two-tier"
    customer_reference_number: Optional[str] = None
    quantity: Optional[int] = None
    size_key: Optional[str] = None
    specs: Optional[Dict[str, Any]] = None
    paper_mode: Optional[str] = None
    customer_cpm: Optional[Decimal] = None
    customer_total: Optional[Decimal] = None
    vendor_id: Optional[str] = None
    vendor_amount: Optional[Decimal] = None
    broker_cut: Optional[Decimal] = None
    required_artwork: Optional[int] = None
    required_data_files: Optional[int] = None
    notes: Optional[str] = None


class JobUpdate(BaseModel):
    quantity: Optional[int] = None
    customer_reference_number: Optional[str] = None
    size_key: Optional[str] = None
    specs: Optional[Dict[str, Any]] = None
    paper_mode: Optional[str] = None
    customer_cpm: Optional[Decimal] = None
    customer_total: Optional[Decimal] = None
    required_artwork: Optional[int] = None
    required_data_files: Optional[int] = None
    notes: Optional[str] = None


class FileAttached(BaseModel):
    kind: str
    file_id: Optional[str] = None


class TransitionRequest(BaseModel):
    target: str
    context: Dict[str, Any] = Field(default_factory=dict)


class ProofReview(BaseModel):
    comments: Optional[str] = None


class CompleteRequest(BaseModel):
    tracking_reference: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class EmitRequest(BaseModel):
    document_type: Optional[str] = None


# ==================== ENDPOINTS ====================

@router.get("")
async def list_jobs(
    status: Optional[str] = Query(None),
    skip: int = Query(0),
    limit: int = Query(50),
):
    """List jobs, newest first."""
    jobs = await service.list_jobs(status=status, skip=skip, limit=limit)
    return to_jsonable({"jobs": jobs, "skip": skip, "limit": limit})


@router.post("", status_code=201)
async def create_job(body: JobCreate, x_actor: Optional[str] = Header(None)):
    """Create a job; opens the purchase side of the chain when it is priced."""
    spec = body.model_dump(exclude_unset=True)
    customer_id = spec.pop("customer_id")
    routing_type = spec.pop("routing_type", "two-tier")
    try:
        result = await service.create_job(customer_id, routing_type, spec, actor=x_actor or "system")
    except SettlementError as e:
        raise http_error(e)
    return result.to_dict()


@router.get("/{job_id}")
async def get_job(job_id: str):
    try:
        return to_jsonable(await service.get_job_detail(job_id))
    except SettlementError as e:
        raise http_error(e)


@router.patch("/{job_id}")
async def update_job(job_id: str, body: JobUpdate, x_actor: Optional[str] = Header(None)):
    try:
        result = await service.update_job(job_id, body.model_dump(exclude_unset=True), actor=x_actor or "system")
    except SettlementError as e:
        raise http_error(e)
    return result.to_dict()


@router.delete("/{job_id}")
async def delete_job(job_id: str, x_actor: Optional[str] = Header(None)):
    """Soft delete."""
    try:
        result = await service.delete_job(job_id, actor=x_actor or "system")
    except SettlementError as e:
        raise http_error(e)
    return result.to_dict()


@router.post("/{job_id}/files")
async def upload_file(
    job_id: str,
    file: UploadFile = File(...),
    kind: str = Form(...),
    x_actor: Optional[str] = Header(None),
):
    """Store an attachment and count it toward readiness."""
    if blob_store is None:
        raise HTTPException(status_code=503, detail="File storage is not configured")
    content = await file.read()
    try:
        await service.get_job(job_id)
        handle = await blob_store.put(content, file.filename)
        result = await service.record_file_attached(job_id, kind, file_id=handle, actor=x_actor or "system")
    except SettlementError as e:
        raise http_error(e)
    return {**result.to_dict(), "file_id": handle}


@router.post("/{job_id}/files/record")
async def record_file(job_id: str, body: FileAttached, x_actor: Optional[str] = Header(None)):
    """Count a file already stored elsewhere."""
    try:
        result = await service.record_file_attached(job_id, body.kind, file_id=body.file_id, actor=x_actor or "system")
    except SettlementError as e:
        raise http_error(e)
    return result.to_dict()


@router.get("/{job_id}/files/{handle}")
async def download_file(job_id: str, handle: str):
    """Return an attachment or proof stored for this job."""
    if blob_store is None:
        raise HTTPException(status_code=503, detail="File storage is not configured")
    try:
        job = await service.get_job(job_id)
    except SettlementError as e:
        raise http_error(e)

    handles = set(job.get("attached_file_ids") or [])
    handles.update(p.get("file_handle") for p in job.get("proofs") or [])
    if handle not in handles:
        raise HTTPException(status_code=404, detail={"code": "FILE_NOT_FOUND", "message": f"File not found: {handle}"})
    try:
        content = await blob_store.get(handle)
    except BlobNotFound:
        logger.warning("Job %s references missing blob %s", job_id, handle)
        raise HTTPException(status_code=404, detail={"code": "FILE_NOT_FOUND", "message": f"File not found: {handle}"})
    return Response(content=content, media_type="application/octet-stream")


@router.post("/{job_id}/ready-override")
async def ready_override(job_id: str, x_actor: Optional[str] = Header(None)):
    try:
        result = await service.manual_override(job_id, actor=x_actor or "system")
    except SettlementError as e:
        raise http_error(e)
    return result.to_dict()


@router.post("/{job_id}/transition")
async def transition(job_id: str, body: TransitionRequest, x_actor: Optional[str] = Header(None)):
    try:
        result = await service.transition_status(job_id, body.target, body.context, actor=x_actor or "system")
    except SettlementError as e:
        raise http_error(e)
    return result.to_dict()


@router.post("/{job_id}/proofs")
async def upload_proof(
    job_id: str,
    file: UploadFile = File(...),
    notes: Optional[str] = Form(None),
    x_actor: Optional[str] = Header(None),
):
    if blob_store is None:
        raise HTTPException(status_code=503, detail="File storage is not configured")
    content = await file.read()
    try:
        await service.get_job(job_id)
        handle = await blob_store.put(content, file.filename)
        result = await service.attach_proof(job_id, handle, actor=x_actor or "system", notes=notes)
    except SettlementError as e:
        raise http_error(e)
    return result.to_dict()


@router.post("/{job_id}/proofs/{version}/approve")
async def approve_proof(job_id: str, version: int, body: ProofReview, x_actor: Optional[str] = Header(None)):
    try:
        result = await service.approve_proof(job_id, version, actor=x_actor or "system", comments=body.comments)
    except SettlementError as e:
        raise http_error(e)
    return result.to_dict()


@router.post("/{job_id}/proofs/{version}/request-changes")
async def request_changes(job_id: str, version: int, body: ProofReview, x_actor: Optional[str] = Header(None)):
    try:
        result = await service.request_proof_changes(job_id, version, actor=x_actor or "system", comments=body.comments)
    except SettlementError as e:
        raise http_error(e)
    return result.to_dict()


@router.post("/{job_id}/complete")
async def complete_job(job_id: str, body: CompleteRequest, x_actor: Optional[str] = Header(None)):
    try:
        result = await service.complete_job(job_id, body.tracking_reference, actor=x_actor or "system")
    except SettlementError as e:
        raise http_error(e)
    return result.to_dict()


@router.post("/{job_id}/cancel")
async def cancel_job(job_id: str, body: CancelRequest, x_actor: Optional[str] = Header(None)):
    try:
        result = await service.cancel_job(job_id, body.reason, actor=x_actor or "system")
    except SettlementError as e:
        raise http_error(e)
    return result.to_dict()


@router.get("/{job_id}/chain")
async def list_chain(job_id: str):
    try:
        links = await service.list_chain_documents(job_id)
    except SettlementError as e:
        raise http_error(e)
    return to_jsonable({"links": links})


@router.post("/{job_id}/chain/{boundary}")
async def emit_chain_document(job_id: str, boundary: str, body: EmitRequest, x_actor: Optional[str] = Header(None)):
    """Emit the boundary's document; returns the existing one on repeat calls."""
    try:
        result = await service.emit_chain_document(job_id, boundary, body.document_type, actor=x_actor or "system")
    except SettlementError as e:
        raise http_error(e)
    return result.to_dict()


@router.get("/{job_id}/audit")
async def get_audit_trail(job_id: str):
    try:
        entries = await service.get_audit_trail(job_id)
    except SettlementError as e:
        raise http_error(e)
    return to_jsonable({"entries": [e.to_dict() for e in entries], "total": len(entries)})
