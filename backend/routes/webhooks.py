"""
Print Broker Settlement Hub - Webhooks Router

Manufacturers and vendors push their purchase orders and invoices here.
Deliveries are deduplicated by external_ref, so a redelivered webhook returns
the document recorded the first time.
"""

from fastapi import APIRouter, HTTPException, UploadFile, File, Form
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field
import logging

from services.errors import SettlementError
from routes.jobs import http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

# Dependencies - set by main app
service = None


def set_dependencies(settlement_service):
    global service
    service = settlement_service


class SuppliedDocumentEvent(BaseModel):
    job_number: str
    boundary: str
    document_type: str
    external_ref: str
    source: Optional[str] = None
    fields: Dict[str, Any] = Field(default_factory=dict)


async def _job_id_for(job_number: str) -> str:
    job = await service.store.get_job_by_number(job_number)
    if not job or job.get("deleted_at"):
        raise HTTPException(status_code=404, detail=f"Job {job_number} not found")
    return job["id"]


@router.post("/documents")
async def supplied_document(event: SuppliedDocumentEvent):
    """Structured document event (fields already extracted by the sender)."""
    job_id = await _job_id_for(event.job_number)
    logger.info("Webhook %s for job %s (%s %s)", event.external_ref, event.job_number,
                event.boundary, event.document_type)
    try:
        result = await service.record_supplied_document(
            job_id, event.boundary, event.document_type,
            fields=event.fields, external_ref=event.external_ref,
            actor=f"webhook:{event.source or 'unknown'}",
        )
    except SettlementError as e:
        raise http_error(e)
    return result.to_dict()


@router.post("/documents/upload")
async def supplied_document_upload(
    file: UploadFile = File(...),
    job_number: str = Form(...),
    boundary: str = Form(...),
    document_type: str = Form(...),
    external_ref: str = Form(...),
    source: Optional[str] = Form(None),
):
    """Raw document; fields are extracted by the document parser."""
    job_id = await _job_id_for(job_number)
    content = await file.read()
    try:
        result = await service.record_supplied_document(
            job_id, boundary, document_type,
            raw_bytes=content, filename=file.filename or "document.pdf",
            external_ref=external_ref, actor=f"webhook:{source or 'unknown'}",
        )
    except SettlementError as e:
        raise http_error(e)
    return result.to_dict()
