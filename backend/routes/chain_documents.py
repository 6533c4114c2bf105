"""
Print Broker Settlement Hub - Chain Documents Router

Operations on individual purchase orders and invoices.
"""

from fastapi import APIRouter, HTTPException, Header
from typing import Optional

from services.errors import SettlementError
from services.settlement_service import to_jsonable
from routes.jobs import http_error

router = APIRouter(prefix="/chain-documents", tags=["chain-documents"])

# Dependencies - set by main app
service = None


def set_dependencies(settlement_service):
    global service
    service = settlement_service


@router.get("/{link_id}")
async def get_chain_document(link_id: str):
    link = await service.store.get_link(link_id)
    if not link:
        raise HTTPException(status_code=404, detail="Chain document not found")
    return to_jsonable(link)


@router.post("/{link_id}/cancel")
async def cancel_chain_document(link_id: str, x_actor: Optional[str] = Header(None)):
    try:
        result = await service.cancel_chain_document(link_id, actor=x_actor or "system")
    except SettlementError as e:
        raise http_error(e)
    return result.to_dict()


@router.post("/{link_id}/paid")
async def mark_paid(link_id: str, x_actor: Optional[str] = Header(None)):
    try:
        result = await service.mark_chain_document_paid(link_id, actor=x_actor or "system")
    except SettlementError as e:
        raise http_error(e)
    return result.to_dict()
