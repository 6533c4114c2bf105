"""
Print Broker Settlement Hub - Pricing Router

Pricing rules per size and counterparty numbering codes.
"""

from fastapi import APIRouter, HTTPException
from typing import Optional
from decimal import Decimal
from pydantic import BaseModel

from services.errors import SettlementError
from services.settlement_service import to_jsonable
from routes.jobs import http_error

router = APIRouter(tags=["pricing"])

# Dependencies - set by main app
service = None


def set_dependencies(settlement_service):
    global service
    service = settlement_service


# ==================== MODELS ====================

class PricingRuleBody(BaseModel):
    customer_cpm: Decimal
    print_cpm: Decimal
    paper_weight_per_1000: Optional[Decimal] = None
    paper_cost_per_lb: Optional[Decimal] = None
    paper_markup_percent: Optional[Decimal] = None
    broker_margin_share_percent: Optional[Decimal] = None


class CounterpartyBody(BaseModel):
    party_id: str
    code: str


# ==================== ENDPOINTS ====================

@router.get("/pricing-rules")
async def list_pricing_rules():
    rules = await service.list_pricing_rules()
    return to_jsonable({"rules": rules, "total": len(rules)})


@router.get("/pricing-rules/{size_key}")
async def get_pricing_rule(size_key: str):
    rule = await service.store.get_pricing_rule(size_key)
    if not rule:
        raise HTTPException(status_code=404, detail="Pricing rule not found")
    return to_jsonable(rule)


@router.put("/pricing-rules/{size_key}")
async def upsert_pricing_rule(size_key: str, body: PricingRuleBody):
    """Create or replace a rule. Jobs already priced keep their own copy."""
    try:
        rule = await service.upsert_pricing_rule({"size_key": size_key, **body.model_dump(exclude_none=True)})
    except SettlementError as e:
        raise http_error(e)
    return to_jsonable(rule.to_dict())


@router.post("/counterparties")
async def register_counterparty(body: CounterpartyBody):
    try:
        return await service.register_counterparty(body.party_id, body.code)
    except SettlementError as e:
        raise http_error(e)
