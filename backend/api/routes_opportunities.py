from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from models.opportunity import OpportunityCategory, OpportunityFilter, OpportunityStatus
from services.stores import InvalidStatusTransition, OpportunityNotFound, OpportunityStore

router = APIRouter()


class OpportunityStatusUpdate(BaseModel):
    status: str


def get_opportunity_store() -> OpportunityStore:
    return OpportunityStore()


@router.get("/opportunities")
async def list_opportunities(
    category: Optional[OpportunityCategory] = None,
    status: Optional[OpportunityStatus] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user_id: Optional[str] = Query(default=None, alias="userId"),
    store: OpportunityStore = Depends(get_opportunity_store),
):
    """Global opportunities plus the caller's own, newest first."""
    filters = OpportunityFilter(category=category, status=status, user_id=user_id, limit=limit, offset=offset)
    opportunities = await store.list_opportunities(filters)
    return {
        "opportunities": [opp.to_response() for opp in opportunities],
        "count": len(opportunities),
        "limit": limit,
        "offset": offset,
    }


@router.get("/opportunities/{opportunity_id}")
async def get_opportunity(opportunity_id: str, store: OpportunityStore = Depends(get_opportunity_store)):
    opportunity = await store.get(opportunity_id)
    if opportunity is None:
        raise HTTPException(status_code=404, detail="Opportunity not found")
    return opportunity.to_response()


@router.patch("/opportunities/{opportunity_id}")
async def update_opportunity_status(
    opportunity_id: str,
    update: OpportunityStatusUpdate,
    store: OpportunityStore = Depends(get_opportunity_store),
):
    """Mark an open opportunity as taken or dismissed."""
    try:
        requested = OpportunityStatus(update.status)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid status '{update.status}'. Must be one of: taken, dismissed")
    if requested not in (OpportunityStatus.TAKEN, OpportunityStatus.DISMISSED):
        raise HTTPException(status_code=400, detail=f"Invalid status '{update.status}'. Must be one of: taken, dismissed")

    try:
        opportunity = await store.update_status(opportunity_id, requested)
    except OpportunityNotFound:
        raise HTTPException(status_code=404, detail="Opportunity not found")
    except InvalidStatusTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return opportunity.to_response()
