"""
User-facing claim routes: cash out reward balance, see pending and failed claims.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from sqlalchemy.engine import Engine

from claim_settlement.core.deps import get_engine, require_user
from claim_settlement.models.claims import ClaimStatus
from claim_settlement.services.claims import claim_as_dict, create_claim, list_claims

router = APIRouter(prefix="/api/token", tags=["token-claims"])


class ClaimIn(BaseModel):
    amount: Decimal = Field(gt=0)


@router.post("/claim")
def claim_tokens(body: ClaimIn, user: Dict = Depends(require_user), engine: Engine = Depends(get_engine)):
    try:
        claim = create_claim(engine, user_id=user["id"], amount=body.amount)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "success": True,
        "claim_id": str(claim.id),
        "amount": str(claim.amount),
        "status": claim.status,
        "message": "Claim queued; tokens will arrive in your wallet once the next batch settles.",
    }


@router.get("/pending-claims")
def pending_claims(user: Dict = Depends(require_user), engine: Engine = Depends(get_engine)):
    queued = list_claims(engine, status=ClaimStatus.QUEUED, user_id=user["id"])
    processing = list_claims(engine, status=ClaimStatus.PROCESSING, user_id=user["id"])
    claims = sorted(queued + processing, key=lambda c: c.created_at, reverse=True)
    return {"claims": [claim_as_dict(c) for c in claims]}


@router.get("/failed-claims")
def failed_claims(user: Dict = Depends(require_user), engine: Engine = Depends(get_engine)):
    claims = list_claims(engine, status=ClaimStatus.FAILED, user_id=user["id"])
    return {"claims": [claim_as_dict(c) for c in claims]}
