"""
Admin claim routes: list, manual refund, abandon stuck nonces.
"""
from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from sqlalchemy.engine import Engine

from claim_settlement.core.config import settings
from claim_settlement.core.deps import get_engine, get_nonce_allocator, require_admin
from claim_settlement.models.claims import ClaimStatus
from claim_settlement.services.claims import claim_as_dict, list_claims, refund_claim

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/claims", tags=["admin-claims"], dependencies=[Depends(require_admin)])


@router.get("")
def list_all_claims(
    status: str | None = None,
    refunded: bool | None = None,
    limit: int = 100,
    engine: Engine = Depends(get_engine),
):
    try:
        status_filter = ClaimStatus(status.upper()) if status else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"unknown status: {status}")
    claims = list_claims(engine, status=status_filter, refunded=refunded, limit=min(max(limit, 1), 500))
    return [claim_as_dict(c) for c in claims]


@router.post("/{claim_id}/refund")
def refund_one_claim(claim_id: uuid.UUID, engine: Engine = Depends(get_engine)):
    try:
        amount = refund_claim(engine, claim_id=claim_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info("Admin refunded claim %s (%s)", claim_id, amount)
    return {"claim_id": claim_id, "refunded_amount": str(amount), "status": "REFUNDED"}


class AbandonNoncesIn(BaseModel):
    older_than_minutes: int = Field(default=settings.nonce_abandon_after_minutes, ge=1)


@router.post("/nonces/abandon")
def abandon_nonces(body: AbandonNoncesIn, allocator=Depends(get_nonce_allocator)):
    if allocator is None:
        raise HTTPException(status_code=503, detail="Ledger not configured")
    released = allocator.abandon_stale(timedelta(minutes=body.older_than_minutes))
    return {"released": released, "nonces": allocator.snapshot()}
