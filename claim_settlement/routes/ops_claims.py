"""
Ops routes: settlement visibility.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends

from sqlalchemy.engine import Engine

from claim_settlement.core.deps import get_engine, get_nonce_allocator, require_admin
from claim_settlement.services.claims import get_claim_stats

router = APIRouter(prefix="/ops", tags=["ops"], dependencies=[Depends(require_admin)])


@router.get("/claims")
def claim_stats(engine: Engine = Depends(get_engine), allocator=Depends(get_nonce_allocator)):
    stats = get_claim_stats(engine, in_flight_nonces=allocator.in_flight_count if allocator else None)
    return {
        **stats.as_dict(),
        "nonces": allocator.snapshot() if allocator else None,
    }
