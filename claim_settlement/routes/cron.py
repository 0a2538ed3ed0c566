"""
Cron trigger for the settlement cycle (external scheduler hits this every few minutes).
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from sqlalchemy.engine import Engine

from claim_settlement.core.deps import get_engine, get_nonce_allocator, require_cron_secret
from claim_settlement.jobs.settlement_cycle import run_settlement_cycle
from claim_settlement.services.claims import get_claim_stats

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.get("/batch-process-claims")
def batch_process_claims(
    force: bool = False,
    engine: Engine = Depends(get_engine),
    allocator=Depends(get_nonce_allocator),
):
    stats_before = get_claim_stats(engine)
    logger.info("Cron settlement start (force=%s): %s", force, stats_before.as_dict())

    summary = run_settlement_cycle(engine=engine, allocator=allocator, force=force)

    stats_after = get_claim_stats(engine, in_flight_nonces=allocator.in_flight_count if allocator else None)
    return {
        "success": not summary.get("error"),
        "processed_count": summary.get("processed_count", 0),
        "batches_run": summary.get("batches_run", 0),
        "gas_limited": summary.get("gas_limited", False),
        "error": summary.get("error"),
        "summary": summary,
        "stats_before": stats_before.as_dict(),
        "stats_after": stats_after.as_dict(),
    }
