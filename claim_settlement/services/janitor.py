"""
Lifecycle janitor: the housekeeping passes that run at the top of every
settlement cycle.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import timedelta
from typing import Dict, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from claim_settlement.core.config import Settings, settings
from claim_settlement.models.claims import ClaimStatus, TokenClaim
from claim_settlement.services.chain import LedgerError
from claim_settlement.services.claim_store import ClaimRef, ClaimStore, append_audit, refund_in_session, utcnow
from claim_settlement.services.nonce import NonceAllocator

logger = logging.getLogger(__name__)

# on-chain state of a stuck claim's broadcast transaction
TX_SUCCEEDED = "succeeded"
TX_REVERTED = "reverted"
TX_PENDING = "pending"
TX_DROPPED = "dropped"
TX_UNKNOWN = "unknown"


def _blank(column):
    return or_(column.is_(None), column == "")


class LifecycleJanitor:
    def __init__(
        self,
        engine: Engine,
        cfg: Settings = settings,
        *,
        ledger=None,
        allocator: Optional[NonceAllocator] = None,
    ) -> None:
        self.engine = engine
        self.cfg = cfg
        self.ledger = ledger
        self.allocator = allocator
        self.max_retry_count = cfg.max_retry_count
        self.processing_timeout = timedelta(hours=cfg.processing_timeout_hours)

    def tx_state(self, tx_hash: str) -> str:
        if self.ledger is None:
            return TX_UNKNOWN
        try:
            receipt = self.ledger.get_receipt(tx_hash)
            if receipt is not None:
                return TX_SUCCEEDED if receipt.succeeded else TX_REVERTED
            if self.ledger.get_transaction(tx_hash) is not None:
                return TX_PENDING
        except LedgerError as e:
            logger.warning("Janitor: cannot look up %s: %s", tx_hash, e)
            return TX_UNKNOWN
        return TX_DROPPED

    def reset_stuck_processing(self) -> Dict[str, int]:
        """
        PROCESSING rows untouched for longer than the timeout.
        A row whose broadcast transaction succeeded is completed; one whose
        transaction is pending or can't be checked stays PROCESSING. Only rows
        with no live transaction (never broadcast, dropped, or reverted) go
        back to QUEUED.
        """
        now = utcnow()
        cutoff = now - self.processing_timeout
        with Session(self.engine) as session:
            rows = session.execute(
                select(TokenClaim)
                .where(TokenClaim.status == ClaimStatus.PROCESSING.value)
                .where(TokenClaim.updated_at < cutoff)
            ).scalars().all()
            stuck = [(ClaimRef.from_row(r), r.batch_transaction_hash) for r in rows]

        by_hash: dict[str, list[ClaimRef]] = defaultdict(list)
        resettable: list[ClaimRef] = []
        for ref, tx_hash in stuck:
            if tx_hash:
                by_hash[tx_hash].append(ref)
            else:
                resettable.append(ref)

        completed = held = 0
        for tx_hash, refs in by_hash.items():
            state = self.tx_state(tx_hash)
            if state == TX_SUCCEEDED:
                n = ClaimStore(self.engine, self.cfg).mark_completed(refs, tx_hash)
                completed += n
                if self.allocator is not None:
                    self.allocator.release_tx(tx_hash)
                logger.info("Janitor: %s stuck claims settled by %s -> COMPLETED", n, tx_hash)
            elif state in (TX_PENDING, TX_UNKNOWN):
                held += len(refs)
                logger.warning("Janitor: %s stuck claims wait on %s (%s); left PROCESSING", len(refs), tx_hash, state)
            else:
                if state == TX_DROPPED and self.allocator is not None:
                    self.allocator.release_tx(tx_hash)
                resettable.extend(refs)

        reset = 0
        if resettable:
            with Session(self.engine) as session:
                r = session.execute(
                    update(TokenClaim)
                    .where(TokenClaim.id.in_([c.id for c in resettable]))
                    .where(TokenClaim.status == ClaimStatus.PROCESSING.value)
                    .where(TokenClaim.updated_at < cutoff)
                    .values(
                        status=ClaimStatus.QUEUED.value,
                        error_message=append_audit("Reset from stuck PROCESSING state"),
                        updated_at=now,
                    )
                )
                session.commit()
            reset = r.rowcount
            if reset:
                logger.warning("Reset %s claims stuck in PROCESSING", reset)
        return {"reset": reset, "completed": completed, "held": held}

    def quarantine_invalid_queued(self) -> int:
        """QUEUED rows missing a recipient or atomic amount can never be submitted."""
        now = utcnow()
        with Session(self.engine) as session:
            r = session.execute(
                update(TokenClaim)
                .where(TokenClaim.status == ClaimStatus.QUEUED.value)
                .where(or_(_blank(TokenClaim.recipient_address), _blank(TokenClaim.amount_atomic)))
                .values(
                    status=ClaimStatus.FAILED.value,
                    retry_count=self.max_retry_count,
                    next_attempt_at=None,
                    error_message=append_audit("Missing recipient address or atomic amount"),
                    updated_at=now,
                )
            )
            session.commit()
        if r.rowcount:
            logger.warning("Moved %s structurally invalid QUEUED claims to FAILED", r.rowcount)
        return r.rowcount

    def refund_exhausted(self) -> int:
        """
        FAILED claims out of retries get their amount back in the app balance.
        Each refund is its own transaction (marker + credit together), and the
        refunded_at marker makes re-runs skip it.
        """
        with Session(self.engine) as session:
            rows = session.execute(
                select(TokenClaim.id, TokenClaim.retry_count)
                .where(TokenClaim.status == ClaimStatus.FAILED.value)
                .where(TokenClaim.retry_count >= self.max_retry_count)
                .where(TokenClaim.refunded_at.is_(None))
                .order_by(TokenClaim.created_at)
            ).all()

        refunded = 0
        for claim_id, retry_count in rows:
            with Session(self.engine) as session:
                amount = refund_in_session(
                    session,
                    claim_id=claim_id,
                    note=f"Permanently failed after {retry_count} retries. Amount refunded to in-app balance.",
                    now=utcnow(),
                    min_retry_count=self.max_retry_count,
                )
                if amount is None:
                    session.rollback()
                    continue
                session.commit()
            refunded += 1
            logger.info("Refunded %s for permanently failed claim %s", amount, claim_id)
        return refunded

    def run_all(self) -> Dict[str, int]:
        stuck = self.reset_stuck_processing()
        return {
            "reset_processing": stuck["reset"],
            "completed_processing": stuck["completed"],
            "held_processing": stuck["held"],
            "quarantined": self.quarantine_invalid_queued(),
            "refunded": self.refund_exhausted(),
        }
