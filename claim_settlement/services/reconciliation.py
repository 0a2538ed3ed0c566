"""
Reconciliation: find batch transfers that landed on-chain while the claim
store still says FAILED (receipt lost, poller timed out, process died).

The block range is scanned once per run and every decoded batchTransfer from
the admin signer whose receipt shows success is indexed by (recipient, atomic
amount). A reverted transaction is still included in its block, so inclusion
alone proves nothing. Occurrences already owned by a COMPLETED claim are
removed first, so one on-chain transfer can settle at most one claim.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from claim_settlement.core.config import Settings, settings
from claim_settlement.models.claims import ClaimStatus, TokenClaim
from claim_settlement.models.user import User
from claim_settlement.services.chain import LedgerError
from claim_settlement.services.claim_store import append_audit, utcnow
from claim_settlement.services.nonce import NonceAllocator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationResult:
    checked: int = 0
    blocks_scanned: int = 0
    blocks_skipped: int = 0
    transfers_indexed: int = 0
    transfers_reverted: int = 0
    matched: int = 0
    refunds_reversed: int = 0


TransferIndex = dict[tuple[str, int], list[str]]


class ReconciliationScanner:
    def __init__(
        self,
        engine: Engine,
        ledger,
        allocator: Optional[NonceAllocator] = None,
        *,
        cfg: Settings = settings,
    ) -> None:
        self.engine = engine
        self.ledger = ledger
        self.allocator = allocator
        self.claim_limit = cfg.reconcile_claim_limit
        self.default_lookback = cfg.reconcile_lookback_blocks

    def _candidates(self) -> list[TokenClaim]:
        with Session(self.engine, expire_on_commit=False) as session:
            return list(
                session.execute(
                    select(TokenClaim)
                    .where(TokenClaim.status == ClaimStatus.FAILED.value)
                    .where(TokenClaim.recipient_address.is_not(None))
                    .where(TokenClaim.amount_atomic.is_not(None))
                    .order_by(TokenClaim.updated_at.desc())
                    .limit(self.claim_limit)
                ).scalars().all()
            )

    def _succeeded(self, tx_hash: str, cache: dict[str, bool]) -> bool:
        if tx_hash not in cache:
            try:
                receipt = self.ledger.get_receipt(tx_hash)
            except LedgerError as e:
                logger.warning("Reconciliation: receipt for %s unavailable: %s", tx_hash, e)
                receipt = None
            cache[tx_hash] = receipt is not None and receipt.succeeded
        return cache[tx_hash]

    def build_index(self, lookback_blocks: int) -> tuple[TransferIndex, int, int, int]:
        """
        Scan [latest - lookback + 1, latest] newest first.
        Returns (index, scanned, skipped, reverted); transfers without a
        successful receipt are counted as reverted and left out of the index.
        """
        signer = self.ledger.signer_address.lower()
        dispatcher = self.ledger.dispatcher_address.lower()
        latest = self.ledger.block_number()
        start = max(0, latest - lookback_blocks + 1)

        index: TransferIndex = defaultdict(list)
        receipts: dict[str, bool] = {}
        scanned = skipped = reverted = 0
        for number in range(latest, start - 1, -1):
            try:
                block = self.ledger.get_block(number, full_transactions=True)
            except LedgerError as e:
                skipped += 1
                logger.warning("Reconciliation: block %s unavailable: %s", number, e)
                continue
            scanned += 1
            if block is None:
                continue
            for tx in block.transactions:
                if not tx.sender or not tx.to:
                    continue
                if tx.sender.lower() != signer or tx.to.lower() != dispatcher:
                    continue
                call = self.ledger.decode_call(tx.data)
                if call is None:
                    continue
                if not self._succeeded(tx.tx_hash, receipts):
                    reverted += 1
                    continue
                for recipient, amount in zip(call.recipients, call.amounts):
                    index[(recipient.lower(), int(amount))].append(tx.tx_hash)
        return index, scanned, skipped, reverted

    def _discount_settled(self, index: TransferIndex) -> None:
        """Drop occurrences already claimed by COMPLETED rows carrying the same hash."""
        hashes = {h for occurrences in index.values() for h in occurrences}
        if not hashes:
            return
        with Session(self.engine) as session:
            rows = session.execute(
                select(TokenClaim.recipient_address, TokenClaim.amount_atomic, TokenClaim.batch_transaction_hash)
                .where(TokenClaim.status == ClaimStatus.COMPLETED.value)
                .where(TokenClaim.batch_transaction_hash.in_(hashes))
            ).all()
        for recipient, amount_atomic, tx_hash in rows:
            if not recipient or not amount_atomic or not amount_atomic.strip().isdigit():
                continue
            occurrences = index.get((recipient.strip().lower(), int(amount_atomic)))
            if occurrences and tx_hash in occurrences:
                occurrences.remove(tx_hash)

    def reconcile_recent_failures(self, lookback_blocks: Optional[int] = None) -> ReconciliationResult:
        lookback = lookback_blocks or self.default_lookback
        candidates = self._candidates()
        if not candidates:
            return ReconciliationResult()

        index, scanned, skipped, reverted = self.build_index(lookback)
        indexed = sum(len(v) for v in index.values())
        self._discount_settled(index)

        matched = reversed_refunds = 0
        for claim in candidates:
            raw = (claim.amount_atomic or "").strip()
            if not raw.isdigit():
                continue
            occurrences = index.get((claim.recipient_address.strip().lower(), int(raw)))
            if not occurrences:
                continue
            tx_hash = occurrences.pop(0)

            now = utcnow()
            with Session(self.engine) as session:
                r = session.execute(
                    update(TokenClaim)
                    .where(TokenClaim.id == claim.id)
                    .where(TokenClaim.status == ClaimStatus.FAILED.value)
                    .values(
                        status=ClaimStatus.COMPLETED.value,
                        batch_transaction_hash=tx_hash,
                        next_attempt_at=None,
                        error_message=append_audit(f"Recovered transaction: {tx_hash}"),
                        updated_at=now,
                    )
                )
                if r.rowcount != 1:
                    session.rollback()
                    occurrences.insert(0, tx_hash)
                    continue
                if claim.refunded_at is not None:
                    # settled on-chain after all: take the refund back
                    session.execute(
                        update(User)
                        .where(User.id == claim.user_id)
                        .values(reward_balance=User.reward_balance - claim.amount)
                    )
                    session.execute(
                        update(TokenClaim)
                        .where(TokenClaim.id == claim.id)
                        .values(
                            refunded_at=None,
                            error_message=append_audit(f"Refund of {claim.amount} reversed: settled on-chain"),
                        )
                    )
                    reversed_refunds += 1
                session.commit()

            matched += 1
            logger.info("Reconciled claim %s -> COMPLETED via %s", claim.id, tx_hash)
            if self.allocator is not None:
                self.allocator.release_tx(tx_hash)

        if matched:
            logger.info(
                "Reconciliation: %s of %s failed claims recovered (%s refunds reversed)",
                matched,
                len(candidates),
                reversed_refunds,
            )
        return ReconciliationResult(
            checked=len(candidates),
            blocks_scanned=scanned,
            blocks_skipped=skipped,
            transfers_indexed=indexed,
            transfers_reverted=reverted,
            matched=matched,
            refunds_reversed=reversed_refunds,
        )
