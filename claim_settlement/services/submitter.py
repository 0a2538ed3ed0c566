"""
Batch submitter: turns a carved-out set of claims into one batchTransfer call.

The submitter never decides COMPLETED; a successful submit hands the tx hash
to the confirmation poller (see jobs/settlement_cycle.BatchPipeline).
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional, Sequence

from claim_settlement.services.chain import (
    BatchTransferCall,
    ErrorKind,
    InsufficientFundsError,
    NonceAllocationError,
    NonceConflictError,
    classify_error,
    clean_address,
)
from claim_settlement.services.claim_store import ClaimRef, ClaimStore
from claim_settlement.services.gas_guard import GasGuard
from claim_settlement.services.nonce import NonceAllocator

logger = logging.getLogger(__name__)

NONCE_RETRY_LIMIT = 3
GAS_LIMIT_BUFFER_PERCENT = 120


@dataclass
class SubmissionResult:
    tx_hash: Optional[str] = None
    nonce: Optional[int] = None
    gas_limit: Optional[int] = None
    claims: list[ClaimRef] = field(default_factory=list)
    invalid_count: int = 0
    dropped_count: int = 0
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def submitted(self) -> bool:
        return self.tx_hash is not None


def validate_claim(claim: ClaimRef) -> tuple[Optional[str], Optional[int], Optional[str]]:
    """(checksum_address, atomic_amount, None) for a valid claim, else (None, None, reason)."""
    if not claim.recipient_address or not claim.recipient_address.strip():
        return None, None, "Missing recipient address"
    address = clean_address(claim.recipient_address)
    if not address:
        return None, None, f"Invalid recipient address: {claim.recipient_address}"
    raw = (claim.amount_atomic or "").strip()
    if not raw:
        return None, None, "Missing atomic amount"
    if not raw.isdigit():
        return None, None, f"Invalid atomic amount: {raw}"
    amount = int(raw)
    if amount <= 0:
        return None, None, f"Non-positive atomic amount: {raw}"
    return address, amount, None


class BatchSubmitter:
    def __init__(
        self,
        ledger,
        store: ClaimStore,
        allocator: NonceAllocator,
        *,
        guard: Optional[GasGuard] = None,
        stop: Optional[threading.Event] = None,
        label: str = "Batch",
    ) -> None:
        self.ledger = ledger
        self.store = store
        self.allocator = allocator
        self.guard = guard
        self.stop = stop or threading.Event()
        self.label = label

    def _partition(self, claims: Sequence[ClaimRef]) -> tuple[list[ClaimRef], int]:
        valid: list[ClaimRef] = []
        invalid = 0
        for c in claims:
            _, _, reason = validate_claim(c)
            if reason:
                invalid += 1
                if self.store.fail_invalid(c, reason):
                    logger.warning("%s: claim %s failed validation: %s", self.label, c.id, reason)
                continue
            valid.append(c)
        return valid, invalid

    def submit(self, claims: Sequence[ClaimRef]) -> SubmissionResult:
        result = SubmissionResult()
        valid, result.invalid_count = self._partition(claims)
        if not valid:
            return result

        if self.guard is not None:
            capacity = self.guard.check_capacity(len(valid))
            if not capacity.affordable:
                result.error = "INSUFFICIENT_GAS"
                result.error_kind = ErrorKind.FUNDS
                return result
            valid = valid[: capacity.recommended_size]

        if self.stop.is_set():
            result.error = "CYCLE_DEADLINE"
            return result

        owned = self.store.mark_processing(valid)
        result.dropped_count = len(valid) - len(owned)
        result.claims = owned
        if not owned:
            return result

        if self.stop.is_set():
            self.store.restore(owned, "Released before submission: cycle deadline reached")
            result.claims = []
            result.error = "CYCLE_DEADLINE"
            return result

        recipients, amounts = [], []
        for c in owned:
            address, amount, _ = validate_claim(c)
            recipients.append(address)
            amounts.append(amount)
        call = BatchTransferCall(recipients=tuple(recipients), amounts=tuple(amounts))

        try:
            nonce = self.allocator.allocate()
        except NonceAllocationError as e:
            self.store.restore(owned, f"Released before submission: {e}")
            result.claims = []
            result.error = str(e)
            result.error_kind = e.kind
            return result

        logger.info("%s: submitting %s recipients with nonce %s", self.label, len(call), nonce)
        nonce_retries = 0
        try:
            while True:
                try:
                    estimate = self.ledger.estimate_gas(call)
                    gas_limit = estimate * GAS_LIMIT_BUFFER_PERCENT // 100
                    tx_hash = self.ledger.submit(call, nonce, gas_limit)
                    break
                except NonceConflictError as e:
                    self.allocator.release(nonce)
                    nonce = None
                    nonce_retries += 1
                    if nonce_retries > NONCE_RETRY_LIMIT:
                        raise NonceConflictError(
                            f"nonce conflict persisted after {NONCE_RETRY_LIMIT} re-allocations: {e}"
                        ) from e
                    nonce = self.allocator.allocate(refresh=True)
                    logger.warning("%s: nonce conflict (%s); retrying with nonce %s", self.label, e, nonce)
        except InsufficientFundsError as e:
            self.allocator.release(nonce)
            self.store.mark_failed(owned, f"Insufficient funds in admin wallet: {e}", restore_retry=True)
            logger.error("%s: admin wallet cannot pay for batch: %s", self.label, e)
            result.error = str(e)
            result.error_kind = ErrorKind.FUNDS
            return result
        except NonceConflictError as e:
            # conflicting nonces were released inside the loop
            self.store.mark_failed(owned, f"Nonce conflict: {e}")
            logger.error("%s: %s", self.label, e)
            result.error = str(e)
            result.error_kind = ErrorKind.NONCE_CONFLICT
            return result
        except NonceAllocationError as e:
            self.store.mark_failed(owned, f"Nonce allocation failed: {e}")
            result.error = str(e)
            result.error_kind = e.kind
            return result
        except Exception as e:
            self.allocator.release(nonce)
            kind = classify_error(e)
            self.store.mark_failed(owned, f"Batch submission failed ({kind.value}): {e}")
            logger.error("%s: submission failed (%s): %s", self.label, kind.value, e)
            result.error = str(e)
            result.error_kind = kind
            return result

        self.allocator.attach(nonce, tx_hash)
        self.store.record_submission(owned, tx_hash)
        if self.guard is not None:
            self.guard.commit(gas_limit)
        logger.info("%s: submitted %s (nonce %s, gas limit %s)", self.label, tx_hash, nonce, gas_limit)
        result.tx_hash = tx_hash
        result.nonce = nonce
        result.gas_limit = gas_limit
        return result
