"""
Balance/gas guard for the admin signer. Built fresh for every cycle so the
balance is never stale; gas committed by batches already submitted in the
cycle is subtracted from what the node reports.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

GAS_PER_RECIPIENT = 60_000
# cost buffer 120%, shrink against 80% of the available balance
COST_BUFFER_NUM, COST_BUFFER_DEN = 12, 10
SAFETY_NUM, SAFETY_DEN = 8, 10


@dataclass(frozen=True)
class CapacityCheck:
    affordable: bool
    recommended_size: int
    desired_size: int
    balance_wei: int
    fee_per_gas_wei: Optional[int]
    available_wei: int
    estimated_cost_wei: Optional[int] = None
    reason: Optional[str] = None


class GasGuard:
    def __init__(self, ledger, gas_per_recipient: int = GAS_PER_RECIPIENT) -> None:
        self.ledger = ledger
        self.gas_per_recipient = gas_per_recipient
        self._lock = threading.Lock()
        self._committed_gas = 0

    def commit(self, gas_units: int) -> None:
        """Record gas reserved by a batch submitted in this cycle."""
        with self._lock:
            self._committed_gas += max(0, int(gas_units))

    @property
    def committed_gas(self) -> int:
        with self._lock:
            return self._committed_gas

    def per_recipient_cost(self, fee_per_gas: int) -> int:
        return self.gas_per_recipient * fee_per_gas * COST_BUFFER_NUM // COST_BUFFER_DEN

    def check_capacity(self, desired_batch_size: int) -> CapacityCheck:
        balance = int(self.ledger.get_balance(self.ledger.signer_address))
        fee = self.ledger.get_fee_estimate().fee_per_gas
        desired = max(0, int(desired_batch_size))

        if not fee:
            logger.warning("Fee estimate unavailable; assuming batch of %s is affordable", desired)
            return CapacityCheck(
                affordable=True,
                recommended_size=desired,
                desired_size=desired,
                balance_wei=balance,
                fee_per_gas_wei=None,
                available_wei=balance,
                reason="fee unknown",
            )

        available = max(0, balance - self.committed_gas * fee)
        per_recipient = self.per_recipient_cost(fee)
        cost = per_recipient * desired

        if cost <= available:
            return CapacityCheck(
                affordable=True,
                recommended_size=desired,
                desired_size=desired,
                balance_wei=balance,
                fee_per_gas_wei=fee,
                available_wei=available,
                estimated_cost_wei=cost,
            )

        usable = available * SAFETY_NUM // SAFETY_DEN
        max_count = usable // per_recipient
        if max_count >= 1:
            recommended = min(desired, int(max_count))
            logger.warning(
                "Signer balance %s wei covers %s of %s recipients at %s wei/gas; shrinking batch",
                available,
                recommended,
                desired,
                fee,
            )
            return CapacityCheck(
                affordable=True,
                recommended_size=recommended,
                desired_size=desired,
                balance_wei=balance,
                fee_per_gas_wei=fee,
                available_wei=available,
                estimated_cost_wei=per_recipient * recommended,
                reason="shrunk to balance",
            )

        logger.error(
            "Signer balance %s wei cannot cover a single recipient (%s wei needed)",
            available,
            per_recipient,
        )
        return CapacityCheck(
            affordable=False,
            recommended_size=0,
            desired_size=desired,
            balance_wei=balance,
            fee_per_gas_wei=fee,
            available_wei=available,
            estimated_cost_wei=cost,
            reason="INSUFFICIENT_GAS",
        )
