"""
Confirmation poller: waits for a submitted batch transaction to be mined.

Some RPC nodes drop or delay receipts, so every retry after the first also
looks the transaction up by hash and re-reads the receipt directly.
"""
from __future__ import annotations

import logging
import threading
from typing import Optional

from claim_settlement.services.chain import (
    ConfirmationTimeout,
    LedgerError,
    TransactionReverted,
    TxReceipt,
)

logger = logging.getLogger(__name__)


class CycleDeadlineExceeded(Exception):
    """The settlement cycle ran out of time while this pipeline was waiting."""


class ConfirmationPoller:
    def __init__(
        self,
        ledger,
        *,
        initial_interval: float = 10.0,
        max_attempts: int = 5,
        wait_timeout: float = 120.0,
        stop: Optional[threading.Event] = None,
        label: str = "",
    ) -> None:
        self.ledger = ledger
        self.initial_interval = initial_interval
        self.max_attempts = max(1, max_attempts)
        self.wait_timeout = wait_timeout
        self.stop = stop or threading.Event()
        self.label = label

    def _log_prefix(self) -> str:
        return f"{self.label}: " if self.label else ""

    def _check_receipt(self, tx_hash: str, receipt: TxReceipt) -> TxReceipt:
        if not receipt.succeeded:
            raise TransactionReverted(f"transaction {tx_hash} reverted (status {receipt.status})")
        return receipt

    def _secondary_lookup(self, tx_hash: str) -> Optional[TxReceipt]:
        tx = self.ledger.get_transaction(tx_hash)
        if tx is None:
            logger.warning("%sTransaction %s not found by hash", self._log_prefix(), tx_hash)
        return self.ledger.get_receipt(tx_hash)

    def await_confirmation(self, tx_hash: str) -> TxReceipt:
        """
        Returns the successful receipt.
        Raises TransactionReverted on status 0, ConfirmationTimeout after the
        last attempt, CycleDeadlineExceeded if the cycle's stop event fires.
        """
        interval = self.initial_interval
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            if self.stop.is_set():
                raise CycleDeadlineExceeded(tx_hash)
            try:
                receipt = self.ledger.wait_for_receipt(tx_hash, timeout=self.wait_timeout)
                return self._check_receipt(tx_hash, receipt)
            except TransactionReverted:
                raise
            except LedgerError as e:
                last_error = e
                logger.warning(
                    "%sReceipt wait for %s failed (attempt %s/%s): %s",
                    self._log_prefix(),
                    tx_hash,
                    attempt,
                    self.max_attempts,
                    e,
                )

            if attempt > 1:
                try:
                    receipt = self._secondary_lookup(tx_hash)
                except TransactionReverted:
                    raise
                except LedgerError as e:
                    last_error = e
                    receipt = None
                if receipt is not None:
                    logger.info("%sRecovered receipt for %s via direct lookup", self._log_prefix(), tx_hash)
                    return self._check_receipt(tx_hash, receipt)

            if attempt < self.max_attempts:
                if self.stop.wait(interval):
                    raise CycleDeadlineExceeded(tx_hash)
                interval *= 2

        raise ConfirmationTimeout(
            f"no receipt for {tx_hash} after {self.max_attempts} attempts"
            + (f": {last_error}" if last_error else "")
        )
