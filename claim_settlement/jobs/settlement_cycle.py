"""
Settlement cycle (cron-style).
Janitor passes, reconciliation, gas check, then N concurrent batch pipelines
(submit + confirm), then notification delivery.
Supports ENFORCE_MIN_BATCH_SIZE (skippable with force) and DRY_RUN mode.

    python -m claim_settlement.jobs.settlement_cycle [--force] [--dry-run]
"""
from __future__ import annotations

import argparse
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass
from typing import Optional, Sequence

from sqlalchemy.engine import Engine

from claim_settlement.core import deps
from claim_settlement.core.config import Settings, settings
from claim_settlement.services import notifications
from claim_settlement.services.chain import ConfirmationTimeout, LedgerError, TransactionReverted
from claim_settlement.services.claim_store import ClaimRef, ClaimStore
from claim_settlement.services.confirmation import ConfirmationPoller, CycleDeadlineExceeded
from claim_settlement.services.gas_guard import GasGuard
from claim_settlement.services.janitor import LifecycleJanitor
from claim_settlement.services.nonce import NonceAllocator, get_allocator
from claim_settlement.services.reconciliation import ReconciliationScanner
from claim_settlement.services.submitter import BatchSubmitter

logger = logging.getLogger(__name__)

MAX_BATCH_CONCURRENCY = 5

_cycle_lock = threading.Lock()


@dataclass
class BatchOutcome:
    batch_no: int
    status: str
    claims: int = 0
    completed: int = 0
    failed: int = 0
    invalid: int = 0
    tx_hash: Optional[str] = None
    nonce: Optional[int] = None
    error: Optional[str] = None

    @property
    def submitted(self) -> bool:
        return self.tx_hash is not None


class BatchPipeline:
    """Owns one carved-out set of claims from pickup to final state."""

    def __init__(
        self,
        batch_no: int,
        claims: Sequence[ClaimRef],
        *,
        ledger,
        store: ClaimStore,
        allocator: NonceAllocator,
        guard: Optional[GasGuard],
        stop: threading.Event,
        cfg: Settings = settings,
    ) -> None:
        self.batch_no = batch_no
        self.claims = list(claims)
        self.ledger = ledger
        self.store = store
        self.allocator = allocator
        self.guard = guard
        self.stop = stop
        self.cfg = cfg
        self.label = f"Batch #{batch_no}"

    def run(self) -> BatchOutcome:
        try:
            return self._run()
        except Exception as e:
            # claims already PROCESSING are left for the janitor
            logger.exception("%s: pipeline crashed: %s", self.label, e)
            return BatchOutcome(batch_no=self.batch_no, status="ERROR", claims=len(self.claims), error=str(e))

    def _run(self) -> BatchOutcome:
        submitter = BatchSubmitter(
            self.ledger,
            self.store,
            self.allocator,
            guard=self.guard,
            stop=self.stop,
            label=self.label,
        )
        result = submitter.submit(self.claims)
        outcome = BatchOutcome(
            batch_no=self.batch_no,
            status="SUBMIT_FAILED" if result.error else "EMPTY",
            claims=len(result.claims),
            invalid=result.invalid_count,
            error=result.error,
        )
        if not result.submitted:
            if result.claims and result.error:
                outcome.failed = len(result.claims)
            return outcome

        tx_hash, nonce = result.tx_hash, result.nonce
        outcome.tx_hash, outcome.nonce = tx_hash, nonce
        poller = ConfirmationPoller(
            self.ledger,
            initial_interval=self.cfg.confirmation_initial_interval_seconds,
            max_attempts=self.cfg.confirmation_max_attempts,
            wait_timeout=self.cfg.confirmation_wait_timeout_seconds,
            stop=self.stop,
            label=self.label,
        )
        try:
            receipt = poller.await_confirmation(tx_hash)
        except TransactionReverted as e:
            outcome.failed = self.store.mark_failed(result.claims, f"Transaction reverted: {tx_hash}", tx_hash=tx_hash)
            self.allocator.release(nonce)
            outcome.status, outcome.error = "REVERTED", str(e)
            logger.error("%s: %s reverted", self.label, tx_hash)
            return outcome
        except ConfirmationTimeout as e:
            # nonce stays in flight: the tx may still land and reconciliation will find it
            outcome.failed = self.store.mark_failed(
                result.claims, f"Confirmation timeout for {tx_hash}", tx_hash=tx_hash
            )
            outcome.status, outcome.error = "TIMEOUT", str(e)
            logger.warning("%s: no confirmation for %s; marked FAILED pending reconciliation", self.label, tx_hash)
            return outcome
        except CycleDeadlineExceeded:
            outcome.status, outcome.error = "DEADLINE", "CYCLE_DEADLINE"
            logger.warning("%s: cycle deadline hit while confirming %s; claims left PROCESSING", self.label, tx_hash)
            return outcome

        outcome.completed = self.store.mark_completed(result.claims, tx_hash)
        self.allocator.release(nonce)
        outcome.status = "COMPLETED"
        logger.info(
            "%s: %s confirmed in block %s, %s claims completed",
            self.label,
            tx_hash,
            receipt.block_number,
            outcome.completed,
        )
        return outcome


def _carve(claims: Sequence[ClaimRef], batch_size: int) -> list[list[ClaimRef]]:
    return [list(claims[i:i + batch_size]) for i in range(0, len(claims), batch_size)]


def run_settlement_cycle(
    *,
    engine: Optional[Engine] = None,
    ledger=None,
    allocator: Optional[NonceAllocator] = None,
    cfg: Settings = settings,
    force: bool = False,
    dry_run: Optional[bool] = None,
    notification_client=None,
) -> dict:
    """
    Run one settlement cycle. Returns {processed_count, batches_run, gas_limited, error?}
    plus per-stage details. Never raises for per-batch failures.
    """
    if not _cycle_lock.acquire(blocking=False):
        logger.warning("Settlement cycle already running; skipping")
        return {"processed_count": 0, "batches_run": 0, "gas_limited": False, "error": "CYCLE_ALREADY_RUNNING"}
    try:
        return _run_cycle(
            engine=engine,
            ledger=ledger,
            allocator=allocator,
            cfg=cfg,
            force=force,
            dry_run=cfg.dry_run if dry_run is None else dry_run,
            notification_client=notification_client,
        )
    finally:
        _cycle_lock.release()


def _run_cycle(*, engine, ledger, allocator, cfg: Settings, force: bool, dry_run: bool, notification_client) -> dict:
    summary: dict = {"processed_count": 0, "batches_run": 0, "gas_limited": False}

    engine = engine if engine is not None else deps.engine
    if engine is None:
        summary["error"] = "Database not configured"
        return summary

    ledger_error = None
    if ledger is None:
        try:
            ledger = deps.get_ledger()
        except Exception as e:
            logger.error("Ledger client unavailable: %s", e)
            ledger_error = e
    if ledger is not None:
        allocator = allocator or get_allocator(ledger)

    # without a ledger the janitor still runs, but leaves broadcast claims PROCESSING
    summary["janitor"] = LifecycleJanitor(engine, cfg, ledger=ledger, allocator=allocator).run_all()
    if ledger is None:
        summary["error"] = f"LEDGER_UNAVAILABLE: {ledger_error}"
        return summary

    scanner = ReconciliationScanner(engine, ledger, allocator, cfg=cfg)
    try:
        rec = scanner.reconcile_recent_failures(cfg.reconcile_lookback_blocks)
        summary["reconciled"] = rec.matched
        summary["refunds_reversed"] = rec.refunds_reversed
    except LedgerError as e:
        logger.warning("Reconciliation skipped: %s", e)
        summary["reconciled"] = 0
        summary["reconciliation_error"] = str(e)

    store = ClaimStore(engine, cfg)
    eligible = store.count_eligible()
    summary["eligible"] = eligible

    if dry_run:
        summary["dry_run"] = True
        summary["note"] = "DRY_RUN: janitor + reconciliation only; nothing submitted"
        return summary
    if eligible == 0:
        return summary
    if cfg.enforce_min_batch_size and not force and eligible < cfg.min_batch_threshold:
        summary["skipped"] = f"{eligible} eligible claims below MIN_BATCH_THRESHOLD {cfg.min_batch_threshold}"
        return summary

    allocator.resync_if_idle()
    guard = GasGuard(ledger, cfg.gas_per_recipient)
    try:
        capacity = guard.check_capacity(cfg.batch_size)
    except LedgerError as e:
        logger.error("Gas check failed: %s", e)
        summary["error"] = f"LEDGER_UNAVAILABLE: {e}"
        return summary
    if not capacity.affordable:
        logger.error(
            "ALERT: admin wallet %s cannot fund a single transfer (balance %s wei); submission aborted",
            ledger.signer_address,
            capacity.balance_wei,
        )
        summary["gas_limited"] = True
        summary["error"] = "INSUFFICIENT_GAS"
        return summary

    batch_size = max(1, capacity.recommended_size)
    if batch_size < cfg.batch_size:
        summary["gas_limited"] = True

    concurrency = min(cfg.batch_concurrency, MAX_BATCH_CONCURRENCY, eligible // batch_size + 1)
    claims = store.fetch_eligible(batch_size * concurrency)
    batches = _carve(claims, batch_size)
    if not batches:
        return summary

    stop = threading.Event()
    pipelines = [
        BatchPipeline(n, batch, ledger=ledger, store=store, allocator=allocator, guard=guard, stop=stop, cfg=cfg)
        for n, batch in enumerate(batches, start=1)
    ]
    logger.info("Settlement cycle: %s claims in %s batches (size %s)", len(claims), len(batches), batch_size)

    pool = ThreadPoolExecutor(max_workers=len(pipelines), thread_name_prefix="settlement")
    try:
        futures = [pool.submit(p.run) for p in pipelines]
        done, not_done = wait(futures, timeout=cfg.cycle_deadline_seconds)
        if not_done:
            stop.set()
            summary["error"] = "CYCLE_DEADLINE"
            logger.error("Settlement cycle deadline (%ss) reached with %s batches unfinished", cfg.cycle_deadline_seconds, len(not_done))
    finally:
        pool.shutdown(wait=False, cancel_futures=True)

    outcomes = [f.result() for f in done]
    outcomes.sort(key=lambda o: o.batch_no)
    summary["processed_count"] = sum(o.completed for o in outcomes)
    summary["batches_run"] = sum(1 for o in outcomes if o.submitted)
    if any(o.error == "INSUFFICIENT_GAS" for o in outcomes):
        summary["gas_limited"] = True
    summary["batches"] = [asdict(o) for o in outcomes]

    try:
        summary["notifications"] = notifications.dispatch_pending(engine, cfg=cfg, client=notification_client)
    except Exception as e:
        logger.exception("Notification delivery failed: %s", e)

    logger.info(
        "Settlement cycle done: processed=%s batches=%s gas_limited=%s",
        summary["processed_count"],
        summary["batches_run"],
        summary["gas_limited"],
    )
    return summary


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run one claim settlement cycle")
    parser.add_argument("--force", action="store_true", help="Ignore MIN_BATCH_THRESHOLD")
    parser.add_argument("--dry-run", action="store_true", help="Janitor + reconciliation only")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    result = run_settlement_cycle(force=args.force, dry_run=True if args.dry_run else None)
    print(json.dumps(result, indent=2, default=str))
    return 1 if result.get("error") else 0


if __name__ == "__main__":
    raise SystemExit(main())
