"""
Shared fixtures: a file-backed SQLite database with the rewards schema mapped
away, and FakeLedger, an in-memory stand-in for LedgerClient.
"""
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, update
from sqlalchemy.orm import Session

from claim_settlement.core.config import Settings
from claim_settlement.models import Base, ClaimStatus, TokenClaim, User
from claim_settlement.services.chain import (
    BatchTransferCall,
    Block,
    ChainTransaction,
    FeeEstimate,
    LedgerNetworkError,
    TxReceipt,
)
from claim_settlement.services.nonce import NonceAllocator

SIGNER = "0x" + "aa" * 20
DISPATCHER = "0x" + "dd" * 20
WALLET_A = "0x" + "11" * 20
WALLET_B = "0x" + "22" * 20
ONE_TOKEN = 10 ** 18


# =============================================================================
# FAKE LEDGER
# =============================================================================

class FakeLedger:
    """Implements the LedgerClient surface the engine consumes."""

    def __init__(self, *, balance: int = 10 ** 20, fee: int | None = 10 ** 9, pending_nonce: int = 0):
        self.signer_address = SIGNER
        self.dispatcher_address = DISPATCHER
        self.balance = balance
        self.fee = fee
        self.pending_nonce = pending_nonce
        self.receipt_status = 1

        # queued exceptions, raised one per call before normal behaviour resumes
        self.estimate_errors: list[Exception] = []
        self.submit_errors: list[Exception] = []
        self.wait_errors: list[Exception] = []
        self.always_time_out = False
        # submitted txs land in the next block with receipt_status; off = they sit in the mempool
        self.auto_mine = True

        self.submitted: list[dict] = []
        self.receipts: dict[str, TxReceipt] = {}
        self.blocks: dict[int, Block] = {}
        self.head = 0
        self.calldata: dict[str, BatchTransferCall] = {}
        self.mempool: dict[str, ChainTransaction] = {}
        self.pending_nonce_calls = 0
        self._lock = threading.Lock()

    # --- reads ---

    def block_number(self) -> int:
        return self.head

    def get_pending_nonce(self, address: str) -> int:
        self.pending_nonce_calls += 1
        return self.pending_nonce

    def get_balance(self, address: str) -> int:
        return self.balance

    def get_fee_estimate(self) -> FeeEstimate:
        return FeeEstimate(fee_per_gas=self.fee)

    def get_receipt(self, tx_hash: str):
        return self.receipts.get(tx_hash)

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        if self.wait_errors:
            raise self.wait_errors.pop(0)
        if self.always_time_out:
            raise LedgerNetworkError(f"timeout waiting for {tx_hash}")
        return TxReceipt(tx_hash=tx_hash, status=self.receipt_status, block_number=self.head)

    def get_transaction(self, tx_hash: str):
        if tx_hash in self.mempool:
            return self.mempool[tx_hash]
        for block in self.blocks.values():
            for tx in block.transactions:
                if tx.tx_hash == tx_hash:
                    return tx
        return None

    def get_block(self, number: int, full_transactions: bool = True):
        return self.blocks.get(number)

    def decode_call(self, data: str):
        return self.calldata.get(data)

    # --- writes ---

    def estimate_gas(self, call: BatchTransferCall) -> int:
        if self.estimate_errors:
            raise self.estimate_errors.pop(0)
        return 50_000 * len(call)

    def submit(self, call: BatchTransferCall, nonce: int, gas_limit: int) -> str:
        with self._lock:
            if self.submit_errors:
                raise self.submit_errors.pop(0)
            tx_hash = "0x" + f"{len(self.submitted) + 1:064x}"
            self.submitted.append({"call": call, "nonce": nonce, "gas_limit": gas_limit, "tx_hash": tx_hash})
            self.pending_nonce = max(self.pending_nonce, nonce + 1)
            if self.auto_mine:
                self.add_transfer_block(self.head + 1, call, tx_hash, status=self.receipt_status)
            else:
                data = self._register_call(call, tx_hash)
                self.mempool[tx_hash] = ChainTransaction(tx_hash=tx_hash, sender=SIGNER, to=DISPATCHER, data=data)
        return tx_hash

    # --- test helpers ---

    def _register_call(self, call: BatchTransferCall, tx_hash: str) -> str:
        data = f"0xcall{tx_hash[2:]}"
        self.calldata[data] = call
        return data

    def add_transfer_block(
        self,
        number: int,
        call: BatchTransferCall,
        tx_hash: str,
        *,
        sender: str = SIGNER,
        to: str = DISPATCHER,
        status: int = 1,
    ):
        """Include a transfer in block `number` with a receipt of the given status."""
        data = self._register_call(call, tx_hash)
        self.mempool.pop(tx_hash, None)
        block = self.blocks.setdefault(number, Block(number=number))
        block.transactions.append(ChainTransaction(tx_hash=tx_hash, sender=sender, to=to, data=data, block_number=number))
        self.receipts[tx_hash] = TxReceipt(tx_hash=tx_hash, status=status, block_number=number)
        self.head = max(self.head, number)

    def mine(self, sent: dict, number: int | None = None, *, status: int = 1):
        """Mine a transaction recorded in `submitted`."""
        self.add_transfer_block(number or self.head + 1, sent["call"], sent["tx_hash"], status=status)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def engine(tmp_path):
    eng = create_engine(
        f"sqlite:///{tmp_path / 'claims.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    ).execution_options(schema_translate_map={"rewards": None})
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def cfg():
    return replace(
        Settings(),
        batch_size=50,
        batch_concurrency=2,
        max_retry_count=3,
        retry_base_delay_seconds=600.0,
        confirmation_initial_interval_seconds=0.0,
        confirmation_max_attempts=3,
        confirmation_wait_timeout_seconds=0.0,
        cycle_deadline_seconds=30.0,
        notification_api_key=None,
        notification_app_id=None,
    )


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def allocator(ledger):
    return NonceAllocator(ledger)


# =============================================================================
# ROW HELPERS
# =============================================================================

def make_user(engine, *, balance="100", wallet=WALLET_A, role="user") -> int:
    with Session(engine) as session:
        user = User(username=f"user-{uuid.uuid4().hex[:6]}", wallet_address=wallet, reward_balance=Decimal(balance), role=role, is_active=True)
        session.add(user)
        session.commit()
        return user.id


def make_claim(
    engine,
    user_id: int,
    *,
    amount="10",
    status=ClaimStatus.QUEUED,
    retry_count=0,
    recipient=WALLET_A,
    amount_atomic: str | None = "auto",
    created_at: datetime | None = None,
    updated_at: datetime | None = None,
    next_attempt_at: datetime | None = None,
    refunded_at: datetime | None = None,
    batch_transaction_hash: str | None = None,
) -> uuid.UUID:
    now = datetime.now(timezone.utc)
    if amount_atomic == "auto":
        amount_atomic = str(int(Decimal(amount) * ONE_TOKEN))
    with Session(engine) as session:
        claim = TokenClaim(
            user_id=user_id,
            amount=Decimal(amount),
            amount_atomic=amount_atomic,
            recipient_address=recipient,
            status=status.value if isinstance(status, ClaimStatus) else status,
            retry_count=retry_count,
            created_at=created_at or now,
            updated_at=updated_at or now,
            next_attempt_at=next_attempt_at,
            refunded_at=refunded_at,
            batch_transaction_hash=batch_transaction_hash,
        )
        session.add(claim)
        session.commit()
        return claim.id


def get_claim(engine, claim_id) -> TokenClaim:
    with Session(engine, expire_on_commit=False) as session:
        return session.get(TokenClaim, claim_id)


def get_balance(engine, user_id) -> Decimal:
    with Session(engine) as session:
        return Decimal(session.get(User, user_id).reward_balance)


def hours_ago(n: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=n)


def age_claim(engine, claim_id, hours: float) -> None:
    """Push updated_at into the past, as if the row had sat untouched."""
    with Session(engine) as session:
        session.execute(update(TokenClaim).where(TokenClaim.id == claim_id).values(updated_at=hours_ago(hours)))
        session.commit()
