"""
Tests for the batch submitter.

Tests cover:
- Validation partitioning
- Nonce conflict re-allocation (bounded)
- Insufficient funds (no retry penalty) and other submission failures
- Capacity respect when a gas guard is attached
"""
import threading

import pytest

from claim_settlement.models.claims import ClaimStatus
from claim_settlement.services.chain import (
    ErrorKind,
    InsufficientFundsError,
    NonceConflictError,
    TransactionReverted,
)
from claim_settlement.services.claim_store import ClaimStore
from claim_settlement.services.gas_guard import GAS_PER_RECIPIENT, GasGuard
from claim_settlement.services.nonce import NonceAllocator
from claim_settlement.services.submitter import NONCE_RETRY_LIMIT, BatchSubmitter, validate_claim

from conftest import WALLET_A, WALLET_B, FakeLedger, get_claim, hours_ago, make_claim, make_user


@pytest.fixture
def store(engine, cfg):
    return ClaimStore(engine, cfg)


@pytest.fixture
def submitter(ledger, store, allocator):
    return BatchSubmitter(ledger, store, allocator)


# =============================================================================
# VALIDATION
# =============================================================================

class TestValidateClaim:

    def _ref(self, engine, store, **kw):
        uid = make_user(engine)
        make_claim(engine, uid, **kw)
        return store.fetch_eligible(1)[0]

    def test_valid_claim_returns_checksum_address(self, engine, store):
        address, amount, reason = validate_claim(self._ref(engine, store))
        assert reason is None
        assert address.lower() == WALLET_A
        assert amount == 10 * 10 ** 18

    @pytest.mark.parametrize(
        "kw, fragment",
        [
            ({"recipient": None}, "Missing recipient"),
            ({"recipient": "0x1234"}, "Invalid recipient"),
            ({"amount_atomic": None}, "Missing atomic amount"),
            ({"amount_atomic": "12.5"}, "Invalid atomic amount"),
            ({"amount_atomic": "0"}, "Non-positive"),
        ],
    )
    def test_invalid_claims(self, engine, store, kw, fragment):
        _, _, reason = validate_claim(self._ref(engine, store, **kw))
        assert fragment in reason


# =============================================================================
# SUBMISSION
# =============================================================================

class TestSubmit:

    def test_happy_path_submits_one_call(self, engine, store, ledger, allocator, submitter):
        uid = make_user(engine)
        a = make_claim(engine, uid)
        b = make_claim(engine, uid, recipient=WALLET_B, amount="3")
        result = submitter.submit(store.fetch_eligible(10))

        assert result.submitted
        assert len(ledger.submitted) == 1
        sent = ledger.submitted[0]
        assert [r.lower() for r in sent["call"].recipients] == [WALLET_A, WALLET_B]
        assert sent["call"].amounts == (10 * 10 ** 18, 3 * 10 ** 18)
        assert sent["gas_limit"] == 50_000 * 2 * 120 // 100
        assert get_claim(engine, a).status == ClaimStatus.PROCESSING.value
        assert get_claim(engine, b).status == ClaimStatus.PROCESSING.value
        # hash is on the rows before confirmation, so a stuck claim can be checked on-chain
        assert get_claim(engine, a).batch_transaction_hash == result.tx_hash
        assert allocator.snapshot()["in_flight"][0]["tx_hash"] == result.tx_hash

    def test_invalid_claims_fail_and_rest_are_submitted(self, engine, store, ledger, submitter):
        uid = make_user(engine)
        good = make_claim(engine, uid)
        bad = make_claim(engine, uid, recipient="garbage")
        result = submitter.submit(store.fetch_eligible(10))

        assert result.invalid_count == 1
        assert [c.id for c in result.claims] == [good]
        assert get_claim(engine, bad).status == ClaimStatus.FAILED.value
        assert "Invalid recipient address" in get_claim(engine, bad).error_message

    def test_all_invalid_submits_nothing(self, engine, store, ledger, submitter):
        uid = make_user(engine)
        make_claim(engine, uid, amount_atomic=None)
        result = submitter.submit(store.fetch_eligible(10))
        assert not result.submitted
        assert ledger.submitted == []

    def test_nonce_too_low_reallocates_and_shares_one_hash(self, engine, store, ledger, allocator, submitter):
        uid = make_user(engine)
        a = make_claim(engine, uid)
        b = make_claim(engine, uid, amount="5")
        ledger.pending_nonce = 4
        ledger.submit_errors = [NonceConflictError("nonce too low")]

        # the network moved on while we were building the call
        original_submit = ledger.submit

        def submit_with_race(call, nonce, gas_limit):
            if ledger.submit_errors:
                ledger.pending_nonce = 9
            return original_submit(call, nonce, gas_limit)

        ledger.submit = submit_with_race
        result = submitter.submit(store.fetch_eligible(10))

        assert result.submitted
        assert result.nonce == 9
        assert len(ledger.submitted) == 1
        assert allocator.in_flight_count == 1
        assert {c.id for c in result.claims} == {a, b}
        assert store.mark_completed(result.claims, result.tx_hash) == 2
        assert get_claim(engine, a).batch_transaction_hash == get_claim(engine, b).batch_transaction_hash == result.tx_hash

    def test_nonce_conflict_exhaustion_marks_failed(self, engine, store, ledger, allocator, submitter):
        uid = make_user(engine)
        cid = make_claim(engine, uid)
        ledger.submit_errors = [NonceConflictError("nonce too low")] * (NONCE_RETRY_LIMIT + 1)
        result = submitter.submit(store.fetch_eligible(10))

        assert not result.submitted
        assert result.error_kind == ErrorKind.NONCE_CONFLICT
        assert get_claim(engine, cid).status == ClaimStatus.FAILED.value
        assert allocator.in_flight_count == 0

    def test_insufficient_funds_restores_retry_count(self, engine, store, ledger, allocator, submitter):
        uid = make_user(engine)
        cid = make_claim(engine, uid, status=ClaimStatus.FAILED, retry_count=1, next_attempt_at=hours_ago(1))
        ledger.submit_errors = [InsufficientFundsError("insufficient funds for gas * price + value")]
        result = submitter.submit(store.fetch_eligible(10))

        claim = get_claim(engine, cid)
        assert result.error_kind == ErrorKind.FUNDS
        assert claim.status == ClaimStatus.FAILED.value
        assert claim.retry_count == 1
        assert "Insufficient funds" in claim.error_message
        assert allocator.in_flight_count == 0

    def test_insufficient_funds_at_estimate(self, engine, store, ledger, allocator, submitter):
        uid = make_user(engine)
        cid = make_claim(engine, uid)
        ledger.estimate_errors = [InsufficientFundsError("insufficient funds")]
        result = submitter.submit(store.fetch_eligible(10))
        assert result.error_kind == ErrorKind.FUNDS
        assert get_claim(engine, cid).retry_count == 0
        assert ledger.submitted == []

    def test_revert_at_estimation_fails_batch(self, engine, store, ledger, allocator, submitter):
        uid = make_user(engine)
        cid = make_claim(engine, uid)
        ledger.estimate_errors = [TransactionReverted("execution reverted: paused")]
        result = submitter.submit(store.fetch_eligible(10))

        claim = get_claim(engine, cid)
        assert result.error_kind == ErrorKind.REVERTED
        assert claim.status == ClaimStatus.FAILED.value
        assert "execution reverted" in claim.error_message
        assert allocator.in_flight_count == 0

    def test_stop_before_submission_touches_nothing(self, engine, store, ledger, allocator):
        uid = make_user(engine)
        cid = make_claim(engine, uid)
        stop = threading.Event()
        stop.set()
        result = BatchSubmitter(ledger, store, allocator, stop=stop).submit(store.fetch_eligible(10))
        assert result.error == "CYCLE_DEADLINE"
        assert get_claim(engine, cid).status == ClaimStatus.QUEUED.value


# =============================================================================
# CAPACITY
# =============================================================================

class TestCapacity:

    def test_submitted_recipients_never_exceed_recommended_size(self, engine, store):
        fee = 10 ** 9
        per_recipient = GAS_PER_RECIPIENT * fee * 12 // 10
        ledger = FakeLedger(balance=per_recipient * 5, fee=fee)
        allocator = NonceAllocator(ledger)
        guard = GasGuard(ledger)
        uid = make_user(engine)
        for _ in range(10):
            make_claim(engine, uid)

        recommended = guard.check_capacity(10).recommended_size
        result = BatchSubmitter(ledger, store, allocator, guard=guard).submit(store.fetch_eligible(10))

        assert recommended == 4
        assert len(ledger.submitted[0]["call"]) <= recommended
        assert len(result.claims) == recommended
        assert store.count_eligible() == 10 - recommended

    def test_unaffordable_batch_is_left_queued(self, engine, store):
        ledger = FakeLedger(balance=1, fee=10 ** 9)
        uid = make_user(engine)
        cid = make_claim(engine, uid)
        result = BatchSubmitter(ledger, store, NonceAllocator(ledger), guard=GasGuard(ledger)).submit(store.fetch_eligible(10))
        assert result.error == "INSUFFICIENT_GAS"
        assert ledger.submitted == []
        assert get_claim(engine, cid).status == ClaimStatus.QUEUED.value
