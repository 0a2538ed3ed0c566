"""
Tests for the lifecycle janitor passes.
"""
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from claim_settlement.models.claims import ClaimStatus
from claim_settlement.models.notification import NotificationOutbox
from claim_settlement.services.chain import BatchTransferCall, ChainTransaction, LedgerNetworkError
from claim_settlement.services.janitor import LifecycleJanitor

from conftest import ONE_TOKEN, WALLET_A, get_balance, get_claim, hours_ago, make_claim, make_user

TX = "0x" + "0b" * 32


@pytest.fixture
def janitor(engine, cfg):
    return LifecycleJanitor(engine, cfg)


@pytest.fixture
def chain_janitor(engine, cfg, ledger, allocator):
    return LifecycleJanitor(engine, cfg, ledger=ledger, allocator=allocator)


def stuck_with_hash(engine):
    uid = make_user(engine)
    return make_claim(engine, uid, status=ClaimStatus.PROCESSING, updated_at=hours_ago(2), batch_transaction_hash=TX)


def one_transfer():
    return BatchTransferCall(recipients=(WALLET_A,), amounts=(10 * ONE_TOKEN,))


class TestResetStuckProcessing:

    def test_old_processing_goes_back_to_queued(self, engine, janitor):
        uid = make_user(engine)
        cid = make_claim(engine, uid, status=ClaimStatus.PROCESSING, updated_at=hours_ago(2))
        assert janitor.reset_stuck_processing()["reset"] == 1
        claim = get_claim(engine, cid)
        assert claim.status == ClaimStatus.QUEUED.value
        assert claim.retry_count == 0
        assert "Reset from stuck PROCESSING state" in claim.error_message

    def test_recent_processing_is_left_alone(self, engine, janitor):
        uid = make_user(engine)
        cid = make_claim(engine, uid, status=ClaimStatus.PROCESSING, updated_at=hours_ago(0.25))
        assert janitor.reset_stuck_processing() == {"reset": 0, "completed": 0, "held": 0}
        assert get_claim(engine, cid).status == ClaimStatus.PROCESSING.value


class TestStuckClaimsWithBroadcastTx:

    def test_mined_transfer_completes_instead_of_requeueing(self, engine, ledger, allocator, chain_janitor):
        cid = stuck_with_hash(engine)
        nonce = allocator.allocate()
        allocator.attach(nonce, TX)
        ledger.add_transfer_block(3, one_transfer(), TX)

        assert chain_janitor.reset_stuck_processing() == {"reset": 0, "completed": 1, "held": 0}
        claim = get_claim(engine, cid)
        assert claim.status == ClaimStatus.COMPLETED.value
        assert claim.batch_transaction_hash == TX
        assert allocator.in_flight_count == 0
        with Session(engine) as session:
            assert session.execute(select(func.count(NotificationOutbox.id))).scalar_one() == 1

    def test_pending_transfer_is_held(self, engine, ledger, chain_janitor):
        cid = stuck_with_hash(engine)
        ledger.mempool[TX] = ChainTransaction(tx_hash=TX, sender=None, to=None, data="0x")

        assert chain_janitor.reset_stuck_processing()["held"] == 1
        assert get_claim(engine, cid).status == ClaimStatus.PROCESSING.value

    def test_unreachable_ledger_holds(self, engine, ledger, chain_janitor):
        cid = stuck_with_hash(engine)

        def down(tx_hash):
            raise LedgerNetworkError("rpc down")

        ledger.get_receipt = down
        assert chain_janitor.reset_stuck_processing()["held"] == 1
        assert get_claim(engine, cid).status == ClaimStatus.PROCESSING.value

    def test_without_ledger_broadcast_claims_are_held(self, engine, janitor):
        cid = stuck_with_hash(engine)
        assert janitor.reset_stuck_processing()["held"] == 1
        assert get_claim(engine, cid).status == ClaimStatus.PROCESSING.value

    def test_reverted_transfer_requeues(self, engine, ledger, chain_janitor):
        cid = stuck_with_hash(engine)
        ledger.add_transfer_block(3, one_transfer(), TX, status=0)

        assert chain_janitor.reset_stuck_processing()["reset"] == 1
        assert get_claim(engine, cid).status == ClaimStatus.QUEUED.value

    def test_dropped_transfer_requeues_and_frees_nonce(self, engine, allocator, chain_janitor):
        cid = stuck_with_hash(engine)
        nonce = allocator.allocate()
        allocator.attach(nonce, TX)

        assert chain_janitor.reset_stuck_processing()["reset"] == 1
        assert get_claim(engine, cid).status == ClaimStatus.QUEUED.value
        assert allocator.in_flight_count == 0


class TestQuarantine:

    @pytest.mark.parametrize("kw", [{"recipient": None}, {"recipient": ""}, {"amount_atomic": None}, {"amount_atomic": ""}])
    def test_structurally_invalid_queued_claims_fail(self, engine, janitor, cfg, kw):
        uid = make_user(engine)
        cid = make_claim(engine, uid, **kw)
        assert janitor.quarantine_invalid_queued() == 1
        claim = get_claim(engine, cid)
        assert claim.status == ClaimStatus.FAILED.value
        assert claim.retry_count == cfg.max_retry_count

    def test_valid_claims_untouched(self, engine, janitor):
        uid = make_user(engine)
        make_claim(engine, uid)
        assert janitor.quarantine_invalid_queued() == 0


class TestRefundExhausted:

    def test_refunds_exactly_once(self, engine, janitor):
        uid = make_user(engine, balance="50")
        cid = make_claim(engine, uid, status=ClaimStatus.FAILED, retry_count=3, amount="10")

        assert janitor.refund_exhausted() == 1
        assert janitor.refund_exhausted() == 0

        claim = get_claim(engine, cid)
        assert claim.refunded_at is not None
        assert claim.status == ClaimStatus.FAILED.value
        assert "Permanently failed after 3 retries" in claim.error_message
        assert get_balance(engine, uid) == Decimal("60")

    def test_claims_with_retries_left_are_not_refunded(self, engine, janitor):
        uid = make_user(engine, balance="50")
        make_claim(engine, uid, status=ClaimStatus.FAILED, retry_count=2)
        assert janitor.refund_exhausted() == 0
        assert get_balance(engine, uid) == Decimal("50")

    def test_quarantined_claim_is_refunded_in_same_run(self, engine, janitor):
        uid = make_user(engine, balance="0")
        make_claim(engine, uid, recipient=None, amount="7")
        summary = janitor.run_all()
        assert summary == {
            "reset_processing": 0,
            "completed_processing": 0,
            "held_processing": 0,
            "quarantined": 1,
            "refunded": 1,
        }
        assert get_balance(engine, uid) == Decimal("7")
