"""
Tests for the signer balance / gas guard.
"""
from claim_settlement.services.gas_guard import GAS_PER_RECIPIENT, GasGuard

from conftest import FakeLedger

FEE = 10 ** 9
PER_RECIPIENT = GAS_PER_RECIPIENT * FEE * 12 // 10


class TestCheckCapacity:

    def test_covered_batch_is_unchanged(self):
        guard = GasGuard(FakeLedger(balance=PER_RECIPIENT * 100, fee=FEE))
        check = guard.check_capacity(50)
        assert check.affordable is True
        assert check.recommended_size == 50
        assert check.estimated_cost_wei == PER_RECIPIENT * 50

    def test_shrinks_to_eighty_percent_of_balance(self):
        # full cost of 50 recipients needs 50 * PER_RECIPIENT; we have 10
        guard = GasGuard(FakeLedger(balance=PER_RECIPIENT * 10, fee=FEE))
        check = guard.check_capacity(50)
        assert check.affordable is True
        assert check.recommended_size == 8

    def test_at_least_one_when_one_is_affordable(self):
        guard = GasGuard(FakeLedger(balance=PER_RECIPIENT * 2, fee=FEE))
        check = guard.check_capacity(50)
        assert check.recommended_size == 1

    def test_not_affordable_when_one_recipient_exceeds_budget(self):
        guard = GasGuard(FakeLedger(balance=PER_RECIPIENT // 2, fee=FEE))
        check = guard.check_capacity(50)
        assert check.affordable is False
        assert check.recommended_size == 0
        assert check.reason == "INSUFFICIENT_GAS"

    def test_unknown_fee_assumes_affordable(self):
        guard = GasGuard(FakeLedger(balance=0, fee=None))
        check = guard.check_capacity(25)
        assert check.affordable is True
        assert check.recommended_size == 25
        assert check.fee_per_gas_wei is None

    def test_committed_gas_reduces_available_balance(self):
        ledger = FakeLedger(balance=PER_RECIPIENT * 60, fee=FEE)
        guard = GasGuard(ledger)
        assert guard.check_capacity(50).recommended_size == 50
        guard.commit(GAS_PER_RECIPIENT * 50)
        check = guard.check_capacity(50)
        assert check.available_wei == PER_RECIPIENT * 60 - GAS_PER_RECIPIENT * 50 * FEE
        assert check.recommended_size < 50

    def test_zero_desired(self):
        guard = GasGuard(FakeLedger())
        check = guard.check_capacity(0)
        assert check.affordable is True
        assert check.recommended_size == 0
