"""
test_redemption_queue.py - FIFO redemption queue scenarios

Redemptions are queued per tranche and paid in request order as cash
arrives. Senior redemptions drain before junior ones, and a tranche never
draws more than its own value.
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from tranche_vault import Tranche, TrancheInsolvent

from tests.vault_helpers import (
    purchase_loan, originate_loan, cycle_loan_default, assert_invariants,
    ALICE, BOB, CAROL, LENDER, NOTE_TOKEN, LOAN_DURATION,
)


@pytest.fixture
def illiquid_vault(vault, platform, oracle):
    """
    Senior: ALICE 5, CAROL 5. Junior: BOB 5.
    A loan bought at 13 (repaying 14) leaves 2 in cash.
    """
    vault.deposit(ALICE, Tranche.SENIOR, Decimal("5"))
    vault.deposit(CAROL, Tranche.SENIOR, Decimal("5"))
    vault.deposit(BOB, Tranche.JUNIOR, Decimal("5"))
    purchase_loan(vault, platform, oracle, Decimal("13"), Decimal("14"))
    return vault


class TestFifoQueue:

    def test_partial_processing(self, illiquid_vault):
        illiquid_vault.redeem(ALICE, Tranche.SENIOR, Decimal("5"))
        state = illiquid_vault.tranche_state(Tranche.SENIOR)
        assert state.redemption_queue == Decimal("5")
        assert state.processed_redemption_queue == Decimal("2")
        assert illiquid_vault.redemption_available(Tranche.SENIOR, ALICE) == Decimal("2")

    def test_later_request_waits_behind_earlier(self, illiquid_vault):
        illiquid_vault.redeem(ALICE, Tranche.SENIOR, Decimal("5"))
        illiquid_vault.redeem(CAROL, Tranche.SENIOR, Decimal("5"))

        state = illiquid_vault.tranche_state(Tranche.SENIOR)
        assert state.redemption_queue == Decimal("10")
        assert state.processed_redemption_queue == Decimal("2")
        assert illiquid_vault.redemption_available(Tranche.SENIOR, ALICE) == Decimal("2")
        assert illiquid_vault.redemption_available(Tranche.SENIOR, CAROL) == Decimal("0")
        assert illiquid_vault.redemption(Tranche.SENIOR, CAROL).redemption_queue_target == Decimal("10")

    def test_repayment_drains_queue(self, illiquid_vault, platform):
        illiquid_vault.redeem(ALICE, Tranche.SENIOR, Decimal("5"))
        illiquid_vault.redeem(CAROL, Tranche.SENIOR, Decimal("5"))

        [loan] = illiquid_vault.active_loans()
        platform.repay(loan.loan_id, illiquid_vault.timestamp)
        illiquid_vault.on_loan_repaid(NOTE_TOKEN, loan.loan_id)

        assert illiquid_vault.tranche_state(Tranche.SENIOR).processed_redemption_queue == Decimal("10")
        assert illiquid_vault.redemption_available(Tranche.SENIOR, ALICE) == Decimal("5")
        assert illiquid_vault.redemption_available(Tranche.SENIOR, CAROL) == Decimal("5")
        assert_invariants(illiquid_vault)

    def test_early_redeemer_withdraws_while_queue_waits(self, illiquid_vault, currency):
        illiquid_vault.redeem(ALICE, Tranche.SENIOR, Decimal("5"))
        illiquid_vault.withdraw(ALICE, Tranche.SENIOR)
        assert currency.balance_of(ALICE) == Decimal("997")
        assert illiquid_vault.redemption(Tranche.SENIOR, ALICE).withdrawn == Decimal("2")
        assert illiquid_vault.redemption_available(Tranche.SENIOR, ALICE) == Decimal("0")
        assert_invariants(illiquid_vault)

    def test_deposit_funds_waiting_redemptions(self, illiquid_vault):
        illiquid_vault.redeem(ALICE, Tranche.SENIOR, Decimal("5"))
        illiquid_vault.deposit(CAROL, Tranche.SENIOR, Decimal("1"))
        assert illiquid_vault.redemption_available(Tranche.SENIOR, ALICE) == Decimal("3")

    def test_request_order_not_account_order(self, illiquid_vault):
        illiquid_vault.redeem(CAROL, Tranche.SENIOR, Decimal("5"))
        illiquid_vault.redeem(ALICE, Tranche.SENIOR, Decimal("5"))
        assert illiquid_vault.redemption_available(Tranche.SENIOR, CAROL) == Decimal("2")
        assert illiquid_vault.redemption_available(Tranche.SENIOR, ALICE) == Decimal("0")


class TestTranchePriority:

    def test_senior_drains_before_junior(self, illiquid_vault):
        illiquid_vault.redeem(ALICE, Tranche.SENIOR, Decimal("5"))
        illiquid_vault.redeem(BOB, Tranche.JUNIOR, Decimal("5"))
        assert illiquid_vault.redemption_available(Tranche.JUNIOR, BOB) == Decimal("0")

        # 4 of new cash: senior's remaining 3 first, then 1 to junior.
        illiquid_vault.deposit(CAROL, Tranche.SENIOR, Decimal("4"))
        assert illiquid_vault.redemption_available(Tranche.SENIOR, ALICE) == Decimal("5")
        assert illiquid_vault.redemption_available(Tranche.JUNIOR, BOB) == Decimal("1")
        assert_invariants(illiquid_vault)

    def test_junior_drains_when_senior_queue_empty(self, illiquid_vault):
        illiquid_vault.redeem(BOB, Tranche.JUNIOR, Decimal("5"))
        assert illiquid_vault.redemption_available(Tranche.JUNIOR, BOB) == Decimal("2")


class TestImpairedTranche:

    def test_wiped_out_tranche_cannot_redeem(self, funded_vault, platform, oracle):
        cycle_loan_default(funded_vault, platform, oracle, Decimal("7"), Decimal("7.7"))
        with pytest.raises(TrancheInsolvent):
            funded_vault.redeem(BOB, Tranche.JUNIOR, Decimal("5"))

    def test_redemption_after_partial_loss_is_priced_at_loss(self, funded_vault, platform, oracle):
        cycle_loan_default(funded_vault, platform, oracle, Decimal("2"), Decimal("2.2"))
        tx = funded_vault.redeem(BOB, Tranche.JUNIOR, Decimal("5"))
        assert tx.details['amount'] == Decimal("3")
        assert funded_vault.redemption_available(Tranche.JUNIOR, BOB) == Decimal("3")
        assert_invariants(funded_vault)

    def test_partially_processed_redemption_stays_queued(self, illiquid_vault):
        """The unprocessed part of a redemption remains queued against the tranche."""
        illiquid_vault.redeem(BOB, Tranche.JUNIOR, Decimal("5"))
        state = illiquid_vault.tranche_state(Tranche.JUNIOR)
        assert state.pending_redemptions == Decimal("3")
        assert illiquid_vault.redemption(Tranche.JUNIOR, BOB).pending == Decimal("5")

    def test_deposit_cannot_cover_shortfall_owed_to_redeemers(self, funded_vault, platform, oracle):
        """A tranche owing redeemers more than it holds takes no deposits, even with no shares left."""
        defaulted = purchase_loan(funded_vault, platform, oracle, Decimal("2"), Decimal("2.2"))
        purchase_loan(funded_vault, platform, oracle, Decimal("11"), Decimal("12"))
        funded_vault.redeem(BOB, Tranche.JUNIOR, Decimal("5"))
        funded_vault.advance_time(funded_vault.current_time + timedelta(seconds=LOAN_DURATION + 1))
        funded_vault.liquidate_loan(NOTE_TOKEN, defaulted)

        state = funded_vault.tranche_state(Tranche.JUNIOR)
        assert state.deposit_value == Decimal("1")
        assert state.pending_redemptions == Decimal("3")
        assert funded_vault.total_shares(Tranche.JUNIOR) == Decimal("0")

        with pytest.raises(TrancheInsolvent):
            funded_vault.deposit(CAROL, Tranche.JUNIOR, Decimal("10"))

        oracle.price = Decimal("1")
        loan_id = originate_loan(funded_vault, platform, principal=Decimal("1"), repayment=Decimal("1.1"))
        with pytest.raises(TrancheInsolvent):
            funded_vault.sell_note_and_deposit(
                LENDER, NOTE_TOKEN, loan_id, Decimal("1"), (Decimal("0"), Decimal("1"))
            )
        assert funded_vault.share_balance(Tranche.JUNIOR, CAROL) == Decimal("0")
        assert_invariants(funded_vault)

    def test_fully_redeemed_tranche_without_shortfall_accepts_deposits(self, illiquid_vault):
        illiquid_vault.redeem(BOB, Tranche.JUNIOR, Decimal("5"))
        assert illiquid_vault.total_shares(Tranche.JUNIOR) == Decimal("0")

        tx = illiquid_vault.deposit(CAROL, Tranche.JUNIOR, Decimal("1"))

        assert tx.details['shares'] == Decimal("1")
        assert illiquid_vault.redemption_available(Tranche.JUNIOR, BOB) == Decimal("3")
        assert_invariants(illiquid_vault)
