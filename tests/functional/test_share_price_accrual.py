"""
test_share_price_accrual.py - Share price over a loan's life

Pending returns accrue into the share price linearly over the proration
window, and repayment realizes them in full.
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from tranche_vault import Tranche

from tests.vault_helpers import purchase_loan, ALICE, NOTE_TOKEN, LOAN_DURATION


class TestAccrual:

    @pytest.fixture
    def loan_id(self, funded_vault, platform, oracle):
        return purchase_loan(funded_vault, platform, oracle, Decimal("2"), Decimal("2.2"))

    @pytest.mark.parametrize("tranche", [Tranche.SENIOR, Tranche.JUNIOR])
    def test_share_price_never_falls_before_maturity(self, funded_vault, loan_id, tranche):
        start = funded_vault.current_time
        prices = []
        for day in range(31):
            funded_vault.advance_time(start + timedelta(days=day))
            prices.append(funded_vault.share_price(tranche))
        assert prices == sorted(prices)
        assert prices[0] >= Decimal("1")

    def test_accrued_value_bounded_by_scheduled_returns(self, funded_vault, loan_id):
        funded_vault.advance_time(funded_vault.current_time + timedelta(seconds=LOAN_DURATION))
        junior = funded_vault.estimated_value(Tranche.JUNIOR)
        assert Decimal("5") < junior < Decimal("5.194520547945856")

    def test_repayment_realizes_full_return(self, funded_vault, platform, loan_id):
        funded_vault.advance_time(funded_vault.current_time + timedelta(seconds=LOAN_DURATION))
        accrued = funded_vault.share_price(Tranche.JUNIOR)

        platform.repay(loan_id, funded_vault.timestamp)
        funded_vault.on_loan_repaid(NOTE_TOKEN, loan_id)

        realized = funded_vault.share_price(Tranche.JUNIOR)
        assert realized == Decimal("1.0389041095891712")
        assert realized > accrued

    def test_redemption_price_ignores_accrual(self, funded_vault, loan_id):
        funded_vault.advance_time(funded_vault.current_time + timedelta(days=20))
        assert funded_vault.share_price(Tranche.JUNIOR) > Decimal("1")
        assert funded_vault.redemption_share_price(Tranche.JUNIOR) == Decimal("1")

    def test_unrepaid_returns_stop_counting_after_maturity_bucket(self, funded_vault, loan_id):
        """Once the maturity bucket has passed, an unresolved loan's returns no longer lift the price."""
        funded_vault.advance_time(funded_vault.current_time + timedelta(seconds=LOAN_DURATION, weeks=2))
        assert funded_vault.share_price(Tranche.JUNIOR) == Decimal("1")
        assert funded_vault.tranche_state(Tranche.JUNIOR).pending_returns != {}


class TestUtilization:

    def test_utilization_tracks_loans(self, funded_vault, platform, oracle):
        assert funded_vault.utilization() == Decimal("0")
        purchase_loan(funded_vault, platform, oracle, Decimal("3"), Decimal("3.3"))
        assert funded_vault.utilization() == Decimal("0.2")

    def test_utilization_excludes_withdrawal_balance(self, funded_vault, platform, oracle):
        purchase_loan(funded_vault, platform, oracle, Decimal("3"), Decimal("3.3"))
        funded_vault.redeem(ALICE, Tranche.SENIOR, Decimal("6"))
        # cash 12 - withdrawal 6 + loans 3
        assert funded_vault.utilization() == Decimal("0.333333333333333333")

    def test_empty_vault(self, vault):
        assert vault.utilization() == Decimal("0")
