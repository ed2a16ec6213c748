"""
test_priced_purchases.py - Note purchases priced by the risk-based LoanPricer

The other vault tests quote through a fixed-price oracle. Here the vault is
wired to a LoanPricer, so the utilization it reports feeds the discount
rate, every purchase is re-quoted from the vault's own state, and a quote
taken before another purchase moved utilization no longer matches.
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from tranche_vault import (
    Tranche, LoanPricer, CollateralRiskParameters, StaticCollateralOracle, RateModel,
    PriceMismatch, UnsupportedCollateral,
    from_rates, normalize_rate, ONE_DAY,
)

from tests.vault_helpers import (
    originate_loan, assert_invariants,
    ADMIN, LENDER, NOTE_TOKEN, COLLATERAL, LOAN_DURATION,
)


def flat(rate, max_input) -> RateModel:
    return RateModel(offset=rate, slope1=0, slope2=0, kink=max_input, max=max_input)


def risk_parameters(enabled=True) -> CollateralRiskParameters:
    return CollateralRiskParameters(
        loan_to_value_model=flat(normalize_rate("0.30"), Decimal("0.6")),
        duration_model=flat(normalize_rate("0.25"), Decimal(365 * ONE_DAY)),
        weights=(50, 25, 25),
        enabled=enabled,
    )


@pytest.fixture
def pricer():
    pricer = LoanPricer(
        StaticCollateralOracle({COLLATERAL: Decimal("100")}, currency="WETH"),
        from_rates(normalize_rate("0.10"), normalize_rate("0.20"), normalize_rate("1.00"), "0.8", "1"),
    )
    pricer.set_collateral_parameters(COLLATERAL, risk_parameters())
    return pricer


@pytest.fixture
def priced_vault(funded_vault, pricer):
    """Senior 10 and junior 5, priced by the LoanPricer."""
    funded_vault.set_loan_price_oracle(ADMIN, pricer)
    return funded_vault


def quote(vault, pricer, principal, repayment):
    return pricer.price_loan(COLLATERAL, principal, repayment, LOAN_DURATION, vault.utilization())


class TestPricedPurchase:

    def test_purchase_at_quoted_price(self, priced_vault, pricer, platform):
        loan_id = originate_loan(priced_vault, platform, principal=Decimal("5"), repayment=Decimal("5.5"))
        price = quote(priced_vault, pricer, Decimal("5"), Decimal("5.5"))
        assert Decimal("5") < price < Decimal("5.5")

        tx = priced_vault.sell_note(LENDER, NOTE_TOKEN, loan_id, price)

        assert tx.details['purchase_price'] == price
        assert priced_vault.balance_state().total_loan_balance == price
        assert priced_vault.utilization() > 0
        assert_invariants(priced_vault)

    def test_utilization_raises_the_discount(self, priced_vault, pricer, platform):
        idle_price = quote(priced_vault, pricer, Decimal("3"), Decimal("3.3"))

        loan_id = originate_loan(priced_vault, platform, principal=Decimal("5"), repayment=Decimal("5.5"))
        priced_vault.sell_note(LENDER, NOTE_TOKEN, loan_id, quote(priced_vault, pricer, Decimal("5"), Decimal("5.5")))

        assert quote(priced_vault, pricer, Decimal("3"), Decimal("3.3")) < idle_price

    def test_stale_quote_rejected_after_utilization_moves(self, priced_vault, pricer, platform):
        later = originate_loan(priced_vault, platform, principal=Decimal("3"), repayment=Decimal("3.3"))
        stale = quote(priced_vault, pricer, Decimal("3"), Decimal("3.3"))

        first = originate_loan(priced_vault, platform, principal=Decimal("5"), repayment=Decimal("5.5"))
        priced_vault.sell_note(LENDER, NOTE_TOKEN, first, quote(priced_vault, pricer, Decimal("5"), Decimal("5.5")))
        log_length = len(priced_vault.transaction_log)

        with pytest.raises(PriceMismatch):
            priced_vault.sell_note(LENDER, NOTE_TOKEN, later, stale)
        assert len(priced_vault.transaction_log) == log_length
        assert platform.owner_of(later) == LENDER

        fresh = quote(priced_vault, pricer, Decimal("3"), Decimal("3.3"))
        tx = priced_vault.sell_note(LENDER, NOTE_TOKEN, later, fresh)
        assert tx.details['purchase_price'] == fresh
        assert_invariants(priced_vault)

    def test_disabled_collateral_cannot_be_sold(self, priced_vault, pricer, platform):
        pricer.set_collateral_parameters(COLLATERAL, risk_parameters(enabled=False))
        loan_id = originate_loan(priced_vault, platform, principal=Decimal("5"), repayment=Decimal("5.5"))
        with pytest.raises(UnsupportedCollateral):
            priced_vault.sell_note(LENDER, NOTE_TOKEN, loan_id, Decimal("5"))


class TestPricedRepayment:

    def test_repaid_loan_realizes_discount(self, priced_vault, pricer, platform):
        loan_id = originate_loan(priced_vault, platform, principal=Decimal("5"), repayment=Decimal("5.5"))
        price = quote(priced_vault, pricer, Decimal("5"), Decimal("5.5"))
        tx = priced_vault.sell_note(LENDER, NOTE_TOKEN, loan_id, price)
        senior_return = tx.details['senior_return']
        junior_return = tx.details['junior_return']
        assert senior_return + junior_return == Decimal("5.5") - price

        priced_vault.advance_time(priced_vault.current_time + timedelta(seconds=LOAN_DURATION))
        platform.repay(loan_id, priced_vault.timestamp)
        priced_vault.on_loan_repaid(NOTE_TOKEN, loan_id)

        assert priced_vault.tranche_state(Tranche.SENIOR).deposit_value == Decimal("10") + senior_return
        assert priced_vault.tranche_state(Tranche.JUNIOR).deposit_value == Decimal("5") + junior_return
        assert priced_vault.balance_state().total_cash_balance == Decimal("20.5") - price
        assert priced_vault.utilization() == 0
        assert_invariants(priced_vault)
