"""
loan.py - Purchased loans and the tranche waterfall

ARCHITECTURE (Pure Function Pattern):
=====================================

1. Loan: the vault's record of a purchased note (mutable; lives inside the
   vault aggregate and is only touched by the vault's command handlers).

2. PURE CALCULATION FUNCTIONS (calculate_*):
   - Take all inputs explicitly as parameters
   - No vault, no hidden state
   - Raise the economic precondition errors they are responsible for

Key Formulas:
    senior_return  = (price * senior_rate * duration) * senior_deposit / total_deposit
    junior_return  = repayment - price - senior_return
    junior_loss    = min(price, junior_deposit)
    senior_loss    = price - junior_loss
    senior_recover = min(proceeds, senior_entitlement)
    junior_recover = proceeds - senior_recover
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Tuple

from .core import Tranche, ZERO, SeniorReturnExceedsSpread, time_bucket, TIME_BUCKET_DURATION
from .fixed_point import mul, mul_div


# (senior, junior), indexed by Tranche.value
TrancheAmounts = Tuple[Decimal, Decimal]


@dataclass(slots=True)
class Loan:
    """
    A note purchased by the vault.

    Attributes:
        note_token: Note token (lending platform) the loan belongs to.
        loan_id: Loan identifier on that platform.
        collateral_token: Collateral class.
        collateral_token_id: Collateral item.
        purchase_price: Cash paid (capital at risk).
        repayment: Amount due at maturity.
        maturity: Maturity timestamp.
        tranche_returns: Scheduled (senior, junior) returns while performing;
                         (senior, junior) recovery entitlement once liquidated.
        active: False once fully resolved.
        liquidated: True once the loss waterfall has been applied.
        collateral_withdrawn: True once collateral was handed to a liquidator.
    """
    note_token: str
    loan_id: int
    collateral_token: str
    collateral_token_id: int
    purchase_price: Decimal
    repayment: Decimal
    maturity: int
    tranche_returns: TrancheAmounts
    active: bool = True
    liquidated: bool = False
    collateral_withdrawn: bool = False

    @property
    def key(self) -> Tuple[str, int]:
        return (self.note_token, self.loan_id)

    def maturity_bucket(self, bucket_duration: int = TIME_BUCKET_DURATION) -> int:
        return time_bucket(self.maturity, bucket_duration)

    def tranche_return(self, tranche: Tranche) -> Decimal:
        return self.tranche_returns[tranche.value]


def calculate_tranche_returns(
    purchase_price: Decimal,
    repayment: Decimal,
    senior_deposit_value: Decimal,
    junior_deposit_value: Decimal,
    senior_tranche_rate: Decimal,
    duration_remaining: int,
) -> TrancheAmounts:
    """
    Split a loan's interest between tranches.

    Senior earns simple interest at the administered rate on its pro-rata
    contribution to the purchase; junior takes the residual spread.

    Args:
        purchase_price: Price paid for the loan
        repayment: Amount due at maturity
        senior_deposit_value: Senior realized value before the purchase
        junior_deposit_value: Junior realized value before the purchase
        senior_tranche_rate: Per-second senior rate
        duration_remaining: Seconds until maturity

    Returns:
        (senior_return, junior_return)

    Raises:
        SeniorReturnExceedsSpread: If junior's return would be zero or negative
    """
    total_deposit_value = senior_deposit_value + junior_deposit_value
    if total_deposit_value > 0:
        # Full-price interest first, then the senior share of it.
        interest_at_senior_rate = mul(purchase_price, senior_tranche_rate * duration_remaining)
        senior_return = mul_div(interest_at_senior_rate, senior_deposit_value, total_deposit_value)
    else:
        senior_return = ZERO

    spread = repayment - purchase_price
    if senior_return >= spread:
        raise SeniorReturnExceedsSpread(
            f"Senior return {senior_return} leaves no spread for junior (spread {spread})"
        )
    return (senior_return, spread - senior_return)


def calculate_loss_allocation(purchase_price: Decimal, junior_deposit_value: Decimal) -> TrancheAmounts:
    """
    Allocate a default loss junior-first.

    Returns:
        (senior_loss, junior_loss)
    """
    junior_loss = min(purchase_price, max(junior_deposit_value, ZERO))
    return (purchase_price - junior_loss, junior_loss)


def calculate_recovery_entitlement(losses: TrancheAmounts, scheduled_returns: TrancheAmounts) -> TrancheAmounts:
    """Each tranche is owed back its loss plus the return it was scheduled to earn."""
    return (losses[0] + scheduled_returns[0], losses[1] + scheduled_returns[1])


def calculate_recovery_allocation(proceeds: Decimal, senior_entitlement: Decimal) -> TrancheAmounts:
    """
    Allocate liquidation proceeds senior-first.

    Junior receives everything past senior's entitlement, including any
    upside above the original purchase price.

    Returns:
        (senior_recovery, junior_recovery)
    """
    senior_recovery = min(proceeds, senior_entitlement)
    return (senior_recovery, proceeds - senior_recovery)
