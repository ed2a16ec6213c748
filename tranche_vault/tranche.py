"""
tranche.py - Tranche ledger, share token and redemption queue

Per-tranche accounting:

1. TrancheState: realized deposit value, redemption queue counters and the
   sparse map of pending returns keyed by time bucket.
2. ShareToken: share balances plus one DepositorRedemption per depositor.
3. Pure calculation functions (compute_*) for estimated value, share
   prices and a depositor's withdrawable amount.

REDEMPTION QUEUE:
=================
Each tranche keeps two monotonically increasing counters:

    redemption_queue            total amount ever queued for redemption
    processed_redemption_queue  total amount released to the withdrawal balance

A depositor redeeming `amount` when the queue total becomes T owns the queue
range (T - amount, T]. Their money is available as the processed counter
sweeps through that range, so earlier requests always fill first.

PRORATION:
==========
Pending returns scheduled in the K buckets starting at the current bucket
are credited to estimated value in proportion to elapsed time over a K-bucket
window. A return in bucket current+i has accrued

    (now - current*W) + W*(K-1-i)

seconds out of K*W. The fraction rises linearly and reaches one at the end
of the maturity bucket.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Dict

from .core import (
    Tranche, ZERO, ONE,
    TIME_BUCKET_DURATION, SHARE_PRICE_PRORATION_BUCKETS,
    InsufficientShares, RedemptionInProgress, InvalidAmount,
    time_bucket,
)
from .fixed_point import mul, div


# ============================================================================
# STATE
# ============================================================================

@dataclass(slots=True)
class DepositorRedemption:
    """
    One depositor's outstanding redemption in a tranche.

    Attributes:
        pending: Amount owed by the redemption.
        withdrawn: Amount already withdrawn (never exceeds pending).
        redemption_queue_target: Queue total right after this request was queued.
    """
    pending: Decimal = ZERO
    withdrawn: Decimal = ZERO
    redemption_queue_target: Decimal = ZERO

    @property
    def outstanding(self) -> bool:
        return self.pending > 0


@dataclass(slots=True)
class TrancheState:
    """
    Mutable accounting state of one tranche.

    Attributes:
        deposit_value: Realized value held for the tranche, including amounts
                       queued for redemption but not yet processed.
        redemption_queue: Total amount ever queued for redemption.
        processed_redemption_queue: Total amount moved to the withdrawal balance.
        pending_returns: Time bucket -> scheduled, unrealized returns.
    """
    deposit_value: Decimal = ZERO
    redemption_queue: Decimal = ZERO
    processed_redemption_queue: Decimal = ZERO
    pending_returns: Dict[int, Decimal] = field(default_factory=dict)

    @property
    def pending_redemptions(self) -> Decimal:
        return self.redemption_queue - self.processed_redemption_queue

    def schedule_return(self, bucket: int, amount: Decimal) -> None:
        """Add amount to the returns expected in bucket."""
        if amount == 0:
            return
        self.pending_returns[bucket] = self.pending_returns.get(bucket, ZERO) + amount

    def unschedule_return(self, bucket: int, amount: Decimal) -> None:
        """Remove amount from bucket, evicting the bucket once it is empty."""
        if amount == 0:
            return
        remaining = self.pending_returns.get(bucket, ZERO) - amount
        if remaining < 0:
            raise ValueError(f"Unscheduling {amount} from bucket {bucket} leaves {remaining}")
        if remaining == 0:
            del self.pending_returns[bucket]
        else:
            self.pending_returns[bucket] = remaining

    def total_pending_returns(self) -> Decimal:
        return sum(self.pending_returns.values(), ZERO)


class ShareToken:
    """
    Share balances and redemption records for one tranche.

    Shares are burned when a redemption is requested; the owed amount is
    then tracked in the depositor's DepositorRedemption until withdrawn.
    """

    def __init__(self, tranche: Tranche):
        self.tranche = tranche
        self.balances: Dict[str, Decimal] = {}
        self.total_supply: Decimal = ZERO
        self.redemptions: Dict[str, DepositorRedemption] = {}

    def balance_of(self, account: str) -> Decimal:
        return self.balances.get(account, ZERO)

    def redemption(self, account: str) -> DepositorRedemption:
        """Return a copy of the account's redemption record (empty if none)."""
        record = self.redemptions.get(account)
        return replace(record) if record else DepositorRedemption()

    def mint(self, account: str, shares: Decimal) -> None:
        if shares < 0:
            raise InvalidAmount(f"Cannot mint negative shares: {shares}")
        self.balances[account] = self.balance_of(account) + shares
        self.total_supply += shares

    def redeem(self, account: str, shares: Decimal, amount: Decimal, redemption_queue_target: Decimal) -> None:
        """
        Burn shares and record the redemption they pay for.

        Raises:
            InsufficientShares: If account holds fewer than shares
            RedemptionInProgress: If account already has an outstanding redemption
        """
        balance = self.balance_of(account)
        if balance < shares:
            raise InsufficientShares(f"Insufficient shares: {account} holds {balance}, redeeming {shares}")
        if account in self.redemptions:
            raise RedemptionInProgress(f"Redemption in progress for {account} in {self.tranche.name}")

        remaining = balance - shares
        if remaining == 0:
            del self.balances[account]
        else:
            self.balances[account] = remaining
        self.total_supply -= shares
        self.redemptions[account] = DepositorRedemption(
            pending=amount,
            withdrawn=ZERO,
            redemption_queue_target=redemption_queue_target,
        )

    def redemption_available(self, account: str, processed_redemption_queue: Decimal) -> Decimal:
        record = self.redemptions.get(account)
        if record is None:
            return ZERO
        return compute_redemption_available(record, processed_redemption_queue)

    def withdraw(self, account: str, amount: Decimal) -> None:
        """
        Record a withdrawal against the account's redemption.

        The caller has already checked amount against redemption_available().
        The record is cleared once fully withdrawn, allowing a new redemption.
        """
        record = self.redemptions[account]
        record.withdrawn += amount
        if record.withdrawn == record.pending:
            del self.redemptions[account]

    def __repr__(self):
        return (f"ShareToken({self.tranche.name}, supply={self.total_supply}, "
                f"holders={len(self.balances)}, redemptions={len(self.redemptions)})")


# ============================================================================
# PURE CALCULATIONS
# ============================================================================

def compute_prorated_returns(
    pending_returns: Dict[int, Decimal],
    timestamp: int,
    bucket_duration: int = TIME_BUCKET_DURATION,
    proration_buckets: int = SHARE_PRICE_PRORATION_BUCKETS,
) -> Decimal:
    """
    Sum pending returns accrued as of timestamp.

    Buckets before the current one no longer contribute; buckets further out
    than the proration horizon do not contribute yet.
    """
    current_bucket = time_bucket(timestamp, bucket_duration)
    elapsed_in_bucket = timestamp - current_bucket * bucket_duration
    window = proration_buckets * bucket_duration

    prorated = ZERO
    for i in range(proration_buckets):
        pending = pending_returns.get(current_bucket + i)
        if not pending:
            continue
        elapsed = elapsed_in_bucket + bucket_duration * (proration_buckets - 1 - i)
        prorated += div(mul(elapsed, pending), window)
    return prorated


def compute_estimated_value(
    state: TrancheState,
    timestamp: int,
    bucket_duration: int = TIME_BUCKET_DURATION,
    proration_buckets: int = SHARE_PRICE_PRORATION_BUCKETS,
) -> Decimal:
    """
    Value attributable to current shareholders, including accrued pending returns.

    Amounts queued for redemption belong to redeemers, not shareholders, and
    are excluded. Floored at zero when losses exceed the tranche's value.
    """
    realized = state.deposit_value - state.pending_redemptions
    value = realized + compute_prorated_returns(
        state.pending_returns, timestamp, bucket_duration, proration_buckets
    )
    return max(value, ZERO)


def compute_share_price(value: Decimal, total_supply: Decimal) -> Decimal:
    """Value per share, defined as one when no shares exist."""
    if total_supply == 0:
        return ONE
    return div(value, total_supply)


def compute_redemption_share_price(state: TrancheState, total_supply: Decimal) -> Decimal:
    """Share price from realized value only; used to fix the amount a redemption is owed."""
    realized = max(state.deposit_value - state.pending_redemptions, ZERO)
    return compute_share_price(realized, total_supply)


def compute_redemption_available(record: DepositorRedemption, processed_redemption_queue: Decimal) -> Decimal:
    """
    Amount of a redemption that may be withdrawn now.

    The depositor's queue range is (target - pending, target]; the processed
    counter's progress through that range, less prior withdrawals, is available.
    """
    if record.pending == 0:
        return ZERO
    range_start = record.redemption_queue_target - record.pending
    processed = min(max(processed_redemption_queue - range_start, ZERO), record.pending)
    return processed - record.withdrawn
