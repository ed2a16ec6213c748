"""
Core types and constants for the tranched lending vault.

This module provides the foundational pieces every other module builds on:
1. Decimal context configuration (deterministic arithmetic)
2. Constants: time bucketing, proration horizon, administrative defaults
3. Enums: Tranche, UpkeepAction
4. Exceptions: VaultError and the domain-specific error taxonomy
5. Protocols: collaborators the vault consumes only through an interface
   (deposit asset, note adapter, collateral custody, loan price oracle,
   access policy)
6. LoanInfo: the normalized, immutable view of an external loan
7. Time helpers: logical clock to integer seconds, time buckets

Nothing in this module mutates vault state.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_EVEN, getcontext
from enum import Enum
from typing import Protocol, runtime_checkable


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# The vault requires deterministic Decimal arithmetic so that quotes can be
# reproduced off-line. The global context is configured once at import time.
# Fixed-point multiply/divide (fixed_point.py) runs under a wider local
# context and truncates explicitly, so this context only governs plain
# addition and subtraction of 18-digit amounts.
#
_VAULT_DECIMAL_CONTEXT = getcontext()
_VAULT_DECIMAL_CONTEXT.prec = 50
_VAULT_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

ZERO = Decimal("0")
ONE = Decimal("1")

ONE_DAY = 86400
SECONDS_PER_YEAR = 365 * ONE_DAY

# Width of a time bucket. Scheduled tranche returns are recorded in the
# bucket containing the loan's maturity.
TIME_BUCKET_DURATION = 7 * ONE_DAY

# Number of buckets over which pending returns are prorated into share price.
SHARE_PRICE_PRORATION_BUCKETS = 6

# Administrative defaults (annualized rate, fraction of cash held back).
DEFAULT_SENIOR_TRANCHE_RATE = Decimal("0.05")
DEFAULT_RESERVE_RATIO = Decimal("0.10")

# Loans with less time than this remaining are not priced.
DEFAULT_MINIMUM_LOAN_DURATION = 7 * ONE_DAY

# Caller recorded for lifecycle callbacks that anyone may trigger.
KEEPER_ACCOUNT = "keeper"

# Logical clock origin. Timestamps are whole seconds since this instant.
EPOCH = datetime(1970, 1, 1)


# ============================================================================
# ENUMS
# ============================================================================

class Tranche(Enum):
    """
    Risk-prioritized slice of pooled capital.

    SENIOR: capped, prioritized return; absorbs losses only past junior capacity.
    JUNIOR: residual return; first-loss absorber.

    The value doubles as the index into per-loan (senior, junior) tuples.
    """
    SENIOR = 0
    JUNIOR = 1


# Drain and waterfall order
TRANCHES = (Tranche.SENIOR, Tranche.JUNIOR)


class UpkeepAction(Enum):
    """
    Lifecycle work discovered by the keeper for a purchased loan.

    REPAID: borrower repaid on the lending platform; realize returns.
    LIQUIDATED: platform liquidated the loan; apply the loss waterfall.
    EXPIRED: loan is past maturity and unresolved; liquidate it.
    """
    REPAID = 0
    LIQUIDATED = 1
    EXPIRED = 2


# ============================================================================
# EXCEPTIONS
# ============================================================================

class VaultError(Exception):
    """Base exception for all vault errors. A raised VaultError never leaves partial state."""
    pass


# Input validation

class ParameterOutOfRange(VaultError):
    """Raised when a model input or administrative parameter is outside its declared bounds."""
    pass


class InvalidAmount(VaultError):
    """Raised when an amount is non-positive or exceeds what is available."""
    pass


class InvalidAllocation(VaultError):
    """Raised when a tranche allocation does not sum to exactly one."""
    pass


# Pricing

class InsufficientTimeRemaining(VaultError):
    """Raised when a loan has less time remaining than the pricer's minimum."""
    pass


class UnsupportedCollateral(VaultError):
    """Raised when collateral risk parameters or a collateral value are missing or disabled."""
    pass


# Purchase economics

class PriceMismatch(VaultError):
    """Raised when the offered price disagrees with the freshly computed purchase price."""
    pass


class RepaymentTooLow(VaultError):
    """Raised when the loan repayment does not exceed the purchase price."""
    pass


class InsufficientLiquidity(VaultError):
    """Raised when distributable cash cannot cover the purchase price."""
    pass


class SeniorReturnExceedsSpread(VaultError):
    """Raised when the senior return would leave junior a non-positive spread."""
    pass


# Loan state

class UnsupportedNoteToken(VaultError):
    """Raised when no note adapter is registered for a note token."""
    pass


class NoteNotOwned(VaultError):
    """Raised when the seller does not hold the note being sold."""
    pass


class LoanAlreadyPurchased(VaultError):
    """Raised when the vault already holds an active loan for the note."""
    pass


class UnknownLoan(VaultError):
    """Raised when a loan is not held by the vault or has already been resolved."""
    pass


class LoanAlreadyLiquidated(UnknownLoan):
    """Raised when a default is reported twice for the same loan."""
    pass


class LoanNotRepaid(VaultError):
    """Raised when the note adapter does not corroborate a repayment."""
    pass


class LoanNotLiquidated(VaultError):
    """Raised when the note adapter does not corroborate a liquidation."""
    pass


class LoanLiquidated(VaultError):
    """Raised when a repayment is reported for a loan already in default."""
    pass


class LoanNotExpired(VaultError):
    """Raised when liquidation is requested for a loan that is not past maturity."""
    pass


class CollateralNotLiquidated(VaultError):
    """Raised when collateral is withdrawn or sold for a loan that is not in default."""
    pass


class CollateralAlreadyWithdrawn(VaultError):
    """Raised when collateral for a liquidated loan was already handed to a liquidator."""
    pass


# Tranche and redemption state

class InsufficientShares(VaultError):
    """Raised when a depositor redeems more shares than they hold."""
    pass


class RedemptionInProgress(VaultError):
    """Raised when a depositor already has an outstanding redemption in the tranche."""
    pass


class TrancheInsolvent(VaultError):
    """Raised when depositing into or redeeming from a tranche whose value was wiped out."""
    pass


# Operational

class Unauthorized(VaultError):
    """Raised when the caller lacks the role an operation requires."""
    pass


class VaultPaused(VaultError):
    """Raised when a paused operation is attempted."""
    pass


class ReentrantCall(VaultError):
    """Raised when a collaborator calls back into the vault while a command is executing."""
    pass


class TransferFailed(VaultError):
    """Raised by asset collaborators when a transfer cannot be completed."""
    pass


# ============================================================================
# LOAN INFO
# ============================================================================

@dataclass(frozen=True, slots=True)
class LoanInfo:
    """
    Normalized terms of an external loan, as reported by a note adapter.

    Attributes:
        loan_id: Identifier of the loan on its lending platform.
        borrower: Borrower account.
        principal: Amount lent.
        repayment: Amount owed at maturity.
        maturity: Maturity timestamp (whole seconds since EPOCH).
        duration: Total loan duration in seconds.
        collateral_token: Collateral class (used to look up risk parameters).
        collateral_token_id: Identifier of the specific collateral item.
    """
    loan_id: int
    borrower: str
    principal: Decimal
    repayment: Decimal
    maturity: int
    duration: int
    collateral_token: str
    collateral_token_id: int

    def __post_init__(self):
        if not isinstance(self.principal, Decimal):
            object.__setattr__(self, 'principal', Decimal(str(self.principal)))
        if not isinstance(self.repayment, Decimal):
            object.__setattr__(self, 'repayment', Decimal(str(self.repayment)))
        if self.principal <= 0:
            raise ValueError(f"Loan principal must be positive, got {self.principal}")
        if self.repayment < 0:
            raise ValueError(f"Loan repayment must be non-negative, got {self.repayment}")
        if self.duration <= 0:
            raise ValueError(f"Loan duration must be positive, got {self.duration}")
        if not self.collateral_token:
            raise ValueError("Loan collateral_token cannot be empty")

    @property
    def start(self) -> int:
        """Origination timestamp."""
        return self.maturity - self.duration


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class DepositAsset(Protocol):
    """
    Fungible asset the vault takes deposits in and pays out.

    The vault pulls with transfer(account, vault, amount) and pushes with
    transfer(vault, account, amount). A transfer either completes or raises
    TransferFailed; partial transfers never happen.
    """

    def balance_of(self, account: str) -> Decimal:
        """Return the account's balance."""
        ...

    def transfer(self, source: str, dest: str, amount: Decimal) -> None:
        """Move amount from source to dest, or raise TransferFailed."""
        ...


@runtime_checkable
class NoteAdapter(Protocol):
    """
    Normalizes a lending platform's promissory notes for the vault.

    Predicates are treated as ground truth at call time; the vault never
    accepts a repayment or liquidation claim the adapter does not confirm.
    """

    def get_loan_info(self, loan_id: int) -> LoanInfo:
        """Return normalized loan terms."""
        ...

    def is_repaid(self, loan_id: int) -> bool:
        ...

    def is_liquidated(self, loan_id: int) -> bool:
        ...

    def is_expired(self, loan_id: int, timestamp: int) -> bool:
        """Return True if the loan is unresolved and past maturity at timestamp."""
        ...

    def owner_of(self, loan_id: int) -> str:
        """Return the current holder of the note."""
        ...

    def transfer_note(self, loan_id: int, source: str, dest: str) -> None:
        """Transfer custody of the note, or raise NoteNotOwned."""
        ...

    def liquidate(self, loan_id: int, timestamp: int) -> None:
        """Foreclose an expired loan; collateral goes to the note holder."""
        ...


@runtime_checkable
class CollateralCustody(Protocol):
    """Transfers non-fungible collateral items between accounts."""

    def transfer_collateral(
        self,
        collateral_token: str,
        collateral_token_id: int,
        source: str,
        dest: str,
    ) -> None:
        ...


@runtime_checkable
class LoanPriceOracle(Protocol):
    """
    Quotes a purchase price for a loan.

    Implementations are pure reads of their current parameters and raise
    InsufficientTimeRemaining, UnsupportedCollateral or ParameterOutOfRange
    when a loan cannot be priced.
    """

    def price_loan(
        self,
        collateral_token: str,
        principal: Decimal,
        repayment: Decimal,
        duration_remaining: int,
        utilization: Decimal,
    ) -> Decimal:
        ...


@runtime_checkable
class AccessPolicy(Protocol):
    """Capability check decoupled from the accounting logic."""

    def has_role(self, role: str, account: str) -> bool:
        ...

    def require_role(self, role: str, account: str) -> None:
        """Raise Unauthorized if account lacks role."""
        ...


# ============================================================================
# TIME HELPERS
# ============================================================================

def to_timestamp(moment: datetime) -> int:
    """Convert a naive UTC datetime to whole seconds since EPOCH."""
    return (moment - EPOCH) // timedelta(seconds=1)


def from_timestamp(timestamp: int) -> datetime:
    """Inverse of to_timestamp."""
    return EPOCH + timedelta(seconds=timestamp)


def time_bucket(timestamp: int, bucket_duration: int = TIME_BUCKET_DURATION) -> int:
    """Return the index of the bucket containing timestamp."""
    return timestamp // bucket_duration
