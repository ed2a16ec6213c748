"""
commands.py - Command records for the vault's single entry point

Every mutation of vault state is expressed as one of these immutable
records and applied through Vault.execute(). Each applied command is logged
as a VaultTransaction, which is the vault's audit trail.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional, Tuple

from .core import Tranche, KEEPER_ACCOUNT


def _as_decimal(obj: Any, name: str) -> None:
    value = getattr(obj, name)
    if value is not None and not isinstance(value, Decimal):
        object.__setattr__(obj, name, Decimal(str(value)))


def _as_tranche(obj: Any) -> None:
    if not isinstance(obj.tranche, Tranche):
        object.__setattr__(obj, 'tranche', Tranche(obj.tranche))


# ============================================================================
# DEPOSITOR COMMANDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Deposit:
    """Deposit cash into a tranche in exchange for shares."""
    account: str
    tranche: Tranche
    amount: Decimal

    def __post_init__(self):
        _as_tranche(self)
        _as_decimal(self, 'amount')


@dataclass(frozen=True, slots=True)
class Redeem:
    """Burn shares and queue their realized value for withdrawal."""
    account: str
    tranche: Tranche
    shares: Decimal

    def __post_init__(self):
        _as_tranche(self)
        _as_decimal(self, 'shares')


@dataclass(frozen=True, slots=True)
class Withdraw:
    """Withdraw processed redemption cash. amount=None withdraws everything available."""
    account: str
    tranche: Tranche
    amount: Optional[Decimal] = None

    def __post_init__(self):
        _as_tranche(self)
        _as_decimal(self, 'amount')


# ============================================================================
# NOTE SALE COMMANDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class SellNote:
    """Sell a promissory note to the vault for cash."""
    account: str
    note_token: str
    loan_id: int
    offered_price: Decimal

    def __post_init__(self):
        _as_decimal(self, 'offered_price')


@dataclass(frozen=True, slots=True)
class SellNoteAndDeposit:
    """Sell a note to the vault and take payment as tranche shares."""
    account: str
    note_token: str
    loan_id: int
    offered_price: Decimal
    allocation: Tuple[Decimal, Decimal]

    def __post_init__(self):
        _as_decimal(self, 'offered_price')
        object.__setattr__(self, 'allocation', tuple(
            a if isinstance(a, Decimal) else Decimal(str(a)) for a in self.allocation
        ))


# ============================================================================
# LOAN LIFECYCLE COMMANDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class OnLoanRepaid:
    """Realize the returns of a loan the platform reports as repaid."""
    note_token: str
    loan_id: int
    account: str = KEEPER_ACCOUNT


@dataclass(frozen=True, slots=True)
class OnLoanLiquidated:
    """Apply the loss waterfall for a loan the platform reports as liquidated."""
    note_token: str
    loan_id: int
    account: str = KEEPER_ACCOUNT


@dataclass(frozen=True, slots=True)
class LiquidateLoan:
    """Foreclose an expired loan on its platform and apply the loss waterfall."""
    note_token: str
    loan_id: int
    account: str = KEEPER_ACCOUNT


@dataclass(frozen=True, slots=True)
class WithdrawCollateral:
    """Hand a liquidated loan's collateral to a collateral liquidator."""
    account: str
    note_token: str
    loan_id: int


@dataclass(frozen=True, slots=True)
class OnCollateralLiquidated:
    """Accept collateral sale proceeds and apply the recovery waterfall."""
    account: str
    note_token: str
    loan_id: int
    proceeds: Decimal

    def __post_init__(self):
        _as_decimal(self, 'proceeds')


# ============================================================================
# ADMINISTRATIVE COMMANDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class SetSeniorTrancheRate:
    """Set the annualized senior tranche rate."""
    account: str
    rate: Decimal

    def __post_init__(self):
        _as_decimal(self, 'rate')


@dataclass(frozen=True, slots=True)
class SetReserveRatio:
    """Set the fraction of cash held back from redemptions and purchases."""
    account: str
    ratio: Decimal

    def __post_init__(self):
        _as_decimal(self, 'ratio')


@dataclass(frozen=True, slots=True)
class SetPaused:
    account: str
    paused: bool


# ============================================================================
# AUDIT RECORD
# ============================================================================

@dataclass(frozen=True, slots=True)
class VaultTransaction:
    """
    Immutable record of an applied command.

    Attributes:
        sequence_number: Position in the vault's execution order.
        command: The command that was applied.
        timestamp: Vault time at execution.
        details: Computed outcome (shares minted, price paid, ...).
    """
    sequence_number: int
    command: Any
    timestamp: datetime
    details: Mapping[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        name = type(self.command).__name__
        detail = ", ".join(f"{k}={v}" for k, v in self.details.items())
        return f"VaultTransaction(#{self.sequence_number} {name} @ {self.timestamp.isoformat()}: {detail})"
