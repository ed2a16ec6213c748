"""
lending_platform.py - Simulated collateralized lending platform

A self-contained peer-to-peer lending platform used to originate the notes
the vault buys:

- Borrowers escrow a collateral item and receive principal from a lender.
- The lender receives a promissory note for the loan; whoever holds the note
  is paid the repayment, or receives the collateral on foreclosure.
- Collateral items are tracked as non-fungible (collateral_token, token_id)
  pairs.

The platform implements the NoteAdapter protocol for its own notes and the
CollateralCustody protocol for collateral items, so a vault can be wired to
it directly.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Tuple

from .core import (
    DepositAsset, LoanInfo,
    VaultError, TransferFailed, NoteNotOwned, LoanNotExpired,
)
from .fixed_point import Number, to_fixed


LOAN_STATUS_ACTIVE = "ACTIVE"
LOAN_STATUS_REPAID = "REPAID"
LOAN_STATUS_LIQUIDATED = "LIQUIDATED"


class PlatformError(VaultError):
    """Raised when a platform operation is not allowed in the loan's current state."""
    pass


@dataclass(slots=True)
class PlatformLoan:
    """Loan as recorded by the platform."""
    loan_id: int
    borrower: str
    principal: Decimal
    repayment: Decimal
    start: int
    duration: int
    collateral_token: str
    collateral_token_id: int
    status: str = LOAN_STATUS_ACTIVE

    @property
    def maturity(self) -> int:
        return self.start + self.duration


class SimulatedLendingPlatform:
    """
    Lending platform with note and collateral custody.

    Example:
        platform = SimulatedLendingPlatform(currency)
        platform.mint_collateral("PUNK", 1, "borrower")
        loan_id = platform.lend("borrower", "lender", Decimal("2"), Decimal("2.2"),
                                30 * 86400, "PUNK", 1, timestamp=now)
        vault.sell_note("lender", platform.note_token, loan_id, Decimal("2"))
    """

    def __init__(self, currency: DepositAsset, note_token: str = "lending-platform-note"):
        """
        Create a platform.

        Args:
            currency: Asset loans are denominated in
            note_token: Name of the note token (also the platform's escrow account)
        """
        self.currency = currency
        self.note_token = note_token
        self.loans: Dict[int, PlatformLoan] = {}
        self.note_owners: Dict[int, str] = {}
        self.collateral_owners: Dict[Tuple[str, int], str] = {}
        self._next_loan_id = 1

    # ========================================================================
    # COLLATERAL CUSTODY
    # ========================================================================

    def mint_collateral(self, collateral_token: str, collateral_token_id: int, owner: str) -> None:
        key = (collateral_token, collateral_token_id)
        if key in self.collateral_owners:
            raise ValueError(f"Collateral {collateral_token}#{collateral_token_id} already exists")
        self.collateral_owners[key] = owner

    def collateral_owner(self, collateral_token: str, collateral_token_id: int) -> str:
        return self.collateral_owners.get((collateral_token, collateral_token_id), "")

    def transfer_collateral(self, collateral_token: str, collateral_token_id: int, source: str, dest: str) -> None:
        key = (collateral_token, collateral_token_id)
        if self.collateral_owners.get(key) != source:
            raise TransferFailed(f"{source} does not own collateral {collateral_token}#{collateral_token_id}")
        self.collateral_owners[key] = dest

    # ========================================================================
    # LOAN ORIGINATION AND SERVICING
    # ========================================================================

    def lend(
        self,
        borrower: str,
        lender: str,
        principal: Number,
        repayment: Number,
        duration: int,
        collateral_token: str,
        collateral_token_id: int,
        timestamp: int,
    ) -> int:
        """
        Originate a loan: escrow collateral, pay principal to the borrower,
        and issue the note to the lender.

        Returns:
            The new loan's id
        """
        principal, repayment = to_fixed(principal), to_fixed(repayment)
        if principal <= 0 or repayment < principal:
            raise PlatformError(f"Invalid loan amounts: principal={principal}, repayment={repayment}")
        if duration <= 0:
            raise PlatformError(f"Invalid loan duration: {duration}")

        self.transfer_collateral(collateral_token, collateral_token_id, borrower, self.note_token)
        self.currency.transfer(lender, borrower, principal)

        loan_id = self._next_loan_id
        self._next_loan_id += 1
        self.loans[loan_id] = PlatformLoan(
            loan_id=loan_id,
            borrower=borrower,
            principal=principal,
            repayment=repayment,
            start=timestamp,
            duration=duration,
            collateral_token=collateral_token,
            collateral_token_id=collateral_token_id,
        )
        self.note_owners[loan_id] = lender
        return loan_id

    def repay(self, loan_id: int, timestamp: int) -> None:
        """Borrower pays the note holder and recovers the collateral."""
        loan = self._loan(loan_id)
        if loan.status != LOAN_STATUS_ACTIVE:
            raise PlatformError(f"Loan {loan_id} is {loan.status}")
        if timestamp > loan.maturity:
            raise PlatformError(f"Loan {loan_id} expired at {loan.maturity}")
        self.currency.transfer(loan.borrower, self.note_owners[loan_id], loan.repayment)
        self.transfer_collateral(loan.collateral_token, loan.collateral_token_id, self.note_token, loan.borrower)
        loan.status = LOAN_STATUS_REPAID

    def liquidate(self, loan_id: int, timestamp: int) -> None:
        """Foreclose an expired loan; the collateral goes to the note holder."""
        if not self.is_expired(loan_id, timestamp):
            raise LoanNotExpired(f"Loan {loan_id} cannot be liquidated at {timestamp}")
        loan = self.loans[loan_id]
        self.transfer_collateral(
            loan.collateral_token, loan.collateral_token_id, self.note_token, self.note_owners[loan_id]
        )
        loan.status = LOAN_STATUS_LIQUIDATED

    def _loan(self, loan_id: int) -> PlatformLoan:
        loan = self.loans.get(loan_id)
        if loan is None:
            raise PlatformError(f"Unknown loan {loan_id}")
        return loan

    # ========================================================================
    # NoteAdapter PROTOCOL IMPLEMENTATION
    # ========================================================================

    def get_loan_info(self, loan_id: int) -> LoanInfo:
        loan = self._loan(loan_id)
        return LoanInfo(
            loan_id=loan.loan_id,
            borrower=loan.borrower,
            principal=loan.principal,
            repayment=loan.repayment,
            maturity=loan.maturity,
            duration=loan.duration,
            collateral_token=loan.collateral_token,
            collateral_token_id=loan.collateral_token_id,
        )

    def is_repaid(self, loan_id: int) -> bool:
        loan = self.loans.get(loan_id)
        return loan is not None and loan.status == LOAN_STATUS_REPAID

    def is_liquidated(self, loan_id: int) -> bool:
        loan = self.loans.get(loan_id)
        return loan is not None and loan.status == LOAN_STATUS_LIQUIDATED

    def is_expired(self, loan_id: int, timestamp: int) -> bool:
        loan = self.loans.get(loan_id)
        return loan is not None and loan.status == LOAN_STATUS_ACTIVE and timestamp > loan.maturity

    def owner_of(self, loan_id: int) -> str:
        return self.note_owners.get(loan_id, "")

    def transfer_note(self, loan_id: int, source: str, dest: str) -> None:
        if self.note_owners.get(loan_id) != source:
            raise NoteNotOwned(f"{source} does not hold note {self.note_token}#{loan_id}")
        self.note_owners[loan_id] = dest

    def __repr__(self):
        return f"SimulatedLendingPlatform({self.note_token}, loans={len(self.loans)})"
