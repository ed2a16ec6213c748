"""
lifecycle_engine.py - Vault Keeper

Polls the vault's loans and issues the lifecycle commands nobody else will:
realizing repaid loans, processing platform liquidations, and liquidating
expired loans.

Execution order each step():
1. Advance vault time
2. check_upkeep(): scan active loans maturing in the current or previous
   time bucket
3. perform_upkeep(): execute the resulting commands
4. Repeat until no more tasks are found

The vault's transaction log is the audit trail - the keeper keeps no state
about loans of its own.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from .core import UpkeepAction, KEEPER_ACCOUNT, time_bucket
from .commands import OnLoanRepaid, OnLoanLiquidated, LiquidateLoan, VaultTransaction
from .vault import Vault


@dataclass(frozen=True, slots=True)
class UpkeepTask:
    """One lifecycle command the keeper has found work for."""
    action: UpkeepAction
    note_token: str
    loan_id: int


class VaultKeeper:
    """
    Keeper for a single vault.

    Example:
        keeper = VaultKeeper(vault)
        keeper.step(datetime(2024, 2, 1))
    """

    def __init__(self, vault: Vault, note_tokens: Optional[Iterable[str]] = None, account: str = KEEPER_ACCOUNT):
        """
        Initialize keeper.

        Args:
            vault: The vault to service
            note_tokens: Note tokens to scan (default: every token with a registered adapter)
            account: Account the keeper's commands are issued from
        """
        self.vault = vault
        self.note_tokens: List[str] = list(note_tokens) if note_tokens is not None else []
        self.account = account

        # Configuration
        self.max_passes = 10  # Safety limit for cascading upkeep
        self.verbose = vault.verbose

    def register(self, note_token: str) -> None:
        """Add a note token to the scan set."""
        if note_token not in self.note_tokens:
            self.note_tokens.append(note_token)

    def _scanned_note_tokens(self) -> List[str]:
        if self.note_tokens:
            return list(self.note_tokens)
        return sorted(self.vault.note_adapters)

    def check_upkeep(self) -> List[UpkeepTask]:
        """
        Find loans that need a lifecycle command.

        Only loans maturing in the current or previous time bucket are
        scanned. A loan is reported at most once per scan.
        """
        width = self.vault.config.time_bucket_duration
        now = self.vault.timestamp
        current_bucket = time_bucket(now, width)
        buckets = {current_bucket, current_bucket - 1}

        tasks: List[UpkeepTask] = []
        for note_token in self._scanned_note_tokens():
            adapter = self.vault.note_adapters.get(note_token)
            if adapter is None:
                continue
            for loan in self.vault.active_loans(note_token):
                if loan.maturity_bucket(width) not in buckets:
                    continue
                if adapter.is_repaid(loan.loan_id):
                    action = UpkeepAction.REPAID
                elif adapter.is_liquidated(loan.loan_id):
                    if loan.liquidated:
                        continue
                    action = UpkeepAction.LIQUIDATED
                elif adapter.is_expired(loan.loan_id, now) and not loan.liquidated:
                    action = UpkeepAction.EXPIRED
                else:
                    continue
                tasks.append(UpkeepTask(action, note_token, loan.loan_id))
        return tasks

    def perform_upkeep(self, tasks: Iterable[UpkeepTask]) -> List[VaultTransaction]:
        """Execute the command for each task. A failing command propagates."""
        executed: List[VaultTransaction] = []
        for task in tasks:
            if self.verbose:
                print(f"[KEEPER] {task.action.name} {task.note_token}#{task.loan_id}")
            if task.action == UpkeepAction.REPAID:
                command = OnLoanRepaid(task.note_token, task.loan_id, account=self.account)
            elif task.action == UpkeepAction.LIQUIDATED:
                command = OnLoanLiquidated(task.note_token, task.loan_id, account=self.account)
            else:
                command = LiquidateLoan(task.note_token, task.loan_id, account=self.account)
            executed.append(self.vault.execute(command))
        return executed

    def step(self, timestamp: datetime) -> List[VaultTransaction]:
        """
        Advance time and perform all upkeep due.

        Args:
            timestamp: New vault time

        Returns:
            List of executed transactions
        """
        self.vault.advance_time(timestamp)
        executed: List[VaultTransaction] = []

        for _ in range(self.max_passes):
            tasks = self.check_upkeep()
            if not tasks:
                break
            executed.extend(self.perform_upkeep(tasks))

        return executed

    def run(self, timestamps: Iterable[datetime]) -> List[VaultTransaction]:
        """Step through a sequence of timestamps and return every executed transaction."""
        all_transactions: List[VaultTransaction] = []
        for timestamp in timestamps:
            all_transactions.extend(self.step(timestamp))
        return all_transactions
