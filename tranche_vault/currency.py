"""
currency.py - In-memory deposit asset

A minimal fungible-asset ledger implementing the DepositAsset protocol.
Transfers are all-or-nothing: a transfer that would overdraw the source
raises TransferFailed and changes nothing.
"""

from decimal import Decimal
from typing import Dict

from .core import ZERO, TransferFailed
from .fixed_point import Number, to_fixed


class InMemoryCurrency:
    """
    Account balances for one asset.

    Example:
        weth = InMemoryCurrency("WETH")
        weth.mint("alice", Decimal("100"))
        weth.transfer("alice", "vault", Decimal("10"))
    """

    def __init__(self, symbol: str = "USD"):
        self.symbol = symbol
        self.balances: Dict[str, Decimal] = {}
        self.total_supply: Decimal = ZERO

    def balance_of(self, account: str) -> Decimal:
        return self.balances.get(account, ZERO)

    def mint(self, account: str, amount: Number) -> None:
        """Issue new units to an account."""
        amount = to_fixed(amount)
        if amount < 0:
            raise ValueError(f"Cannot mint negative amount: {amount}")
        self.balances[account] = self.balance_of(account) + amount
        self.total_supply += amount

    def transfer(self, source: str, dest: str, amount: Number) -> None:
        """
        Move amount from source to dest.

        Raises:
            TransferFailed: If amount is negative or exceeds the source balance
        """
        amount = to_fixed(amount)
        if amount < 0:
            raise TransferFailed(f"Cannot transfer negative amount: {amount}")
        if amount == 0 or source == dest:
            return
        balance = self.balance_of(source)
        if balance < amount:
            raise TransferFailed(
                f"Insufficient {self.symbol} balance: {source} has {balance}, needs {amount}"
            )
        self.balances[source] = balance - amount
        self.balances[dest] = self.balance_of(dest) + amount

    def __repr__(self):
        return f"InMemoryCurrency({self.symbol}, supply={self.total_supply}, accounts={len(self.balances)})"
