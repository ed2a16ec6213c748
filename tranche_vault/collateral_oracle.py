"""
collateral_oracle.py - Collateral valuation for loan pricing

Provides the value of a collateral class, used as the denominator of a
loan's loan-to-value ratio.

Classes:
- CollateralValueOracle: Protocol defining the valuation interface
- StaticCollateralOracle: Administrator-maintained static values

All values are denominated in the vault's deposit asset.
"""

from decimal import Decimal
from typing import Dict, Protocol, runtime_checkable

from .core import UnsupportedCollateral
from .fixed_point import Number, to_fixed


@runtime_checkable
class CollateralValueOracle(Protocol):
    """
    Protocol for collateral valuation.

    Implementations raise UnsupportedCollateral for collateral they cannot value.
    """

    def collateral_value(self, collateral_token: str) -> Decimal:
        """Get the value of one item of a collateral class."""
        ...


class StaticCollateralOracle:
    """
    Collateral oracle with static, administrator-set values.

    Values stay constant until replaced with set_collateral_value().
    """

    def __init__(self, values: Dict[str, Number] = None, currency: str = "USD"):
        """
        Initialize with a static value map.

        Args:
            values: Dictionary mapping collateral classes to values
            currency: The asset values are quoted in
        """
        self.currency = currency
        self.values: Dict[str, Decimal] = {}
        for token, value in (values or {}).items():
            self.set_collateral_value(token, value)

    def collateral_value(self, collateral_token: str) -> Decimal:
        value = self.values.get(collateral_token)
        if value is None:
            raise UnsupportedCollateral(f"Unsupported collateral: {collateral_token}")
        return value

    def set_collateral_value(self, collateral_token: str, value: Number) -> None:
        """Set or replace the value of a collateral class."""
        value = to_fixed(value)
        if value <= 0:
            raise ValueError(f"Collateral value must be positive, got {value}")
        self.values[collateral_token] = value

    def remove_collateral(self, collateral_token: str) -> None:
        """Stop valuing a collateral class."""
        self.values.pop(collateral_token, None)

    def __repr__(self):
        return f"StaticCollateralOracle({len(self.values)} values, currency={self.currency})"
