"""
loan_pricer.py - Risk-based loan pricing

Converts a loan's repayment into a present-value purchase price using a
discount rate built from three piecewise-linear rate components:

    utilization rate    global model, input = vault utilization
    loan-to-value rate  per collateral class, input = principal / collateral value
    duration rate       per collateral class, input = seconds remaining

    discount_rate  = (w0*r_util + w1*r_ltv + w2*r_duration) / 100
    purchase_price = repayment / (1 + discount_rate * duration_remaining)

Rates are per-second. Every step truncates (see fixed_point.py), so a quote
computed off-line with the same parameters matches the vault's to the last
digit.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Tuple

from .core import (
    DEFAULT_MINIMUM_LOAN_DURATION, ONE,
    InsufficientTimeRemaining, UnsupportedCollateral,
)
from .collateral_oracle import CollateralValueOracle
from .fixed_point import Number, to_fixed, div
from .rate_model import RateModel, evaluate

WEIGHT_TOTAL = 100


@dataclass(frozen=True, slots=True)
class CollateralRiskParameters:
    """
    Pricing parameters for one collateral class.

    Attributes:
        loan_to_value_model: Rate curve over principal / collateral value.
        duration_model: Rate curve over seconds remaining.
        weights: Integer percent weights for (utilization, loan-to-value,
                 duration) components; must sum to 100.
        enabled: Disabled parameters price nothing.
    """
    loan_to_value_model: RateModel
    duration_model: RateModel
    weights: Tuple[int, int, int]
    enabled: bool = True

    def __post_init__(self):
        weights = tuple(self.weights)
        if len(weights) != 3:
            raise ValueError(f"Expected 3 rate component weights, got {len(weights)}")
        if any(not isinstance(w, int) or w < 0 for w in weights):
            raise ValueError(f"Rate component weights must be non-negative integers, got {weights}")
        if sum(weights) != WEIGHT_TOTAL:
            raise ValueError(f"Rate component weights must sum to {WEIGHT_TOTAL}, got {sum(weights)}")
        object.__setattr__(self, 'weights', weights)


class LoanPricer:
    """
    Loan price oracle backed by piecewise-linear rate models.

    Parameters are replaced wholesale by an administrator; pricing is a pure
    read of whatever is current.

    Example:
        pricer = LoanPricer(
            collateral_oracle=StaticCollateralOracle({"PUNK": Decimal("100")}),
            utilization_model=from_rates(...),
        )
        pricer.set_collateral_parameters("PUNK", CollateralRiskParameters(...))
        price = pricer.price_loan("PUNK", principal, repayment, 30 * 86400, utilization)
    """

    def __init__(
        self,
        collateral_oracle: CollateralValueOracle,
        utilization_model: RateModel,
        minimum_loan_duration: int = DEFAULT_MINIMUM_LOAN_DURATION,
    ):
        """
        Create a pricer.

        Args:
            collateral_oracle: Source of collateral values
            utilization_model: Global rate curve over vault utilization
            minimum_loan_duration: Shortest remaining duration that can be priced (seconds)
        """
        if minimum_loan_duration <= 0:
            raise ValueError(f"minimum_loan_duration must be positive, got {minimum_loan_duration}")
        self.collateral_oracle = collateral_oracle
        self.utilization_model = utilization_model
        self.minimum_loan_duration = minimum_loan_duration
        self.parameters: Dict[str, CollateralRiskParameters] = {}

    # ========================================================================
    # ADMINISTRATION
    # ========================================================================

    def set_collateral_parameters(self, collateral_token: str, parameters: CollateralRiskParameters) -> None:
        """Create or replace the risk parameters of a collateral class."""
        self.parameters[collateral_token] = parameters

    def set_utilization_model(self, model: RateModel) -> None:
        self.utilization_model = model

    def set_minimum_loan_duration(self, duration: int) -> None:
        if duration <= 0:
            raise ValueError(f"minimum_loan_duration must be positive, got {duration}")
        self.minimum_loan_duration = duration

    def collateral_parameters(self, collateral_token: str) -> Optional[CollateralRiskParameters]:
        return self.parameters.get(collateral_token)

    # ========================================================================
    # PRICING
    # ========================================================================

    def discount_rate(
        self,
        collateral_token: str,
        principal: Number,
        duration_remaining: int,
        utilization: Number,
    ) -> Decimal:
        """
        Compute the per-second discount rate for a loan.

        Raises:
            InsufficientTimeRemaining: If duration_remaining is below the minimum
            UnsupportedCollateral: If the collateral has no enabled parameters or value
            ParameterOutOfRange: If a component input exceeds its model's max
        """
        if duration_remaining < self.minimum_loan_duration:
            raise InsufficientTimeRemaining(
                f"Loan has {duration_remaining}s remaining, minimum is {self.minimum_loan_duration}s"
            )

        parameters = self.parameters.get(collateral_token)
        if parameters is None or not parameters.enabled:
            raise UnsupportedCollateral(f"Unsupported collateral: {collateral_token}")

        collateral_value = self.collateral_oracle.collateral_value(collateral_token)
        if collateral_value <= 0:
            raise UnsupportedCollateral(f"Collateral {collateral_token} has no value")

        loan_to_value = div(to_fixed(principal), collateral_value)

        rates = (
            evaluate(self.utilization_model, utilization),
            evaluate(parameters.loan_to_value_model, loan_to_value),
            evaluate(parameters.duration_model, duration_remaining),
        )
        # Integer weights keep the weighted sum exact; one truncation at the end.
        weighted = sum((rate * weight for rate, weight in zip(rates, parameters.weights)), Decimal(0))
        return div(weighted, WEIGHT_TOTAL)

    def price_loan(
        self,
        collateral_token: str,
        principal: Number,
        repayment: Number,
        duration_remaining: int,
        utilization: Number,
    ) -> Decimal:
        """
        Compute the purchase price of a loan.

        Args:
            collateral_token: Collateral class of the loan
            principal: Amount lent
            repayment: Amount owed at maturity
            duration_remaining: Seconds until maturity
            utilization: Current vault utilization (0 to 1)

        Returns:
            repayment / (1 + discount_rate * duration_remaining), truncated
        """
        rate = self.discount_rate(collateral_token, principal, duration_remaining, utilization)
        return div(to_fixed(repayment), ONE + rate * duration_remaining)

    def __repr__(self):
        return f"LoanPricer({len(self.parameters)} collateral classes, min_duration={self.minimum_loan_duration}s)"
