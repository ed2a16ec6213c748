"""
rate_model.py - Piecewise-linear rate curves

A RateModel maps a normalized risk factor (utilization, loan-to-value,
remaining duration) to a rate:

    rate = offset + slope1 * min(x, kink) + slope2 * max(0, x - kink)

The curve is continuous at the kink. Inputs above `max` are rejected rather
than extrapolated.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal

from .core import ParameterOutOfRange, ZERO
from .fixed_point import Number, to_fixed, mul, div


@dataclass(frozen=True, slots=True)
class RateModel:
    """
    Immutable piecewise-linear curve.

    Attributes:
        offset: Rate at x = 0.
        slope1: Rate increase per unit of x up to the kink.
        slope2: Rate increase per unit of x past the kink.
        kink: Input at which the slope changes.
        max: Largest accepted input.
    """
    offset: Decimal
    slope1: Decimal
    slope2: Decimal
    kink: Decimal
    max: Decimal

    def __post_init__(self):
        for name in ('offset', 'slope1', 'slope2', 'kink', 'max'):
            value = to_fixed(getattr(self, name))
            if value < 0:
                raise ValueError(f"RateModel {name} must be non-negative, got {value}")
            object.__setattr__(self, name, value)
        if self.kink > self.max:
            raise ValueError(f"RateModel kink {self.kink} exceeds max {self.max}")

    def evaluate(self, x: Number) -> Decimal:
        """Shorthand for evaluate(self, x)."""
        return evaluate(self, x)


def evaluate(model: RateModel, x: Number) -> Decimal:
    """
    Evaluate a rate model at x.

    Raises:
        ParameterOutOfRange: If x is negative or greater than model.max
    """
    x = to_fixed(x)
    if x < 0 or x > model.max:
        raise ParameterOutOfRange(f"Rate model input {x} outside [0, {model.max}]")
    if x <= model.kink:
        return model.offset + mul(model.slope1, x)
    return model.offset + mul(model.slope1, model.kink) + mul(model.slope2, x - model.kink)


def from_rates(
    min_rate: Number,
    kink_rate: Number,
    max_rate: Number,
    kink: Number,
    max: Number,
) -> RateModel:
    """
    Build a model from the rates it should produce at 0, at the kink and at max.

    Example:
        # 10% at zero utilization, 20% at 50%, 100% when fully utilized
        utilization_model = from_rates("0.10", "0.20", "1.00", "0.5", "1.0")
    """
    min_rate, kink_rate, max_rate = to_fixed(min_rate), to_fixed(kink_rate), to_fixed(max_rate)
    kink, max = to_fixed(kink), to_fixed(max)
    if kink_rate < min_rate or max_rate < kink_rate:
        raise ValueError("Rates must be non-decreasing: min_rate <= kink_rate <= max_rate")
    slope1 = div(kink_rate - min_rate, kink) if kink > 0 else ZERO
    slope2 = div(max_rate - kink_rate, max - kink) if max > kink else ZERO
    return RateModel(offset=min_rate, slope1=slope1, slope2=slope2, kink=kink, max=max)
