"""
Bounded random variates for travel speeds, service and interarrival times.

Each variate draws from a numpy Generator. A minimum may be applied either
to the raw draw (before any transform) or to the final output.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

import numpy as np

from ..simulation.errors import ConfigurationError


class RandomVariate(ABC):
    """
    Abstract base class for real-valued random variates.

    Subclasses implement ``_raw()`` and, when the output is a transform of
    the raw draw, ``_transform()``.
    """

    def __init__(self, rng: Optional[np.random.Generator] = None):
        self.rng = rng or np.random.default_rng()
        self.minimum: Optional[float] = None
        self.enforce_raw: bool = False

    @abstractmethod
    def _raw(self) -> float:
        """Draw the untransformed sample."""

    def _transform(self, raw: float) -> float:
        return raw

    def set_minimum(self, value: Optional[float], enforce_raw: bool = False) -> None:
        """
        Bound samples from below.

        Args:
            value: Minimum value, or None to remove the bound
            enforce_raw: If True the bound applies to the raw draw,
                otherwise to the transformed output
        """
        self.minimum = None if value is None else float(value)
        self.enforce_raw = enforce_raw

    def tighten_minimum(self, value: float, enforce_raw: bool = False) -> None:
        """Raise the minimum to ``value`` unless it is already at least that."""
        if self.minimum is None or value > self.minimum:
            self.set_minimum(value, enforce_raw)

    def sample(self) -> float:
        raw = self._raw()
        if self.minimum is not None and self.enforce_raw:
            raw = max(raw, self.minimum)
        value = self._transform(raw)
        if self.minimum is not None and not self.enforce_raw:
            value = max(value, self.minimum)
        return float(value)

    def samples(self, n: int) -> np.ndarray:
        """Draw ``n`` samples."""
        return np.array([self.sample() for _ in range(n)])

    def bind(self, rng: np.random.Generator) -> "RandomVariate":
        """Switch to a different generator (used when sharing a run's stream)."""
        self.rng = rng
        return self


class GaussianRV(RandomVariate):
    """Normal distribution N(mean, sd)."""

    def __init__(
        self, mean: float, sd: float, rng: Optional[np.random.Generator] = None
    ):
        super().__init__(rng)
        if not sd > 0:
            raise ConfigurationError(f"standard deviation must be positive, got {sd}")
        self.mean = float(mean)
        self.sd = float(sd)

    def _raw(self) -> float:
        return self.rng.normal(self.mean, self.sd)

    def __repr__(self) -> str:
        return f"GaussianRV(mean={self.mean}, sd={self.sd}, min={self.minimum})"


class LogNormalRV(RandomVariate):
    """exp(N(mu, sigma)); the raw draw is the underlying normal sample."""

    def __init__(
        self, mu: float, sigma: float, rng: Optional[np.random.Generator] = None
    ):
        super().__init__(rng)
        if not sigma > 0:
            raise ConfigurationError(f"sigma must be positive, got {sigma}")
        self.mu = float(mu)
        self.sigma = float(sigma)

    def _raw(self) -> float:
        return self.rng.normal(self.mu, self.sigma)

    def _transform(self, raw: float) -> float:
        return float(np.exp(raw))

    def __repr__(self) -> str:
        return f"LogNormalRV(mu={self.mu}, sigma={self.sigma}, min={self.minimum})"


class ExponentialRV(RandomVariate):
    """Exponential distribution with the given mean."""

    def __init__(self, mean: float, rng: Optional[np.random.Generator] = None):
        super().__init__(rng)
        if not mean > 0:
            raise ConfigurationError(f"exponential mean must be positive, got {mean}")
        self.mean = float(mean)

    def _raw(self) -> float:
        return self.rng.exponential(self.mean)

    def __repr__(self) -> str:
        return f"ExponentialRV(mean={self.mean})"


class UniformRV(RandomVariate):
    """Uniform distribution on [low, high)."""

    def __init__(
        self, low: float, high: float, rng: Optional[np.random.Generator] = None
    ):
        super().__init__(rng)
        if low > high:
            raise ConfigurationError(f"uniform bounds out of order: {low} > {high}")
        self.low = float(low)
        self.high = float(high)

    def _raw(self) -> float:
        return self.rng.uniform(self.low, self.high)

    def __repr__(self) -> str:
        return f"UniformRV(low={self.low}, high={self.high})"


class ConstantRV(RandomVariate):
    """Always returns the same value; used for deterministic scenarios."""

    def __init__(self, value: float, rng: Optional[np.random.Generator] = None):
        super().__init__(rng)
        self.value = float(value)

    def _raw(self) -> float:
        return self.value

    def __repr__(self) -> str:
        return f"ConstantRV({self.value})"


class IntegerRV(ABC):
    """Abstract integer-valued variate (burst sizes, rider counts)."""

    def __init__(self, rng: Optional[np.random.Generator] = None):
        self.rng = rng or np.random.default_rng()

    @abstractmethod
    def sample(self) -> int:
        pass

    def bind(self, rng: np.random.Generator) -> "IntegerRV":
        self.rng = rng
        return self


class ConstantIntRV(IntegerRV):
    def __init__(self, value: int, rng: Optional[np.random.Generator] = None):
        super().__init__(rng)
        self.value = int(value)

    def sample(self) -> int:
        return self.value

    def __repr__(self) -> str:
        return f"ConstantIntRV({self.value})"


class UniformIntRV(IntegerRV):
    """Uniform integer on [low, high], both ends included."""

    def __init__(self, low: int, high: int, rng: Optional[np.random.Generator] = None):
        super().__init__(rng)
        if low > high:
            raise ConfigurationError(f"integer bounds out of order: {low} > {high}")
        self.low = int(low)
        self.high = int(high)

    def sample(self) -> int:
        return int(self.rng.integers(self.low, self.high, endpoint=True))

    def __repr__(self) -> str:
        return f"UniformIntRV(low={self.low}, high={self.high})"
