"""Random variates and travel delay models."""

from .delay import MIN_SPEED, DelayEntry, DelayModel, DelayTable, ScheduledDelayTable
from .variates import (
    ConstantIntRV,
    ConstantRV,
    ExponentialRV,
    GaussianRV,
    IntegerRV,
    LogNormalRV,
    RandomVariate,
    UniformIntRV,
    UniformRV,
)

__all__ = [
    # Variates
    "RandomVariate",
    "GaussianRV",
    "LogNormalRV",
    "ExponentialRV",
    "UniformRV",
    "ConstantRV",
    "IntegerRV",
    "ConstantIntRV",
    "UniformIntRV",
    # Delays
    "DelayModel",
    "DelayEntry",
    "DelayTable",
    "ScheduledDelayTable",
    "MIN_SPEED",
]
