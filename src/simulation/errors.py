"""
Exception types raised by the bike-share simulation engine.

Configuration problems are reported before a run starts; invariant
violations indicate an engine defect and abort the run.
"""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Invalid entity parameters or unresolved references at setup time."""


class InvariantViolation(RuntimeError):
    """Internal state became numerically invalid during a run."""
