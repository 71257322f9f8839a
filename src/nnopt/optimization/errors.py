"""Exception types raised by the optimization engine."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Invalid optimizer setup: missing collaborator, bad threshold or strategy name."""


class NumericalDivergenceError(RuntimeError):
    """Parameters or gradient norm reached its error threshold during training."""
