"""
Error taxonomy for HDX kinetics testing.
"""

from enum import Enum


class FailureReason(str, Enum):
    """Reason codes attached to a feature that could not be tested."""

    SINGULAR_JACOBIAN = "singular-jacobian"
    MAX_ITERATIONS = "max-iterations-exceeded"
    INSUFFICIENT_DATA = "insufficient-data"
    SOLVER_DIVERGENCE = "solver-divergence"
    INVALID_INPUT = "invalid-input"


class ConfigurationError(ValueError):
    """Raised for invalid formulas, starting values, or feature series."""


class ModerationError(RuntimeError):
    """
    Raised when empirical-Bayes moderation cannot be carried out for a batch.

    Unmoderated testing (``moderation=None``) is the only fallback.
    """

    def __init__(self, message: str):
        super().__init__(
            f"{message}; variance moderation is unavailable for this batch, "
            "use unmoderated testing instead"
        )
