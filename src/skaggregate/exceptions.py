"""Exceptions raised by skaggregate.

Every class derives from a builtin exception so that code catching
``ValueError``, ``ArithmeticError`` or ``RuntimeError`` keeps working.
"""


class SkAggregateError(Exception):
    """Base class of all skaggregate errors."""


class ConfigurationError(SkAggregateError, ValueError):
    """Invalid estimator configuration (kind, hyperparameter domain, grid)."""


class UnknownModelKind(ConfigurationError):
    """The requested aggregation model is not supported."""


class UnknownLossKind(ConfigurationError):
    """The requested loss is not supported."""


class InvalidCalibrationGrid(ConfigurationError):
    """Empty calibration grid or candidate outside the hyperparameter domain."""


class DimensionMismatch(SkAggregateError, ValueError):
    """Expert row width or matrix/sequence lengths are inconsistent."""


class NumericDegeneracy(SkAggregateError, ArithmeticError):
    """A numerical operation has no well-defined result."""


class DivisionByZeroLoss(NumericDegeneracy):
    """Percentage loss evaluated at an observation equal to zero."""


class SingularMatrix(NumericDegeneracy):
    """Second-moment matrix cannot be inverted."""


class InfeasibleOracle(SkAggregateError, RuntimeError):
    """The oracle problem has no solution or the solver failed."""


class OracleDimensionMismatch(InfeasibleOracle, DimensionMismatch):
    """Expert matrix and observation sequence cannot be aligned."""


class OracleCancelled(InfeasibleOracle):
    """The oracle computation was cancelled before completion."""
