"""
Exception taxonomy of the inflow generators.

Configuration and numerical errors are raised during initialisation or before
any face receives a fluctuation for the current step. Parallel consistency
errors indicate that processes disagree on a collective quantity.
"""


class TurbInletError(Exception):
    """Base class for all fatal errors raised by turbinlet."""


class ConfigurationError(TurbInletError, ValueError):
    """Invalid or missing parameter; the message names the offending field."""


class NumericalError(TurbInletError, ArithmeticError):
    """Invalid numerical input, e.g. a Reynolds stress that is not positive semi-definite."""


class ParallelConsistencyError(TurbInletError, RuntimeError):
    """Processes disagree on a global quantity or a communication step failed."""
