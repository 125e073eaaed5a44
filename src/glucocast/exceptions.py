"""
Exception types raised by glucocast.

Only ConfigurationError, BusyError and DataFetchError reach callers.
The remaining types are raised and handled inside the package.
"""


class GlucocastError(Exception):
    """Base class for all glucocast errors."""


class ConfigurationError(GlucocastError):
    """No history source is attached or a setting is unusable."""


class BusyError(GlucocastError):
    """A parameter recalculation is already running."""


class DataFetchError(GlucocastError):
    """The history source failed to return readings or treatments."""


class InsufficientDataError(GlucocastError):
    """Too few qualifying events; the caller falls back to a rule of thumb."""


class NumericGuardError(GlucocastError):
    """A curve evaluation or division produced a non-finite value."""


class CalculationCancelledError(GlucocastError):
    """A recalculation observed its cancel flag between stages."""
