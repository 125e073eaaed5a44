"""glucocast - personal glucose forecasting engine."""

__version__ = "1.0.0"
