"""
Exception hierarchy for quantsignal.

Insufficient data and untrained models are normal conditions on the hot path
and are signalled with empty vectors, None or neutral predictions. These
exceptions cover configuration mistakes and persistence failures.
"""


class QuantSignalError(Exception):
    """Base class for all quantsignal errors"""


class ConfigurationError(QuantSignalError):
    """Invalid or inconsistent configuration"""


class PersistenceError(QuantSignalError):
    """Model storage or registry I/O failed"""
