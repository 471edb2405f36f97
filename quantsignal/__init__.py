"""
QuantSignal - ML-driven trading signal generation

Layers:
    feature_engine  OHLCV bars → named feature vectors
    ml_layer        rule ensemble + stochastic sequence model, lifecycle
    signal_engine   prediction → sized TradingSignal
"""

from quantsignal.config import QuantSignalConfig, load_config_from_env
from quantsignal.exceptions import (
    QuantSignalError,
    ConfigurationError,
    PersistenceError,
)

__version__ = "1.0.0"

__all__ = [
    'QuantSignalConfig',
    'load_config_from_env',
    'QuantSignalError',
    'ConfigurationError',
    'PersistenceError',
]
