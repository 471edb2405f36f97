"""
Signal Engine - Prediction to Trade Recommendation

Converts ML predictions into sized trading signals with volatility- and
regime-aware stop-loss and take-profit levels.

Core Principle:
    When in doubt, do nothing. SIDEWAYS or low-confidence predictions
    produce no signal.

Flow:
    Prediction + MarketBar + FeatureVector → SignalSynthesizer → TradingSignal
"""

from quantsignal.signal_engine.config import SignalConfig
from quantsignal.signal_engine.schemas import TradeDirection, TradingSignal
from quantsignal.signal_engine.synthesizer import SignalSynthesizer, PerformanceTracker
from quantsignal.signal_engine.strategy import MLSignalStrategy

__version__ = "1.0.0"

__all__ = [
    'SignalConfig',
    'TradeDirection',
    'TradingSignal',
    'SignalSynthesizer',
    'PerformanceTracker',
    'MLSignalStrategy',
]
