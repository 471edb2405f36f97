"""
Signal Synthesizer

Turns one Prediction into a sized TradingSignal with stop-loss and
take-profit, or nothing.

Design Principles:
    - Conservative: SIDEWAYS or low confidence -> no signal
    - Volatility-aware: size shrinks and stops widen with volatility_20d
    - Regime-aware: VOLATILE widens stops, SIDEWAYS tightens them
    - Self-correcting: trailing win rate scales size
"""

import threading
from collections import deque
from typing import Deque, Optional
import logging

from quantsignal.feature_engine.schemas import MarketBar, FeatureVector
from quantsignal.ml_layer.schemas import Direction, Prediction, Regime
from quantsignal.signal_engine.config import SignalConfig, PerformanceConfig
from quantsignal.signal_engine.schemas import TradeDirection, TradingSignal

LOG = logging.getLogger(__name__)


class PerformanceTracker:
    """Trailing win rate over the last `window` signal outcomes"""

    def __init__(self, config: Optional[PerformanceConfig] = None):
        self.config = config or PerformanceConfig()
        self._outcomes: Deque[bool] = deque(maxlen=self.config.window)
        self._lock = threading.Lock()
        self.total_recorded = 0

    def record(self, success: bool):
        with self._lock:
            self._outcomes.append(bool(success))
            self.total_recorded += 1

    @property
    def sample_count(self) -> int:
        return len(self._outcomes)

    def win_rate(self) -> Optional[float]:
        """None until an outcome has been recorded"""
        with self._lock:
            if not self._outcomes:
                return None
            return sum(self._outcomes) / len(self._outcomes)

    def multiplier(self) -> float:
        """
        > high_win_rate -> 1.2, < low_win_rate -> 0.7, else 1.0.
        1.0 with no outcomes.
        """
        rate = self.win_rate()
        if rate is None:
            return 1.0
        if rate > self.config.high_win_rate:
            return self.config.high_multiplier
        if rate < self.config.low_win_rate:
            return self.config.low_multiplier
        return 1.0

    def reset(self):
        with self._lock:
            self._outcomes.clear()
            self.total_recorded = 0


class SignalSynthesizer:
    """
    Prediction -> TradingSignal.

    Stateless apart from the performance tracker, so one instance can serve
    every symbol.
    """

    def __init__(self, config: Optional[SignalConfig] = None):
        self.config = config or SignalConfig()
        self.performance = PerformanceTracker(self.config.performance)
        self.signals_emitted = 0
        self.signals_skipped = 0

    # ==================================================================
    # PUBLIC API
    # ==================================================================

    def synthesize(
        self,
        prediction: Optional[Prediction],
        bar: MarketBar,
        features: FeatureVector
    ) -> Optional[TradingSignal]:
        """
        Build a trading signal from a prediction.

        Returns:
            TradingSignal, or None when the prediction is absent, SIDEWAYS,
            below min_confidence, or sizes to zero
        """
        if prediction is None:
            return None

        if prediction.direction == Direction.SIDEWAYS:
            LOG.debug(f"{bar.symbol}: SIDEWAYS prediction, no signal")
            self.signals_skipped += 1
            return None

        if prediction.confidence < self.config.min_confidence:
            LOG.debug(f"{bar.symbol}: confidence {prediction.confidence:.3f} "
                      f"< {self.config.min_confidence}, no signal")
            self.signals_skipped += 1
            return None

        price = float(bar.close)
        if not price > 0:
            LOG.warning(f"{bar.symbol}: non-positive close {bar.close}, no signal")
            self.signals_skipped += 1
            return None

        direction = TradeDirection.LONG if prediction.direction == Direction.UP else TradeDirection.SHORT
        volatility = self._volatility(features)

        quantity = self.position_size(prediction.confidence, volatility)
        if quantity <= 0:
            LOG.debug(f"{bar.symbol}: position size rounds to zero, no signal")
            self.signals_skipped += 1
            return None

        stop = self.stop_distance(volatility, prediction.regime)
        take_profit = self.take_profit_distance(stop, prediction.confidence, prediction.regime, direction)

        sign = direction.value
        signal = TradingSignal(
            symbol=bar.symbol,
            direction=direction,
            quantity=quantity,
            price=price,
            stop_loss=price * (1.0 - sign * stop),
            take_profit=price * (1.0 + sign * take_profit),
            confidence=prediction.confidence,
            rationale=self.build_rationale(prediction, direction),
            strategy_name=self.config.strategy_name,
            timestamp=bar.timestamp,
            model_name=prediction.model_name,
        )

        self.signals_emitted += 1
        LOG.info(f"✓ {signal.direction.name} {bar.symbol} qty={quantity} @ {price:.4f} "
                 f"SL={signal.stop_loss:.4f} TP={signal.take_profit:.4f}")
        return signal

    def update_performance(self, success: bool):
        """Record whether an emitted signal ended profitably"""
        self.performance.record(success)

    def get_win_rate(self) -> Optional[float]:
        return self.performance.win_rate()

    def performance_multiplier(self) -> float:
        return self.performance.multiplier()

    # ==================================================================
    # COMPONENTS
    # ==================================================================

    def _volatility(self, features: FeatureVector) -> float:
        value = features.get('volatility_20d', self.config.sizing.default_volatility)
        if value is None or value != value:
            return self.config.sizing.default_volatility
        return max(0.0, float(value))

    def position_size(self, confidence: float, volatility: float) -> float:
        """
        size = base_fraction * max_position_size
               * min(1.5, confidence * 1.5)
               * max(0.3, 1 - 10 * volatility)
               * performance multiplier

        Rounded to 2 dp and clamped to [0, max_position_size].
        """
        s = self.config.sizing
        base = s.max_position_size * s.base_fraction
        confidence_mult = min(s.confidence_cap, confidence * s.confidence_scale)
        volatility_mult = max(s.volatility_floor, 1.0 - volatility * s.volatility_damping)
        size = base * confidence_mult * volatility_mult * self.performance_multiplier()
        size = round(size, 2)
        return min(max(size, 0.0), s.max_position_size)

    def stop_distance(self, volatility: float, regime: Optional[Regime]) -> float:
        """clamp(base_stop * max(1, volatility * 25) * regime_scale, min_stop, max_stop)"""
        r = self.config.risk
        volatility_scale = max(1.0, volatility * r.volatility_stop_scale)
        regime_scale = r.regime_scales.get(regime.value, 1.0) if regime is not None else 1.0
        stop = r.base_stop * volatility_scale * regime_scale
        return min(r.max_stop, max(r.min_stop, stop))

    def take_profit_distance(
        self,
        stop: float,
        confidence: float,
        regime: Optional[Regime],
        direction: TradeDirection
    ) -> float:
        """stop * 2 * max(1, confidence * 1.5), boosted 1.3x when regime and trade align"""
        r = self.config.risk
        distance = stop * r.reward_risk * max(1.0, confidence * self.config.sizing.confidence_scale)
        aligned = (
            (regime == Regime.BULL and direction == TradeDirection.LONG)
            or (regime == Regime.BEAR and direction == TradeDirection.SHORT)
        )
        if aligned:
            distance *= r.regime_alignment_boost
        return distance

    @staticmethod
    def build_rationale(prediction: Prediction, direction: TradeDirection) -> str:
        """Model, direction, confidence, regime and the 3 strongest features"""
        parts = [f"{direction.name} signal from {prediction.model_name}: "
                 f"confidence {prediction.confidence * 100:.1f}%"]
        if prediction.regime is not None:
            parts.append(f"regime {prediction.regime.value}")
        top = prediction.top_features(3)
        if top:
            parts.append("key features: " + ", ".join(f"{k}={v:.3f}" for k, v in top.items()))
        return ", ".join(parts)
