"""
Specialist Models

Four narrow rule-evaluation engines over feature thresholds:

    trend              - SMA20 distance, 10-bar momentum, MACD sign
    mean_reversion     - RSI, Bollinger and range-position extremity
    volatility_regime  - regime label only (no direction)
    pattern            - doji / hammer / shooting star / gap heuristics

Each rule is wrapped by SpecialistModel, which supplies the common
train/predict/update/is_ready contract. Rules are selected at construction
time; there is no rule-specific subclassing of the model.
"""

import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple
import logging

from quantsignal.feature_engine.schemas import MarketBar, FeatureVector
from quantsignal.ml_layer.base import PredictiveModel, FeatureSeries
from quantsignal.ml_layer.config import SpecialistConfig
from quantsignal.ml_layer.schemas import Direction, Regime, Prediction, clamp

LOG = logging.getLogger(__name__)


@dataclass
class RuleOutcome:
    """Raw output of one rule evaluation"""
    direction: Direction
    confidence: float
    score: float
    regime: Optional[Regime] = None


class TrendRule:
    """
    Bullish score:
        +0.3 close > SMA20 by more than 2%
        +0.3 10-bar momentum above 1%
        +0.2 MACD positive
    UP above 0.4, DOWN below 0.2.
    """

    name = "trend"
    directional = True
    importance = {'price_vs_sma_20': 0.4, 'momentum_10d': 0.35, 'macd': 0.25}

    def __init__(self, config: SpecialistConfig):
        self.config = config

    def evaluate(self, features: FeatureVector) -> RuleOutcome:
        c = self.config
        score = 0.0
        if features.get('price_vs_sma_20') > c.trend_sma_threshold:
            score += 0.3
        if features.get('momentum_10d') > c.trend_momentum_threshold:
            score += 0.3
        if features.get('macd') > 0:
            score += 0.2

        if score > c.trend_up_score:
            direction = Direction.UP
        elif score < c.trend_down_score:
            direction = Direction.DOWN
        else:
            direction = Direction.SIDEWAYS

        return RuleOutcome(direction, clamp(score, 0.1, 0.9), score)


class MeanReversionRule:
    """
    Reversion score (positive = overextended to the upside):
        RSI > 70: +0.3, RSI < 30: -0.3
        bb_position > 0.8: +0.2, < 0.2: -0.2
        price_position_20d > 0.8: +0.2, < 0.2: -0.2
    DOWN above 0.3, UP below -0.3.
    """

    name = "mean_reversion"
    directional = True
    importance = {'rsi': 0.4, 'bb_position': 0.3, 'price_position_20d': 0.3}

    def __init__(self, config: SpecialistConfig):
        self.config = config

    def evaluate(self, features: FeatureVector) -> RuleOutcome:
        c = self.config
        score = 0.0

        rsi = features.get('rsi')
        if rsi > c.rsi_overbought:
            score += 0.3
        elif rsi < c.rsi_oversold:
            score -= 0.3

        for key in ('bb_position', 'price_position_20d'):
            value = features.get(key, 0.5)
            if value > c.band_upper:
                score += 0.2
            elif value < c.band_lower:
                score -= 0.2

        if score > c.reversion_score_threshold:
            direction = Direction.DOWN
        elif score < -c.reversion_score_threshold:
            direction = Direction.UP
        else:
            direction = Direction.SIDEWAYS

        return RuleOutcome(direction, clamp(abs(score), 0.1, 0.9), score)


class VolatilityRegimeRule:
    """
    VOLATILE when 20-bar volatility > 4% or short/long ratio > 1.5,
    otherwise BULL / BEAR / SIDEWAYS from 10-bar momentum (±2%).
    """

    name = "volatility_regime"
    directional = False
    importance = {'volatility_20d': 0.5, 'volatility_ratio': 0.3, 'momentum_10d': 0.2}

    def __init__(self, config: SpecialistConfig):
        self.config = config

    def evaluate(self, features: FeatureVector) -> RuleOutcome:
        c = self.config
        vol = features.get('volatility_20d')
        ratio = features.get('volatility_ratio')
        momentum = features.get('momentum_10d')

        if vol > c.volatile_vol_threshold or ratio > c.volatile_ratio_threshold:
            regime = Regime.VOLATILE
        elif momentum > c.regime_momentum_threshold:
            regime = Regime.BULL
        elif momentum < -c.regime_momentum_threshold:
            regime = Regime.BEAR
        else:
            regime = Regime.SIDEWAYS

        return RuleOutcome(Direction.SIDEWAYS, c.regime_confidence, 0.0, regime)


class PatternRule:
    """
    Candle score (positive = bearish):
        doji          body < 0.1                        +0.1
        hammer        body < 0.3 and lower shadow > 0.6 -0.3
        shooting star body < 0.3 and upper shadow > 0.6 +0.3
        gap           |gap| > 2%                        +0.2 up / -0.2 down
    DOWN above 0.2, UP below -0.2.
    """

    name = "pattern"
    directional = True
    importance = {
        'body_ratio': 0.3,
        'upper_shadow_ratio': 0.25,
        'lower_shadow_ratio': 0.25,
        'gap': 0.2,
    }

    def __init__(self, config: SpecialistConfig):
        self.config = config

    def evaluate(self, features: FeatureVector) -> RuleOutcome:
        c = self.config
        body = features.get('body_ratio')
        upper = features.get('upper_shadow_ratio')
        lower = features.get('lower_shadow_ratio')
        gap = features.get('gap')

        score = 0.0
        if body < c.doji_body_ratio:
            score += 0.1
        if body < c.pattern_body_ratio and lower > c.pattern_shadow_ratio:
            score -= 0.3
        if body < c.pattern_body_ratio and upper > c.pattern_shadow_ratio:
            score += 0.3
        if abs(gap) > c.gap_threshold:
            score += 0.2 if gap > 0 else -0.2

        if score > c.pattern_score_threshold:
            direction = Direction.DOWN
        elif score < -c.pattern_score_threshold:
            direction = Direction.UP
        else:
            direction = Direction.SIDEWAYS

        return RuleOutcome(direction, clamp(abs(score), 0.1, 0.8), score)


RULES = {
    TrendRule.name: TrendRule,
    MeanReversionRule.name: MeanReversionRule,
    VolatilityRegimeRule.name: VolatilityRegimeRule,
    PatternRule.name: PatternRule,
}

SPECIALIST_NAMES: Tuple[str, ...] = tuple(RULES.keys())


class SpecialistModel(PredictiveModel):
    """
    Rule-backed specialist.

    train() only checks that enough history exists; update() keeps a bounded
    buffer of recent observations. Learning happens through periodic
    retraining driven by the lifecycle manager.
    """

    def __init__(self, rule_name: str, config: Optional[SpecialistConfig] = None):
        if rule_name not in RULES:
            raise ValueError(f"Unknown specialist '{rule_name}', expected one of {SPECIALIST_NAMES}")
        self.config = config or SpecialistConfig()
        super().__init__(self.config.min_training_samples)
        self.name = rule_name
        self.rule = RULES[rule_name](self.config)
        self._buffer: Deque[Tuple[MarketBar, FeatureVector]] = deque(
            maxlen=self.config.update_buffer_size
        )

    @property
    def directional(self) -> bool:
        return self.rule.directional

    @property
    def feature_importance(self) -> Dict[str, float]:
        return dict(self.rule.importance)

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    def train(
        self,
        history: Sequence[MarketBar],
        feature_series: FeatureSeries,
        cancel_event: Optional[threading.Event] = None
    ) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return False
        if len(history) < self.min_training_samples:
            LOG.warning(f"{self.name}: insufficient training data "
                        f"({len(history)}/{self.min_training_samples})")
            return False
        with self._lock:
            self._mark_trained(len(history))
        LOG.debug(f"{self.name} specialist trained on {len(history)} bars")
        return True

    def predict(self, bar: MarketBar, features: FeatureVector) -> Optional[Prediction]:
        if not self.is_ready or features.is_empty:
            return None

        outcome = self.rule.evaluate(features)
        self._count_prediction()

        return Prediction(
            symbol=features.symbol,
            timestamp=features.timestamp,
            direction=outcome.direction,
            confidence=outcome.confidence,
            model_name=self.name,
            regime=outcome.regime,
            metrics={'score': outcome.score},
            feature_importance=self.feature_importance,
        )

    def update(self, bar: MarketBar, features: FeatureVector):
        with self._lock:
            self._buffer.append((bar, features))

    def _get_params(self) -> Dict[str, Any]:
        return {'rule': self.name, 'config': self.config.to_dict()}

    def _set_params(self, params: Dict[str, Any]):
        self.config = SpecialistConfig(**params['config'])
        self.rule = RULES[params['rule']](self.config)


def create_specialists(config: Optional[SpecialistConfig] = None) -> List[SpecialistModel]:
    """One specialist per rule, in canonical order"""
    config = config or SpecialistConfig()
    return [SpecialistModel(name, config) for name in SPECIALIST_NAMES]
