"""
Ensemble Fusion

Combines the four specialists into one Prediction.

Flow:
    1. Dynamic weights from current market conditions (normalized to 1)
    2. Weighted bullish / bearish score from directional specialists
    3. Direction + confidence from the dominant score
    4. Confidence scaled by inter-specialist agreement
    5. Weight-scaled union of specialist feature importance
"""

import threading
from collections import deque
from itertools import combinations
from typing import Any, Deque, Dict, List, Mapping, Optional, Sequence, Tuple
import logging
import math

from quantsignal.feature_engine.schemas import MarketBar, FeatureVector
from quantsignal.ml_layer.base import PredictiveModel, FeatureSeries
from quantsignal.ml_layer.config import EnsembleConfig, SpecialistConfig
from quantsignal.ml_layer.schemas import (
    Direction,
    EnsembleWeightSet,
    Prediction,
    clamp,
)
from quantsignal.ml_layer.specialists import SpecialistModel, create_specialists

LOG = logging.getLogger(__name__)

ENSEMBLE_MODEL_NAME = "ensemble"


def _finite(value: float, default: float = 0.0) -> float:
    return value if value is not None and math.isfinite(value) else default


class EnsembleFusion:
    """
    Stateless fusion of specialist outputs.

    Only trend, mean_reversion and pattern vote on direction; the
    volatility specialist contributes the regime label.
    """

    def __init__(self, config: Optional[EnsembleConfig] = None):
        self.config = config or EnsembleConfig()

    def compute_weights(self, features: FeatureVector) -> EnsembleWeightSet:
        """
        Weights from current conditions.

        trend          0.2 + 0.3 * min(1, |momentum_10d|*10 + |price_vs_sma_20|*5)
        mean_reversion 0.2 + 0.3 * min(1, |price_vs_sma_20|*10 + max(0, |rsi-50|-20)/30)
        volatility     0.15 + 0.25 * min(1, volatility_20d*50)
        pattern        0.25
        """
        c = self.config
        momentum = abs(_finite(features.get('momentum_10d')))
        trend_strength = abs(_finite(features.get('price_vs_sma_20')))
        rsi = _finite(features.get('rsi'), 50.0)
        volatility = _finite(features.get('volatility_20d', c.default_volatility), c.default_volatility)

        trend_signal = min(1.0, momentum * 10 + trend_strength * 5)
        rsi_extremity = max(0.0, abs(rsi - 50) - 20) / 30
        reversion_signal = min(1.0, trend_strength * 10 + rsi_extremity)
        vol_signal = min(1.0, max(0.0, volatility * 50))

        return EnsembleWeightSet.normalized(
            trend=c.trend_weight_base + c.trend_weight_span * trend_signal,
            mean_reversion=c.mean_reversion_weight_base + c.mean_reversion_weight_span * reversion_signal,
            volatility=c.volatility_weight_base + c.volatility_weight_span * vol_signal,
            pattern=c.pattern_weight,
        )

    def agreement(self, predictions: Sequence[Tuple[Prediction, bool]]) -> float:
        """
        Fraction of agreeing specialist pairs.

        Non-directional specialists carry no direction and therefore never
        agree with a directional one.
        """
        if len(predictions) < 2:
            return self.config.default_agreement
        directions = [p.direction if directional else None for p, directional in predictions]
        pairs = list(combinations(directions, 2))
        agreeing = sum(1 for a, b in pairs if a == b)
        return agreeing / len(pairs)

    def fuse(
        self,
        outputs: Mapping[str, Optional[Prediction]],
        features: FeatureVector,
        directional: Optional[Mapping[str, bool]] = None,
    ) -> Prediction:
        """
        Fuse specialist outputs.

        Args:
            outputs: specialist name -> Prediction (None when unavailable)
            features: current feature vector
            directional: specialist name -> votes on direction
                (defaults to everything except volatility_regime)

        Returns:
            Consolidated Prediction
        """
        c = self.config
        directional = directional or {
            name: name != 'volatility_regime' for name in outputs
        }
        weights = self.compute_weights(features)
        weight_of = {
            'trend': weights.trend,
            'mean_reversion': weights.mean_reversion,
            'volatility_regime': weights.volatility,
            'pattern': weights.pattern,
        }

        bullish = 0.0
        bearish = 0.0
        for name, pred in outputs.items():
            if pred is None or not directional.get(name, True):
                continue
            weighted = weight_of.get(name, 0.0) * pred.confidence
            if pred.direction == Direction.UP:
                bullish += weighted
            elif pred.direction == Direction.DOWN:
                bearish += weighted

        if bullish > bearish and bullish > c.direction_threshold:
            direction = Direction.UP
            confidence = min(c.max_confidence, bullish)
        elif bearish > bullish and bearish > c.direction_threshold:
            direction = Direction.DOWN
            confidence = min(c.max_confidence, bearish)
        else:
            direction = Direction.SIDEWAYS
            confidence = c.sideways_confidence

        available = [(p, directional.get(n, True)) for n, p in outputs.items() if p is not None]
        agreement = self.agreement(available)
        confidence = clamp(confidence * (0.5 + 0.5 * agreement), 0.0, 1.0)

        importance: Dict[str, float] = {}
        for name, pred in outputs.items():
            if pred is None:
                continue
            w = weight_of.get(name, 0.0)
            for feature, value in pred.feature_importance.items():
                importance[feature] = importance.get(feature, 0.0) + w * value

        regime_pred = outputs.get('volatility_regime')
        regime = regime_pred.regime if regime_pred is not None else None

        metrics = {
            'prob_up': bullish,
            'prob_down': bearish,
            'model_agreement': agreement,
            'volatility': _finite(features.get('volatility_20d')),
        }
        metrics.update(weights.to_dict())

        return Prediction(
            symbol=features.symbol,
            timestamp=features.timestamp,
            direction=direction,
            confidence=confidence,
            model_name=ENSEMBLE_MODEL_NAME,
            regime=regime,
            metrics=metrics,
            feature_importance=importance,
        )


class EnsembleModel(PredictiveModel):
    """
    Four specialists plus fusion behind the common model contract.

    Not ready -> neutral SIDEWAYS prediction with confidence 0.1.
    """

    name = ENSEMBLE_MODEL_NAME

    def __init__(
        self,
        config: Optional[EnsembleConfig] = None,
        specialist_config: Optional[SpecialistConfig] = None
    ):
        self.config = config or EnsembleConfig()
        super().__init__(self.config.min_training_samples)
        self.specialists: List[SpecialistModel] = create_specialists(specialist_config)
        self.fusion = EnsembleFusion(self.config)
        self._recent: Deque[Prediction] = deque(maxlen=100)

    def train(
        self,
        history: Sequence[MarketBar],
        feature_series: FeatureSeries,
        cancel_event: Optional[threading.Event] = None
    ) -> bool:
        if len(history) < self.min_training_samples:
            LOG.warning(f"Insufficient data for ensemble training: "
                        f"{len(history)}/{self.min_training_samples}")
            return False

        results = {s.name: s.train(history, feature_series, cancel_event) for s in self.specialists}
        if not all(results.values()):
            failed = [name for name, ok in results.items() if not ok]
            LOG.error(f"Ensemble training failed for specialists: {failed}")
            return False

        with self._lock:
            self._mark_trained(len(history))
        LOG.info(f"✓ Ensemble trained on {len(history)} bars")
        return True

    def predict_specialists(self, bar: MarketBar, features: FeatureVector) -> Dict[str, Optional[Prediction]]:
        """Raw specialist outputs keyed by specialist name"""
        return {s.name: s.predict(bar, features) for s in self.specialists}

    def predict(self, bar: MarketBar, features: FeatureVector) -> Optional[Prediction]:
        if features.is_empty:
            return None
        if not self.is_ready:
            return Prediction(
                symbol=features.symbol,
                timestamp=features.timestamp,
                direction=Direction.SIDEWAYS,
                confidence=0.1,
                model_name=self.name,
                metrics={'prob_up': 0.0, 'prob_down': 0.0, 'model_agreement': 0.0},
            )

        with self._lock:
            outputs = self.predict_specialists(bar, features)
            directional = {s.name: s.directional for s in self.specialists}
            prediction = self.fusion.fuse(outputs, features, directional)
            self._recent.append(prediction)
            self.state.prediction_count += 1

        LOG.debug(f"Ensemble {features.symbol}: {prediction.direction.value} "
                  f"conf={prediction.confidence:.3f}")
        return prediction

    def update(self, bar: MarketBar, features: FeatureVector):
        for specialist in self.specialists:
            specialist.update(bar, features)

    def get_metrics(self) -> Dict[str, Any]:
        """Counts, accuracy and the latest agreement level"""
        last = self._recent[-1] if self._recent else None
        return {
            'model_name': self.name,
            'total_predictions': self.state.prediction_count,
            'correct_predictions': self.state.correct_count,
            'accuracy': self.state.accuracy,
            'last_trained': self.state.last_trained.isoformat() if self.state.last_trained else None,
            'last_agreement': last.metrics.get('model_agreement') if last else None,
            'specialists': {s.name: s.state.to_dict() for s in self.specialists},
        }

    def _get_params(self) -> Dict[str, Any]:
        return {
            'config': self.config.to_dict(),
            'specialists': {s.name: s.serialize() for s in self.specialists},
        }

    def _set_params(self, params: Dict[str, Any]):
        self.config = EnsembleConfig(**params['config'])
        self.min_training_samples = self.config.min_training_samples
        self.fusion = EnsembleFusion(self.config)
        for specialist in self.specialists:
            blob = params['specialists'].get(specialist.name)
            if blob is not None:
                specialist.deserialize(blob)
