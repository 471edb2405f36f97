"""
ML Layer Output Schemas

Defines directions, regimes, predictions, ensemble weights, model state and
registry metadata.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional
from enum import Enum
import math


class Direction(str, Enum):
    """Predicted price direction"""
    UP = "UP"
    DOWN = "DOWN"
    SIDEWAYS = "SIDEWAYS"


class Regime(str, Enum):
    """Coarse market-condition label"""
    BULL = "BULL"
    BEAR = "BEAR"
    SIDEWAYS = "SIDEWAYS"
    VOLATILE = "VOLATILE"


def clamp(value: float, low: float, high: float) -> float:
    """Clamp to [low, high]; NaN maps to low"""
    if value is None or math.isnan(value):
        return low
    return max(low, min(high, value))


@dataclass(frozen=True)
class Prediction:
    """
    Immutable prediction value object.

    Confidence is clamped to [0, 1] at construction, so every producer
    (specialist, ensemble, sequence model) upholds the bound.
    """

    symbol: str
    timestamp: Optional[datetime]
    direction: Direction
    confidence: float
    model_name: str
    regime: Optional[Regime] = None
    metrics: Dict[str, float] = field(default_factory=dict)
    feature_importance: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, 'confidence', clamp(float(self.confidence), 0.0, 1.0))
        object.__setattr__(
            self,
            'feature_importance',
            {k: max(0.0, float(v)) for k, v in self.feature_importance.items()}
        )

    def top_features(self, n: int = 3) -> Dict[str, float]:
        """n most important features, highest first"""
        ranked = sorted(self.feature_importance.items(), key=lambda kv: kv[1], reverse=True)
        return dict(ranked[:n])

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'symbol': self.symbol,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'direction': self.direction.value,
            'confidence': float(self.confidence),
            'model_name': self.model_name,
            'regime': self.regime.value if self.regime else None,
            'metrics': {k: float(v) for k, v in self.metrics.items()},
            'feature_importance': {k: float(v) for k, v in self.feature_importance.items()},
        }


@dataclass(frozen=True)
class EnsembleWeightSet:
    """
    Per-prediction specialist weights.

    Build through normalized(); weights are then >= 0 and sum to 1.
    """

    trend: float
    mean_reversion: float
    volatility: float
    pattern: float

    @classmethod
    def normalized(cls, trend: float, mean_reversion: float,
                   volatility: float, pattern: float) -> 'EnsembleWeightSet':
        raw = [max(0.0, w) if math.isfinite(w) else 0.0
               for w in (trend, mean_reversion, volatility, pattern)]
        total = sum(raw)
        if total <= 0:
            return cls(0.25, 0.25, 0.25, 0.25)
        return cls(*(w / total for w in raw))

    def total(self) -> float:
        return self.trend + self.mean_reversion + self.volatility + self.pattern

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'trend_weight': self.trend,
            'mean_reversion_weight': self.mean_reversion,
            'volatility_weight': self.volatility,
            'pattern_weight': self.pattern,
        }


@dataclass
class ModelState:
    """
    Bookkeeping for one trainable component.

    Owned by the component it describes.
    """

    ready: bool = False
    last_trained: Optional[datetime] = None
    prediction_count: int = 0
    correct_count: int = 0
    scored_count: int = 0
    training_samples: int = 0
    blob: Optional[bytes] = None

    @property
    def accuracy(self) -> float:
        """Cumulative accuracy over scored predictions (0.0 when none)"""
        if self.scored_count == 0:
            return 0.0
        return self.correct_count / self.scored_count

    def age_days(self, now: Optional[datetime] = None) -> Optional[float]:
        """Days since last training (None if never trained)"""
        if self.last_trained is None:
            return None
        now = now or datetime.now()
        return (now - self.last_trained).total_seconds() / 86400.0

    def to_dict(self) -> dict:
        """Convert to dictionary (blob omitted)"""
        return {
            'ready': bool(self.ready),
            'last_trained': self.last_trained.isoformat() if self.last_trained else None,
            'prediction_count': int(self.prediction_count),
            'correct_count': int(self.correct_count),
            'scored_count': int(self.scored_count),
            'training_samples': int(self.training_samples),
            'accuracy': float(self.accuracy),
        }


@dataclass
class ModelMetadata:
    """Model versioning and governance metadata"""

    # Model identification
    model_version: str
    model_name: str
    symbol: str

    # Training info
    trained_on: Optional[str]  # ISO datetime
    training_samples: int
    config_hash: str

    # Performance
    prediction_count: int = 0
    accuracy: Optional[float] = None

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'model_version': self.model_version,
            'model_name': self.model_name,
            'symbol': self.symbol,
            'trained_on': self.trained_on,
            'training_samples': int(self.training_samples),
            'config_hash': self.config_hash,
            'prediction_count': int(self.prediction_count),
            'accuracy': float(self.accuracy) if self.accuracy is not None else None,
        }


def direction_from_return(ret: float, threshold: float = 0.001) -> Direction:
    """Realised direction of a simple return"""
    if ret > threshold:
        return Direction.UP
    if ret < -threshold:
        return Direction.DOWN
    return Direction.SIDEWAYS
