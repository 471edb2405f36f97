"""
Signal Engine Configuration

Defines sizing, stop-loss / take-profit and prediction-selection parameters.
"""

from dataclasses import dataclass, field, asdict
from typing import Dict
import hashlib
import json

from quantsignal.exceptions import ConfigurationError

PREDICTION_POLICIES = ("ensemble", "stochastic", "best")


@dataclass
class SizingConfig:
    """Position sizing configuration"""

    max_position_size: float = 10000.0

    # Base size as a fraction of max_position_size
    base_fraction: float = 0.1

    # size *= min(confidence_cap, confidence * confidence_scale)
    confidence_scale: float = 1.5
    confidence_cap: float = 1.5

    # size *= max(volatility_floor, 1 - volatility_damping * volatility_20d)
    volatility_damping: float = 10.0
    volatility_floor: float = 0.3

    # Used when the feature vector carries no volatility_20d
    default_volatility: float = 0.02


@dataclass
class RiskConfig:
    """Stop-loss / take-profit configuration"""

    base_stop: float = 0.02
    min_stop: float = 0.005
    max_stop: float = 0.05

    # stop *= max(1, volatility_20d * volatility_stop_scale)
    volatility_stop_scale: float = 25.0

    regime_scales: Dict[str, float] = field(default_factory=lambda: {
        "VOLATILE": 1.5,
        "SIDEWAYS": 0.7,
        "BULL": 1.0,
        "BEAR": 1.0,
    })

    # take profit = stop * reward_risk * max(1, conf * 1.5) * boost
    reward_risk: float = 2.0
    regime_alignment_boost: float = 1.3


@dataclass
class PerformanceConfig:
    """Trailing win-rate tracker configuration"""

    window: int = 50
    high_win_rate: float = 0.6
    low_win_rate: float = 0.4
    high_multiplier: float = 1.2
    low_multiplier: float = 0.7


@dataclass
class SignalConfig:
    """
    Master configuration for the Signal Engine.
    """

    config_version: str = "1.0.0"
    strategy_name: str = "ml_signal_strategy"

    # Minimum prediction confidence to emit a signal
    min_confidence: float = 0.65

    # Which prediction feeds the synthesizer: ensemble, stochastic or best
    prediction_policy: str = "best"

    # Train models automatically as bars accumulate
    auto_train: bool = True

    # Bars to wait before retrying a failed training attempt
    training_retry_bars: int = 20

    sizing: SizingConfig = field(default_factory=SizingConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)

    def validate(self):
        """Raise ConfigurationError for out-of-range settings"""
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ConfigurationError(f"min_confidence must be in [0, 1], got {self.min_confidence}")
        if self.sizing.max_position_size <= 0:
            raise ConfigurationError("max_position_size must be positive")
        if not 0.0 < self.risk.min_stop <= self.risk.max_stop:
            raise ConfigurationError("stop bounds must satisfy 0 < min_stop <= max_stop")
        if self.prediction_policy not in PREDICTION_POLICIES:
            raise ConfigurationError(
                f"prediction_policy must be one of {PREDICTION_POLICIES}, got {self.prediction_policy!r}"
            )

    def to_dict(self) -> dict:
        """Convert configuration to dictionary"""
        return asdict(self)

    def get_config_hash(self) -> str:
        """Deterministic hash for signal versioning"""
        config_str = json.dumps(self.to_dict(), sort_keys=True)
        return hashlib.sha256(config_str.encode()).hexdigest()[:16]

    @classmethod
    def from_dict(cls, config_dict: dict) -> 'SignalConfig':
        """Create config from dictionary"""
        return cls(
            config_version=config_dict.get('config_version', '1.0.0'),
            strategy_name=config_dict.get('strategy_name', 'ml_signal_strategy'),
            min_confidence=config_dict.get('min_confidence', 0.65),
            prediction_policy=config_dict.get('prediction_policy', 'best'),
            auto_train=config_dict.get('auto_train', True),
            training_retry_bars=config_dict.get('training_retry_bars', 20),
            sizing=SizingConfig(**config_dict.get('sizing', {})),
            risk=RiskConfig(**config_dict.get('risk', {})),
            performance=PerformanceConfig(**config_dict.get('performance', {})),
        )
