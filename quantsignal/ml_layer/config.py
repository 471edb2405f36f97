"""
ML Layer Configuration

Defines specialist thresholds, ensemble settings, stochastic sequence model
hyperparameters, and lifecycle (retraining) policy.
"""

from dataclasses import dataclass, field, asdict
from typing import Optional
import hashlib
import json

from quantsignal.exceptions import ConfigurationError


@dataclass
class SpecialistConfig:
    """Configuration shared by the rule-based specialists"""

    # Minimum history for train() to succeed
    min_training_samples: int = 50

    # Bounded buffer of (bar, features) kept by update()
    update_buffer_size: int = 500

    # Trend
    trend_sma_threshold: float = 0.02
    trend_momentum_threshold: float = 0.01
    trend_up_score: float = 0.4
    trend_down_score: float = 0.2

    # Mean reversion
    rsi_overbought: float = 70.0
    rsi_oversold: float = 30.0
    band_upper: float = 0.8
    band_lower: float = 0.2
    reversion_score_threshold: float = 0.3

    # Volatility regime
    volatile_vol_threshold: float = 0.04
    volatile_ratio_threshold: float = 1.5
    regime_momentum_threshold: float = 0.02
    regime_confidence: float = 0.7

    # Candle patterns
    doji_body_ratio: float = 0.1
    pattern_body_ratio: float = 0.3
    pattern_shadow_ratio: float = 0.6
    gap_threshold: float = 0.02
    pattern_score_threshold: float = 0.2

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return asdict(self)


@dataclass
class EnsembleConfig:
    """Configuration for ensemble fusion"""

    min_training_samples: int = 100

    # Dynamic weights: base + span * min(1, signal)
    trend_weight_base: float = 0.2
    trend_weight_span: float = 0.3
    mean_reversion_weight_base: float = 0.2
    mean_reversion_weight_span: float = 0.3
    volatility_weight_base: float = 0.15
    volatility_weight_span: float = 0.25
    pattern_weight: float = 0.25

    # Used when volatility_20d is missing
    default_volatility: float = 0.02

    # Direction decision
    direction_threshold: float = 0.3
    max_confidence: float = 0.95
    sideways_confidence: float = 0.5

    # Agreement when fewer than two specialists respond
    default_agreement: float = 0.5

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return asdict(self)


@dataclass
class StochasticConfig:
    """Configuration for the stochastic latent sequence model"""

    lookback: int = 60
    hidden_size: int = 128
    latent_dim: int = 32

    # Regularization
    dropout: float = 0.15
    kl_weight: float = 0.1
    spectral_radius: float = 0.9
    input_scale: float = 0.5
    z_score_clip: float = 5.0

    # Optimisation (Adam)
    learning_rate: float = 0.001
    batch_size: int = 32
    min_epochs: int = 10
    max_epochs: int = 50

    # Labels from next-bar return
    label_threshold: float = 0.001

    # Inference
    n_samples: int = 8
    max_expected_move: float = 0.02
    uncertainty_cap: float = 0.5

    # Incremental-learning buffer
    update_buffer_size: int = 1000
    retrain_buffer_threshold: int = 100

    seed: int = 42

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return asdict(self)


@dataclass
class LifecycleConfig:
    """Configuration for training/retraining orchestration"""

    staleness_days: int = 30
    accuracy_floor: float = 0.45
    min_accuracy_samples: int = 50
    accuracy_window: int = 100

    max_workers: int = 2

    # Auto-save directory for perform_maintenance (None = disabled)
    storage_path: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return asdict(self)


@dataclass
class MLConfig:
    """
    Master configuration for ML Layer.

    All thresholds, parameters, and operational settings.
    """

    config_version: str = "1.0.0"

    # Sub-configurations
    specialist: SpecialistConfig = field(default_factory=SpecialistConfig)
    ensemble: EnsembleConfig = field(default_factory=EnsembleConfig)
    stochastic: StochasticConfig = field(default_factory=StochasticConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)

    def validate(self):
        """Raise ConfigurationError for out-of-range settings"""
        s = self.stochastic
        if not 0.0 <= s.dropout < 1.0:
            raise ConfigurationError(f"dropout must be in [0, 1), got {s.dropout}")
        if s.lookback < 1 or s.hidden_size < 1 or s.latent_dim < 1:
            raise ConfigurationError("lookback, hidden_size and latent_dim must be positive")
        if s.kl_weight < 0:
            raise ConfigurationError(f"kl_weight must be >= 0, got {s.kl_weight}")
        if s.min_epochs > s.max_epochs:
            raise ConfigurationError("min_epochs must not exceed max_epochs")
        if not 0.0 <= self.lifecycle.accuracy_floor <= 1.0:
            raise ConfigurationError("accuracy_floor must be in [0, 1]")

    def to_dict(self) -> dict:
        """Convert configuration to dictionary"""
        return {
            'config_version': self.config_version,
            'specialist': self.specialist.to_dict(),
            'ensemble': self.ensemble.to_dict(),
            'stochastic': self.stochastic.to_dict(),
            'lifecycle': self.lifecycle.to_dict(),
        }

    def get_config_hash(self) -> str:
        """
        Generate deterministic hash of configuration.
        Used for versioning and reproducibility.
        """
        config_str = json.dumps(self.to_dict(), sort_keys=True)
        return hashlib.sha256(config_str.encode()).hexdigest()[:16]

    @classmethod
    def from_dict(cls, config_dict: dict) -> 'MLConfig':
        """Create config from dictionary"""
        return cls(
            config_version=config_dict.get('config_version', '1.0.0'),
            specialist=SpecialistConfig(**config_dict.get('specialist', {})),
            ensemble=EnsembleConfig(**config_dict.get('ensemble', {})),
            stochastic=StochasticConfig(**config_dict.get('stochastic', {})),
            lifecycle=LifecycleConfig(**config_dict.get('lifecycle', {})),
        )
